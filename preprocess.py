#!/usr/bin/env python3
"""
Assessment Preprocessing Pipeline

Reads the four source spreadsheets and writes the dashboard datasets:

    schools.json             - roster of valid schools
    itemKeys.json            - ordered answer keys per grade and day
    schoolAggregates.json    - subject/overall averages per school and grade
    schoolLoBreakdown.json   - learning outcome mastery per school and grade

Usage:
    python3 preprocess.py
    python3 preprocess.py --schools schools.xlsx --keys keys.xlsx \\
        --grade5 grade5.xlsx --grade8 grade8.xlsx --output-dir output/data

Paths not given on the command line are read from .env (see config.py).
"""

import argparse
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import config
from config import AssessmentConfig, ConfigError, DEFAULT_CONFIG
from load_data import (
    AnswerKeyItem,
    AnswerKeyParseResult,
    PreprocessError,
    RosterResult,
    SourceError,
    load_item_keys,
    load_schools,
    read_sheet_rows,
    save_json,
)
from scoring import (
    LoSummary,
    ScoringSummary,
    StudentScore,
    aggregate_lo_breakdown,
    aggregate_schools,
    build_lo_metadata,
    score_grade_file,
)

logger = logging.getLogger(__name__)

ARTIFACT_NAMES = {
    'schools': 'schools.json',
    'item_keys': 'itemKeys.json',
    'school_aggregates': 'schoolAggregates.json',
    'lo_breakdown': 'schoolLoBreakdown.json',
}


@dataclass
class PipelineResult:
    """Everything one run produced, artifacts and diagnostics."""
    roster: RosterResult
    item_keys: Dict[str, List[AnswerKeyItem]]
    answer_keys: AnswerKeyParseResult
    scoring: Dict[int, ScoringSummary]
    school_aggregates: Dict[str, Dict[str, Any]]
    lo_breakdown: Dict[str, Dict[str, Any]]
    lo_summary: LoSummary
    unrostered_udise: List[str] = field(default_factory=list)

    def artifacts(self) -> Dict[str, Any]:
        """artifact file name -> JSON-serializable content"""
        return {
            ARTIFACT_NAMES['schools']: [s.to_dict() for s in self.roster.schools],
            ARTIFACT_NAMES['item_keys']: {
                bucket: [item.to_dict() for item in items]
                for bucket, items in self.item_keys.items()
            },
            ARTIFACT_NAMES['school_aggregates']: self.school_aggregates,
            ARTIFACT_NAMES['lo_breakdown']: self.lo_breakdown,
        }


def grade_source_name(grade: int) -> str:
    return f"grade{grade}"


# ==================== SOURCE CHECKS ====================

def check_sources(paths: Dict[str, Optional[str]]) -> None:
    """
    Fail before any processing if a source is unset or missing on disk.

    Every problem is listed in one error so they can all be fixed at once.
    """
    problems = []
    for name, label in config.SOURCE_LABELS.items():
        path = paths.get(name)
        if not path:
            problems.append(
                f"{label}: no path given (set {config.SOURCE_ENV_VARS[name]} in .env "
                f"or pass --{name})"
            )
        elif not Path(path).exists():
            problems.append(f"{label} file not found at:\n     {path}")

    if problems:
        raise SourceError(
            "Required source files are not available:\n"
            + "\n".join(f"  - {p}" for p in problems)
        )


# ==================== PIPELINE ====================

def process_sources(school_rows: Sequence[Sequence[Any]],
                    key_rows: Sequence[Sequence[Any]],
                    response_rows: Dict[int, Sequence[Sequence[Any]]],
                    assessment: AssessmentConfig = DEFAULT_CONFIG) -> PipelineResult:
    """
    Run the whole pipeline on in-memory cell matrices.

    Args:
        school_rows: Schools master sheet
        key_rows: Answer keys sheet
        response_rows: grade -> that grade's response sheet
        assessment: Program tables; validated before use

    Returns:
        PipelineResult with the four datasets and run diagnostics
    """
    assessment.validate()

    print("\n=== STEP 1: Processing Schools Master ===\n")
    roster = load_schools(school_rows)
    print(f"  Valid schools: {len(roster.schools)}")
    print(f"  Skipped rows (missing udise or schoolName): {roster.skipped}")

    print("\n=== STEP 2: Processing Answer Keys ===\n")
    item_keys, answer_keys = load_item_keys(key_rows, assessment)

    print("\n=== STEP 3: Scoring Student Responses ===\n")
    scores_by_grade: Dict[int, List[StudentScore]] = {}
    scoring: Dict[int, ScoringSummary] = {}
    for grade in assessment.grades():
        scores, summary = score_grade_file(response_rows.get(grade, []), grade, item_keys, assessment)
        scores_by_grade[grade] = scores
        scoring[grade] = summary
        print(f"  Grade {grade}: {summary.processed} students processed, {summary.skipped} skipped")

    rostered = {school.udise for school in roster.schools}
    unrostered = sorted({
        score.udise for scores in scores_by_grade.values() for score in scores
        if score.udise not in rostered
    })
    if unrostered:
        logger.warning("%d UDISE codes in responses are not in the schools master", len(unrostered))

    print("\n=== STEP 4: Aggregating Schools ===\n")
    school_aggregates = aggregate_schools(scores_by_grade, assessment)

    print("\n=== STEP 5: Building LO-wise Breakdown ===\n")
    metadata = build_lo_metadata(item_keys, assessment)
    lo_breakdown, lo_summary = aggregate_lo_breakdown(scores_by_grade, metadata, assessment)

    return PipelineResult(
        roster=roster,
        item_keys=item_keys,
        answer_keys=answer_keys,
        scoring=scoring,
        school_aggregates=school_aggregates,
        lo_breakdown=lo_breakdown,
        lo_summary=lo_summary,
        unrostered_udise=unrostered,
    )


def write_artifacts(result: PipelineResult, output_dir: str) -> Dict[str, Path]:
    """Persist the four datasets; returns artifact name -> written path."""
    written = {}
    for name, data in result.artifacts().items():
        written[name] = save_json(data, str(Path(output_dir) / name))
        print(f"  Output written to: {written[name]}")
    return written


def run_pipeline(paths: Dict[str, Optional[str]], output_dir: str = config.OUTPUT_DIR,
                 assessment: AssessmentConfig = DEFAULT_CONFIG) -> PipelineResult:
    """Check sources, read them, process, and write the artifacts."""
    check_sources(paths)

    print("Reading source files...")
    school_rows = read_sheet_rows(paths['schools'])
    key_rows = read_sheet_rows(paths['keys'])
    response_rows = {
        grade: read_sheet_rows(paths[grade_source_name(grade)])
        for grade in assessment.grades()
    }
    for name, rows in [('schools', school_rows), ('keys', key_rows)]:
        print(f"  {config.SOURCE_LABELS[name]}: {len(rows)} raw rows")

    result = process_sources(school_rows, key_rows, response_rows, assessment)

    print("\n=== Writing Artifacts ===\n")
    write_artifacts(result, output_dir)
    return result


# ==================== REPORTING ====================

def print_summary(result: PipelineResult, quiet: bool = False) -> None:
    """Print the end-of-run diagnostic summary."""
    print("\n" + "=" * 60)
    print("Data Summary")
    print("=" * 60)
    print(f"  Valid schools: {len(result.roster.schools)}")
    print(f"  Skipped roster rows: {result.roster.skipped}")
    if result.roster.duplicates:
        print(f"  Duplicate UDISE rows: {result.roster.duplicates}")

    for label, column_map in [(config.SOURCE_LABELS['schools'], result.roster.column_map),
                              (config.SOURCE_LABELS['keys'], result.answer_keys.column_map)]:
        print(f"  Column mapping ({label}):")
        for canonical, column in column_map.items():
            print(f"    {canonical} -> {column}")

    print(f"  Answer key items: {len(result.answer_keys.items)} "
          f"({result.answer_keys.skipped} rows skipped)")
    for reason, count in sorted(result.answer_keys.skip_reasons.items()):
        print(f"    {reason}: {count}")
    for bucket, items in result.item_keys.items():
        print(f"    {bucket}: {len(items)} items")

    skip_reasons = Counter()
    for grade, summary in result.scoring.items():
        print(f"  Grade {grade}: {summary.processed} students processed, {summary.skipped} skipped")
        if summary.missing_columns:
            print(f"    Missing columns: {', '.join(summary.missing_columns)}")
        skip_reasons.update(summary.skip_reasons)
    if skip_reasons:
        print("  Skip reasons:")
        for reason, count in sorted(skip_reasons.items()):
            print(f"    {reason}: {count}")

    for grade in result.scoring:
        key = f'grade{grade}'
        with_grade = sum(1 for s in result.school_aggregates.values() if key in s)
        print(f"  Schools with Grade {grade} data: {with_grade}")
    if result.unrostered_udise:
        print(f"  UDISE codes not in schools master: {len(result.unrostered_udise)}")

    print(f"  Total LO records generated: {result.lo_summary.total_records}")
    if result.lo_summary.zero_attempts:
        print(f"  LO records with zero attempts: {result.lo_summary.zero_attempts}")
    if result.lo_summary.missing_metadata:
        print(f"  LO codes dropped (no metadata): {result.lo_summary.missing_metadata}")

    if quiet:
        return

    print("\nSample items (first 3 of each grade/day):")
    for bucket, items in result.item_keys.items():
        print(f"\n{bucket.upper()}:")
        for item in items[:3]:
            print(f"  Position {item.position}: Grade {item.grade}, Day {item.day}, "
                  f"{item.subject}, Q{item.question_number} -> {item.answer_key}")
            print(f"    LO: {item.lo_code} - {item.lo_description}")

    print("\nSample school aggregates (first 2 schools):")
    for n, school in enumerate(list(result.school_aggregates.values())[:2], start=1):
        print(f"\n{n}. UDISE: {school['udise']}")
        for grade in result.scoring:
            grade_data = school.get(f'grade{grade}')
            if grade_data:
                print(f"   Grade {grade}: {grade_data['studentCount']} students")
                print(f"   Overall: {grade_data['overallAvgMarks']} marks, {grade_data['overallPercent']}%")
                print(f"   Subjects: {', '.join(grade_data['subjects'])}")

    if result.lo_breakdown:
        udise, school = next(iter(result.lo_breakdown.items()))
        print(f"\nSample LO breakdown (UDISE {udise}):")
        for grade_key, subjects in school.items():
            if not subjects:
                continue
            subject, records = next(iter(subjects.items()))
            print(f"  {grade_key} {subject} - {len(records)} LOs:")
            for lo in records[:3]:
                print(f"    {lo['loCode']}: {lo['percent']}% "
                      f"({lo['correct']}/{lo['attempts']} correct, {lo['itemCount']} items)")


def print_error(error: Exception) -> None:
    """Print a fatal error block with hints on how to fix it."""
    print("\n" + "=" * 70)
    print("ERROR: PREPROCESSING STOPPED")
    print("=" * 70)
    print(f"\n{error}\n")
    print("Please check:")
    print("  - All four source files exist and the paths in .env are correct")
    print("  - Each sheet's header row uses one of the accepted column names (config.py)")
    print("  - The answer key sheet lists every item for every grade and day")
    print("  - The program tables in config.py match this assessment cycle")
    print("=" * 70 + "\n")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate dashboard JSON datasets from assessment spreadsheets.")
    parser.add_argument('--schools', dest='schools', help="schools master spreadsheet")
    parser.add_argument('--keys', dest='keys', help="answer keys spreadsheet")
    parser.add_argument('--grade5', dest='grade5', help="grade 5 responses spreadsheet")
    parser.add_argument('--grade8', dest='grade8', help="grade 8 responses spreadsheet")
    parser.add_argument('-o', '--output-dir', dest='output_dir', default=config.OUTPUT_DIR,
                        help="directory for the JSON artifacts (default: %(default)s)")
    parser.add_argument('-v', '--verbose', dest='verbose', action='store_true',
                        help="show debug logging")
    parser.add_argument('-q', '--quiet', dest='quiet', action='store_true',
                        help="omit sample records from the summary")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    paths = config.source_paths_from_env()
    for name in paths:
        if getattr(args, name):
            paths[name] = getattr(args, name)

    print("=" * 60)
    print("Assessment Preprocessing")
    print("=" * 60)

    try:
        result = run_pipeline(paths, args.output_dir)
    except (PreprocessError, ConfigError) as e:
        print_error(e)
        return 1

    print_summary(result, quiet=args.quiet)
    print("\n=== ALL PREPROCESSING STEPS COMPLETE ===\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
