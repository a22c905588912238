"""
Response Scoring and School Aggregation

Turns raw "#"-delimited student response strings into per-subject marks,
then folds the scored students into school-level and learning-outcome-level
aggregates for the dashboard.

Alignment rule: response token i is the answer to the item at position i+1
of its (grade, day) bucket. Question numbers are never consulted here.

Two independent passes run over the same scored students:
- aggregate_schools(): subject averages per school and grade
- aggregate_lo_breakdown(): attempts/correct per learning outcome
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from config import (
    AssessmentConfig,
    DEFAULT_CONFIG,
    STUDENT_HEADER_ALIASES,
    STUDENT_REQUIRED_FIELDS,
)
from load_data import (
    AnswerKeyItem,
    cell_text,
    column_indexes,
    is_blank_row,
    parse_int,
    resolve_columns,
    row_value,
)

logger = logging.getLogger(__name__)

SKIP_MISSING_UDISE = "Missing UDISE"
SKIP_INVALID_DAY = "Invalid Day"


# ==================== RECORDS ====================

@dataclass(frozen=True)
class ResponseRow:
    """One student's row from a grade response sheet, columns already resolved."""
    grade: int
    day: Optional[int]
    udise: str
    responses: str
    row_number: int = 0


@dataclass
class SubjectScore:
    marks: int = 0
    total: int = 0


@dataclass
class LoTally:
    attempts: int = 0
    correct: int = 0


@dataclass
class StudentScore:
    """
    Scores for one response row.

    subjects: subject -> marks (correct) and total (items attempted)
    lo_tallies: (subject, loCode) -> attempts and correct
    """
    udise: str
    grade: int
    day: int
    subjects: Dict[str, SubjectScore] = field(default_factory=dict)
    lo_tallies: Dict[Tuple[str, str], LoTally] = field(default_factory=dict)


@dataclass
class ScoringSummary:
    """Row counts for one grade's response file."""
    grade: int
    processed: int = 0
    skipped: int = 0
    skip_reasons: Counter = field(default_factory=Counter)
    missing_columns: List[str] = field(default_factory=list)

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] += 1


@dataclass
class LoSummary:
    total_records: int = 0
    zero_attempts: int = 0
    missing_metadata: int = 0


@dataclass(frozen=True)
class LoMetadata:
    lo_description: str
    item_count: int
    order: int


# ==================== ROUNDING ====================

def round_half_away(value: float, digits: int = 2) -> float:
    """
    Round to a number of decimals, halves away from zero.

    Matches the x*100 -> round -> /100 convention the dashboard was built
    against; Python's round() would send 0.125 to 0.12.
    """
    factor = 10 ** digits
    rounded = math.floor(abs(value) * factor + 0.5) / factor
    return rounded if value >= 0 else -rounded


# ==================== RESPONSE ROWS ====================

def read_response_rows(rows: Sequence[Sequence[Any]], grade: int) -> Tuple[List[ResponseRow], List[str]]:
    """
    Resolve a grade response sheet's columns and extract its rows.

    Header is row 1. Missing required columns are not fatal: they are
    returned so the caller can report the file as yielding no rows.
    Completely blank rows are dropped.

    Returns:
        Tuple of (response rows, missing required fields)
    """
    if len(rows) < 2:
        return [], []

    headers = [cell_text(h) for h in rows[0]]
    column_map, missing = resolve_columns(headers, STUDENT_HEADER_ALIASES)
    missing_required = [f for f in missing if f in STUDENT_REQUIRED_FIELDS]
    if missing_required:
        logger.warning("Grade %d file missing required columns: %s (available headers: %s)",
                       grade, ", ".join(missing_required), ", ".join(h for h in headers if h))
        return [], missing_required

    idx = column_indexes(headers, column_map)

    response_rows = []
    for i, row in enumerate(rows[1:], start=2):
        if is_blank_row(row):
            continue
        response_rows.append(ResponseRow(
            grade=grade,
            day=parse_int(row_value(row, idx['day'])),
            udise=row_value(row, idx['udise']),
            responses=row_value(row, idx['responses']),
            row_number=i,
        ))
    return response_rows, []


def split_responses(raw: str, delimiter: str = "#") -> List[str]:
    """
    Split a response string into tokens, one per item.

    Empty tokens at the end are dropped so a trailing delimiter is tolerated:
    "A#B#C#" -> ["A", "B", "C"]. Empty tokens in the middle are kept.
    """
    tokens = raw.strip().split(delimiter)
    while tokens and tokens[-1].strip() == "":
        tokens.pop()
    return tokens


def invalid_length_reason(expected: int) -> str:
    return f"Invalid response length (expected {expected})"


def check_response(row: ResponseRow,
                   config: AssessmentConfig = DEFAULT_CONFIG) -> Tuple[Optional[List[str]], Optional[str]]:
    """
    Validate a response row before scoring.

    Returns:
        Tuple of (tokens, None) when valid, or (None, skip reason)
    """
    if not row.udise:
        return None, SKIP_MISSING_UDISE
    if row.day not in config.days(row.grade):
        return None, SKIP_INVALID_DAY

    tokens = split_responses(row.responses, config.response_delimiter)
    expected = config.expected_counts[config.bucket_name(row.grade, row.day)]
    if len(tokens) != expected:
        return None, invalid_length_reason(expected)
    return tokens, None


# ==================== SCORING ====================

def score_tokens(udise: str, grade: int, day: int, tokens: Sequence[str],
                 items: Sequence[AnswerKeyItem]) -> StudentScore:
    """
    Score one student's tokens against a bucket's ordered items.

    Token i pairs with items[i]. Tokens are compared case-insensitively.
    Every item counts toward its subject total whether or not it was answered
    correctly; the same pairing feeds the (subject, loCode) tallies.
    """
    score = StudentScore(udise=udise, grade=grade, day=day)
    for token, item in zip(tokens, items):
        is_correct = token.strip().upper() == item.answer_key

        subject_score = score.subjects.setdefault(item.subject, SubjectScore())
        subject_score.total += 1

        tally = score.lo_tallies.setdefault((item.subject, item.lo_code), LoTally())
        tally.attempts += 1

        if is_correct:
            subject_score.marks += 1
            tally.correct += 1
    return score


def score_response(row: ResponseRow, item_keys: Dict[str, List[AnswerKeyItem]],
                   config: AssessmentConfig = DEFAULT_CONFIG) -> Tuple[Optional[StudentScore], Optional[str]]:
    """Validate and score one row. Returns (score, None) or (None, skip reason)."""
    tokens, reason = check_response(row, config)
    if reason is not None:
        return None, reason
    items = item_keys[config.bucket_name(row.grade, row.day)]
    return score_tokens(row.udise, row.grade, row.day, tokens, items), None


def score_grade_file(rows: Sequence[Sequence[Any]], grade: int,
                     item_keys: Dict[str, List[AnswerKeyItem]],
                     config: AssessmentConfig = DEFAULT_CONFIG) -> Tuple[List[StudentScore], ScoringSummary]:
    """
    Score every row of one grade's response sheet.

    No row is fatal. A file that yields no valid rows is reported, not raised.
    """
    summary = ScoringSummary(grade=grade)
    response_rows, missing = read_response_rows(rows, grade)
    summary.missing_columns = missing

    scores = []
    for row in response_rows:
        score, reason = score_response(row, item_keys, config)
        if reason is not None:
            logger.debug("Grade %d row %d skipped: %s", grade, row.row_number, reason)
            summary.skip(reason)
            continue
        scores.append(score)
        summary.processed += 1

    if summary.processed == 0:
        logger.warning("Grade %d: no valid response rows (%d skipped)", grade, summary.skipped)

    return scores, summary


# ==================== SCHOOL AGGREGATES ====================

def order_subjects(subjects, grade: int, config: AssessmentConfig) -> List[str]:
    """Configured subject order first, anything unexpected after, alphabetically."""
    known = config.grade_subjects(grade)
    present = set(subjects)
    ordered = [s for s in known if s in present]
    ordered.extend(sorted(present - set(known)))
    return ordered


def aggregate_grade(students: Sequence[StudentScore], grade: int,
                    config: AssessmentConfig = DEFAULT_CONFIG) -> Optional[Dict[str, Any]]:
    """
    Build the GradeAggregate for one school's students in one grade.

    avgMarks divides by the students who attempted that subject, not by the
    whole school. overallAvgMarks is the plain mean of the published
    (already rounded) subject avgMarks. overallPercent is taken against ONE
    subject's total marks, so it reads as "average subject performance"
    rather than a percentage of all marks; this is the established dashboard metric and is kept as-is.
    """
    if not students:
        return None

    subject_rows = [
        {'subject': subject, 'marks': s.marks}
        for student in students
        for subject, s in student.subjects.items()
    ]
    if not subject_rows:
        return None

    df = pd.DataFrame(subject_rows)
    stats = df.groupby('subject')['marks'].agg(['sum', 'count'])

    total_marks = config.total_marks(grade)
    subjects = {}
    subject_averages = []
    for subject in order_subjects(stats.index, grade, config):
        marks_sum = int(stats.loc[subject, 'sum'])
        count = int(stats.loc[subject, 'count'])
        avg_marks = marks_sum / count
        subjects[subject] = {
            'avgMarks': round_half_away(avg_marks, 2),
            'totalMarks': total_marks,
            'avgPercent': round_half_away(avg_marks / total_marks * 100, 2),
            'studentCount': count,
        }
        subject_averages.append(subjects[subject]['avgMarks'])

    overall_avg = float(np.mean(subject_averages))
    return {
        'studentCount': len(students),
        'subjects': subjects,
        'overallAvgMarks': round_half_away(overall_avg, 2),
        'overallPercent': round_half_away(overall_avg / total_marks * 100, 2),
    }


def group_by_school(scores: Sequence[StudentScore]) -> Dict[str, List[StudentScore]]:
    by_school = {}
    for score in scores:
        by_school.setdefault(score.udise, []).append(score)
    return by_school


def aggregate_schools(scores_by_grade: Dict[int, Sequence[StudentScore]],
                      config: AssessmentConfig = DEFAULT_CONFIG) -> Dict[str, Dict[str, Any]]:
    """
    Fold all scored students into one SchoolAggregate per UDISE.

    Schools are keyed in ascending UDISE order; grades appear only when the
    school has at least one scored student in that grade.
    """
    per_grade = {grade: group_by_school(scores) for grade, scores in scores_by_grade.items()}
    all_udise = sorted({udise for schools in per_grade.values() for udise in schools})

    aggregates = {}
    for udise in all_udise:
        aggregate = {'udise': udise}
        for grade in sorted(per_grade):
            grade_aggregate = aggregate_grade(per_grade[grade].get(udise, []), grade, config)
            if grade_aggregate is not None:
                aggregate[f'grade{grade}'] = grade_aggregate
        aggregates[udise] = aggregate
    return aggregates


# ==================== LO BREAKDOWN ====================

def build_lo_metadata(item_keys: Dict[str, List[AnswerKeyItem]],
                      config: AssessmentConfig = DEFAULT_CONFIG) -> Dict[Tuple[int, str, str], LoMetadata]:
    """
    (grade, subject, loCode) -> description, item count and display order.

    The description comes from the first item carrying the code. item_count
    is the largest number of items the code has within any one bucket.
    """
    descriptions = {}
    orders = {}
    item_counts = Counter()
    order = 0
    for bucket in config.buckets():
        grade, _ = config.parse_bucket(bucket)
        bucket_counts = Counter()
        for item in item_keys.get(bucket, []):
            key = (grade, item.subject, item.lo_code)
            bucket_counts[key] += 1
            if key not in descriptions:
                descriptions[key] = item.lo_description
                orders[key] = order
                order += 1
        for key, count in bucket_counts.items():
            item_counts[key] = max(item_counts[key], count)

    return {
        key: LoMetadata(lo_description=descriptions[key], item_count=item_counts[key], order=orders[key])
        for key in descriptions
    }


def build_lo_records(grade: int, subject: str, tallies: Dict[str, LoTally],
                     metadata: Dict[Tuple[int, str, str], LoMetadata],
                     summary: Optional[LoSummary] = None) -> List[Dict[str, Any]]:
    """
    Turn one subject's summed tallies into LORecords, in display order.

    A code with no metadata is dropped with a warning. A code with zero
    attempts is kept at 0% with a warning.
    """
    if summary is None:
        summary = LoSummary()

    def display_order(lo_code):
        meta = metadata.get((grade, subject, lo_code))
        return (0, meta.order) if meta else (1, 0)

    records = []
    for lo_code in sorted(tallies, key=display_order):
        tally = tallies[lo_code]
        meta = metadata.get((grade, subject, lo_code))
        if meta is None:
            logger.warning("No metadata found for grade %d %s LO %s, dropping it", grade, subject, lo_code)
            summary.missing_metadata += 1
            continue

        if tally.attempts > 0:
            percent = round_half_away(tally.correct / tally.attempts * 100, 1)
        else:
            logger.warning("Grade %d %s LO %s has zero attempts", grade, subject, lo_code)
            summary.zero_attempts += 1
            percent = 0

        records.append({
            'loCode': lo_code,
            'loDescription': meta.lo_description,
            'itemCount': meta.item_count,
            'attempts': tally.attempts,
            'correct': tally.correct,
            'percent': percent,
        })
        summary.total_records += 1
    return records


def sum_lo_tallies(students: Sequence[StudentScore]) -> Dict[str, Dict[str, LoTally]]:
    """subject -> loCode -> tally summed over the students."""
    tally_rows = [
        {'subject': subject, 'loCode': lo_code, 'attempts': t.attempts, 'correct': t.correct}
        for student in students
        for (subject, lo_code), t in student.lo_tallies.items()
    ]
    if not tally_rows:
        return {}

    sums = pd.DataFrame(tally_rows).groupby(['subject', 'loCode'])[['attempts', 'correct']].sum()
    result = {}
    for (subject, lo_code), row in sums.iterrows():
        result.setdefault(subject, {})[lo_code] = LoTally(
            attempts=int(row['attempts']), correct=int(row['correct'])
        )
    return result


def aggregate_lo_breakdown(scores_by_grade: Dict[int, Sequence[StudentScore]],
                           metadata: Dict[Tuple[int, str, str], LoMetadata],
                           config: AssessmentConfig = DEFAULT_CONFIG
                           ) -> Tuple[Dict[str, Dict[str, Any]], LoSummary]:
    """
    Fold all scored students into per-school LO breakdowns.

    Output: udise -> "grade{G}" -> subject -> [LORecord], schools in
    ascending UDISE order and subjects in configured order.
    """
    summary = LoSummary()
    per_grade = {grade: group_by_school(scores) for grade, scores in scores_by_grade.items()}
    all_udise = sorted({udise for schools in per_grade.values() for udise in schools})

    breakdown = {}
    for udise in all_udise:
        school = {}
        for grade in sorted(per_grade):
            students = per_grade[grade].get(udise)
            if not students:
                continue
            subject_tallies = sum_lo_tallies(students)
            school[f'grade{grade}'] = {
                subject: build_lo_records(grade, subject, subject_tallies[subject], metadata, summary)
                for subject in order_subjects(subject_tallies, grade, config)
            }
        breakdown[udise] = school

    if summary.zero_attempts:
        logger.warning("%d LO records have zero attempts (should be rare)", summary.zero_attempts)
    return breakdown, summary
