"""
Assessment Data Loader - Spreadsheet Edition

Reads the school roster and answer-key spreadsheets and turns them into
dashboard-ready records.

Parses the program's spreadsheet structure:
- Schools Master: one school per row, header row may follow blank rows
- Answer Keys: header in row 1, one assessment item per row
- Student Responses: handled in scoring.py

Column names vary between exports, so every sheet is read through an alias
table (see config.py) instead of fixed header names.
"""

import csv
import json
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from config import (
    AssessmentConfig,
    DEFAULT_CONFIG,
    KEY_HEADER_ALIASES,
    KEY_REQUIRED_FIELDS,
    SCHOOL_HEADER_ALIASES,
    SCHOOL_REQUIRED_FIELDS,
)

logger = logging.getLogger(__name__)


# ==================== ERRORS ====================

class PreprocessError(Exception):
    """Source data is structurally unusable; the run must stop."""
    pass


class SourceError(PreprocessError):
    """A source file is missing, unreadable, or has no data rows."""
    pass


class MissingColumnsError(PreprocessError):
    """Required columns could not be matched to any header alias."""

    def __init__(self, sheet: str, missing: List[str], headers: List[str],
                 aliases: Dict[str, List[str]]):
        self.sheet = sheet
        self.missing = missing
        self.headers = headers
        lines = [
            f"Required fields not found in {sheet} headers: {', '.join(missing)}",
            f"Available headers: {', '.join(h for h in headers if h)}",
            "Expected one of these aliases for each field:",
        ]
        lines.extend(f"  {f}: {', '.join(aliases[f])}" for f in missing)
        super().__init__("\n".join(lines))


class ItemCountMismatchError(PreprocessError):
    """A (grade, day) bucket does not hold the configured number of items."""

    def __init__(self, bucket: str, expected: int, actual: int):
        self.bucket = bucket
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Item count mismatch for {bucket}!\n"
            f"Expected: {expected}, Got: {actual}\n"
            f"This means the answer key file is incomplete or has incorrect data."
        )


# ==================== RECORDS ====================

@dataclass(frozen=True)
class SchoolRecord:
    """One school from the roster; udise is the join key for every dataset."""
    udise: str
    school_name: str
    block: str = ""
    management: str = ""
    location: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            'udise': self.udise,
            'schoolName': self.school_name,
            'block': self.block,
            'management': self.management,
            'location': self.location,
        }


@dataclass(frozen=True)
class AnswerKeyItem:
    """One assessment question. position is 0 until the bucket is ordered."""
    grade: int
    day: int
    subject: str
    lo_code: str
    lo_description: str
    question_number: int
    answer_key: str
    position: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'grade': self.grade,
            'day': self.day,
            'subject': self.subject,
            'loCode': self.lo_code,
            'loDescription': self.lo_description,
            'questionNumber': self.question_number,
            'answerKey': self.answer_key,
            'position': self.position,
        }


@dataclass
class RosterResult:
    schools: List[SchoolRecord]
    skipped: int = 0
    duplicates: int = 0
    column_map: Dict[str, str] = field(default_factory=dict)


@dataclass
class AnswerKeyParseResult:
    items: List[AnswerKeyItem]
    skipped: int = 0
    skip_reasons: Counter = field(default_factory=Counter)
    column_map: Dict[str, str] = field(default_factory=dict)


# ==================== CELL HELPERS ====================

def cell_text(value: Any) -> str:
    """
    Convert a spreadsheet cell to trimmed text.

    Blank cells (None, NaN) become "". Whole-number floats lose their ".0" so
    that numeric UDISE codes read from Excel match the same codes typed as text.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if pd.isna(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_int(value: Any) -> Optional[int]:
    """Parse an integer cell ("5", 5, 5.0, " 5 "); None if blank or not whole."""
    text = cell_text(value)
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or not number.is_integer():
        return None
    return int(number)


def is_blank_row(row: Sequence[Any]) -> bool:
    return all(cell_text(cell) == "" for cell in row)


def row_value(row: Sequence[Any], index: Optional[int]) -> str:
    """Trimmed text at a column index; "" when the column or cell is absent."""
    if index is None or index >= len(row):
        return ""
    return cell_text(row[index])


# ==================== HEADER RESOLUTION ====================

def find_column_name(headers: Sequence[str], aliases: Sequence[str]) -> Optional[str]:
    """
    Find the actual header for a field.

    Aliases are tried in priority order and the first exact match (after
    trimming) wins, even if a later alias would match an earlier column.
    """
    for alias in aliases:
        for header in headers:
            if header and header.strip() == alias:
                return header
    return None


def resolve_columns(headers: Sequence[str],
                    alias_table: Dict[str, List[str]]) -> Tuple[Dict[str, str], List[str]]:
    """
    Map every canonical field to the header that carries it.

    Returns:
        Tuple of (field -> header, fields with no matching header)
    """
    column_map = {}
    missing = []
    for canonical, aliases in alias_table.items():
        column_name = find_column_name(headers, aliases)
        if column_name is not None:
            column_map[canonical] = column_name
        else:
            missing.append(canonical)
    return column_map, missing


def column_indexes(headers: Sequence[str], column_map: Dict[str, str]) -> Dict[str, int]:
    """field -> index of its header (first occurrence)."""
    return {canonical: list(headers).index(header) for canonical, header in column_map.items()}


def find_header_row(rows: Sequence[Sequence[Any]]) -> Optional[int]:
    """Index of the first row with any non-blank cell."""
    for i, row in enumerate(rows):
        if not is_blank_row(row):
            return i
    return None


# ==================== SOURCE READING ====================

def read_sheet_rows(file_path: str) -> List[List[str]]:
    """
    Read the first sheet of a workbook (or a CSV file) as a cell matrix.

    No header handling happens here; row 0 is whatever the sheet starts with.
    Every cell is returned as trimmed text. CSV blank lines are kept as blank
    rows and short rows are padded, so a CSV reads like the same sheet saved
    as a workbook.
    """
    path = Path(file_path)
    if not path.exists():
        raise SourceError(f"Source file not found: {file_path}")

    if path.suffix.lower() == '.csv':
        return read_csv_rows(path)

    try:
        df = pd.read_excel(path, sheet_name=0, header=None, dtype=object)
    except Exception as e:
        raise SourceError(f"Could not read {path.name}: {e}") from e

    return [[cell_text(cell) for cell in row] for row in df.values.tolist()]


def read_csv_rows(path: Path) -> List[List[str]]:
    """Read a CSV file line by line, padding every row to the widest one."""
    try:
        with open(path, 'r', encoding='utf-8-sig', newline='') as f:
            rows = list(csv.reader(f))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise SourceError(f"Could not read {path.name}: {e}") from e

    width = max((len(row) for row in rows), default=0)
    return [[cell_text(cell) for cell in row] + [""] * (width - len(row)) for row in rows]


# ==================== ROSTER ====================

def load_schools(rows: Sequence[Sequence[Any]]) -> RosterResult:
    """
    Parse the schools master sheet into SchoolRecords.

    Leading blank rows are skipped when looking for the header. Rows missing a
    UDISE code or school name are presumed to be blank/footer rows: they are
    counted, not reported.
    """
    header_idx = find_header_row(rows)
    if header_idx is None or len(rows) < header_idx + 2:
        raise SourceError("Schools sheet must have at least 2 rows (header + data)")

    headers = [cell_text(h) for h in rows[header_idx]]
    print(f"  Headers found: {', '.join(h for h in headers if h)}")

    column_map, missing = resolve_columns(headers, SCHOOL_HEADER_ALIASES)
    missing_required = [f for f in missing if f in SCHOOL_REQUIRED_FIELDS]
    if missing_required:
        raise MissingColumnsError("Schools", missing_required, headers, SCHOOL_HEADER_ALIASES)
    for optional_field in missing:
        logger.warning("Schools sheet has no %s column; leaving it blank", optional_field)

    idx = column_indexes(headers, column_map)

    schools = []
    seen = set()
    skipped = 0
    duplicates = 0
    for row in rows[header_idx + 1:]:
        udise = row_value(row, idx.get('udise'))
        school_name = row_value(row, idx.get('schoolName'))

        if not udise or not school_name:
            skipped += 1
            continue

        if udise in seen:
            logger.warning("Duplicate UDISE %s (%s) in schools sheet, keeping first", udise, school_name)
            duplicates += 1
            continue
        seen.add(udise)

        schools.append(SchoolRecord(
            udise=udise,
            school_name=school_name,
            block=row_value(row, idx.get('block')),
            management=row_value(row, idx.get('management')),
            location=row_value(row, idx.get('location')),
        ))

    return RosterResult(schools=schools, skipped=skipped, duplicates=duplicates,
                        column_map=column_map)


# ==================== ANSWER KEYS ====================

def parse_answer_key_rows(rows: Sequence[Sequence[Any]],
                          config: AssessmentConfig = DEFAULT_CONFIG) -> AnswerKeyParseResult:
    """
    Parse the answer keys sheet into unordered AnswerKeyItems.

    Row 1 is always the header. The test day is derived from grade + subject,
    so a Day column is not needed. Subjects are stored under their configured
    spelling.
    """
    if len(rows) < 2:
        raise SourceError("Answer keys sheet must have at least 2 rows (header + data)")

    headers = [cell_text(h) for h in rows[0]]
    print(f"  Headers found: {', '.join(h for h in headers if h)}")

    column_map, missing = resolve_columns(headers, KEY_HEADER_ALIASES)
    missing_required = [f for f in missing if f in KEY_REQUIRED_FIELDS]
    if missing_required:
        raise MissingColumnsError("Answer Keys", missing_required, headers, KEY_HEADER_ALIASES)

    idx = column_indexes(headers, column_map)

    items = []
    skip_reasons = Counter()
    for i, row in enumerate(rows[1:], start=2):
        grade = parse_int(row_value(row, idx['grade']))
        subject_raw = row_value(row, idx['subject'])
        question_number = parse_int(row_value(row, idx['questionNumber']))
        answer_key = row_value(row, idx['answerKey']).upper()

        if grade is None:
            skip_reasons['Invalid grade'] += 1
            continue
        if not subject_raw:
            skip_reasons['Missing subject'] += 1
            continue

        day = config.day_for(grade, subject_raw)
        if day is None:
            logger.warning('Unknown subject "%s" for grade %s at row %d', subject_raw, grade, i)
            skip_reasons['Unknown subject for grade'] += 1
            continue
        if question_number is None:
            skip_reasons['Invalid question number'] += 1
            continue
        if not answer_key:
            skip_reasons['Missing answer key'] += 1
            continue
        if answer_key not in config.valid_answers:
            logger.warning('Invalid answer key "%s" at row %d, skipping', answer_key, i)
            skip_reasons['Invalid answer key'] += 1
            continue

        items.append(AnswerKeyItem(
            grade=grade,
            day=day,
            subject=config.canonical_subject(grade, subject_raw),
            lo_code=row_value(row, idx['loCode']),
            lo_description=row_value(row, idx['loDescription']),
            question_number=question_number,
            answer_key=answer_key,
        ))

    return AnswerKeyParseResult(items=items, skipped=sum(skip_reasons.values()),
                                skip_reasons=skip_reasons, column_map=column_map)


def order_bucket_items(items: Sequence[AnswerKeyItem],
                       subject_order: Sequence[str]) -> List[AnswerKeyItem]:
    """
    Lay out one bucket's items in response-string order and number them.

    Subjects follow subject_order; within a subject, items follow ascending
    question number (ties keep sheet order). Positions run 1..N across all
    subjects. Items of subjects not in subject_order are dropped.

    Response tokens are matched to items by this position alone, so this
    order must match how the response strings were authored.
    """
    ordered = []
    position = 1
    for subject_name in subject_order:
        subject_items = [item for item in items
                         if item.subject.lower() == subject_name.lower()]
        subject_items.sort(key=lambda item: item.question_number)
        for item in subject_items:
            ordered.append(replace(item, position=position))
            position += 1
    return ordered


def build_item_keys(items: Sequence[AnswerKeyItem],
                    config: AssessmentConfig = DEFAULT_CONFIG) -> Dict[str, List[AnswerKeyItem]]:
    """
    Partition items into the (grade, day) buckets and order each one.

    Raises ItemCountMismatchError when a bucket does not hold exactly its
    expected number of items.
    """
    item_keys = {}
    for bucket, subject_order in config.subject_order.items():
        grade, day = config.parse_bucket(bucket)
        bucket_items = [item for item in items if item.grade == grade and item.day == day]
        print(f"\n  Building {bucket}: {len(bucket_items)} items for Grade {grade}, Day {day}")

        ordered = order_bucket_items(bucket_items, subject_order)

        per_subject = config.total_marks(grade)
        subject_counts = Counter(item.subject for item in ordered)
        for subject_name in subject_order:
            count = subject_counts.get(subject_name, 0)
            print(f"    {subject_name}: {count} items")
            if count != per_subject:
                logger.warning("%s: %s has %d items, expected %d",
                               bucket, subject_name, count, per_subject)

        expected = config.expected_counts[bucket]
        if len(ordered) != expected:
            raise ItemCountMismatchError(bucket, expected, len(ordered))

        print(f"    Total items: {len(ordered)} (matches expected {expected})")
        item_keys[bucket] = ordered

    return item_keys


def load_item_keys(rows: Sequence[Sequence[Any]],
                   config: AssessmentConfig = DEFAULT_CONFIG
                   ) -> Tuple[Dict[str, List[AnswerKeyItem]], AnswerKeyParseResult]:
    """Parse the answer keys sheet and build the four ordered buckets."""
    parsed = parse_answer_key_rows(rows, config)
    print(f"  Valid items: {len(parsed.items)}")
    print(f"  Skipped rows: {parsed.skipped}")
    return build_item_keys(parsed.items, config), parsed


# ==================== ARTIFACTS ====================

def save_json(data: Any, output_path: str) -> Path:
    """Write data as indented JSON; identical data gives identical bytes."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")
    return path


def load_json(json_path: str) -> Any:
    """Load a previously written artifact."""
    with open(json_path, 'r', encoding='utf-8') as f:
        return json.load(f)
