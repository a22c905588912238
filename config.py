"""
Configuration for the Assessment Preprocessing Pipeline

Contains the fixed program tables (subjects per test day, expected item
counts, marks per subject), the spreadsheet header aliases, and the source
file locations read from the environment.

To prepare for a new assessment cycle, edit DEFAULT_CONFIG below.
"""

import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


class ConfigError(Exception):
    """The assessment configuration is internally inconsistent."""
    pass


# =============================================================================
# ASSESSMENT PROGRAM TABLES
# =============================================================================

@dataclass(frozen=True)
class AssessmentConfig:
    """
    Program-specific knowledge the pipeline cannot derive from data.

    Buckets are named "grade{G}_day{D}". Subject order within a bucket is the
    order in which responses were authored, so it decides item positions.
    """
    subject_order: Dict[str, List[str]]
    expected_counts: Dict[str, int]
    subject_days: Dict[int, Dict[str, int]]
    subject_total_marks: Dict[int, int]
    response_delimiter: str = "#"
    valid_answers: Tuple[str, ...] = ("A", "B", "C", "D")

    @staticmethod
    def bucket_name(grade: int, day: int) -> str:
        return f"grade{grade}_day{day}"

    @staticmethod
    def parse_bucket(bucket: str) -> Tuple[int, int]:
        """'grade5_day1' -> (5, 1)"""
        grade_str, day_str = bucket.split('_')
        return int(grade_str.replace('grade', '')), int(day_str.replace('day', ''))

    def buckets(self) -> List[str]:
        return list(self.subject_order.keys())

    def grades(self) -> List[int]:
        return sorted(self.subject_days.keys())

    def days(self, grade: int) -> List[int]:
        return sorted(set(self.subject_days.get(grade, {}).values()))

    def grade_subjects(self, grade: int) -> List[str]:
        """All subjects of a grade, day 1 subjects first, in bucket order."""
        subjects = []
        for day in self.days(grade):
            subjects.extend(self.subject_order.get(self.bucket_name(grade, day), []))
        return subjects

    def day_for(self, grade: int, subject: str) -> Optional[int]:
        """Day the subject is tested on for a grade (case-insensitive), or None."""
        wanted = subject.strip().lower()
        for name, day in self.subject_days.get(grade, {}).items():
            if name.lower() == wanted:
                return day
        return None

    def canonical_subject(self, grade: int, subject: str) -> Optional[str]:
        """Configured spelling of a subject for a grade, or None."""
        wanted = subject.strip().lower()
        for name in self.subject_days.get(grade, {}):
            if name.lower() == wanted:
                return name
        return None

    def total_marks(self, grade: int) -> int:
        return self.subject_total_marks[grade]

    def validate(self) -> 'AssessmentConfig':
        """Raise ConfigError if the tables disagree with each other."""
        problems = []

        if len(self.response_delimiter) != 1:
            problems.append(
                f"response_delimiter must be a single character, got {self.response_delimiter!r}"
            )

        for bucket, subjects in self.subject_order.items():
            try:
                grade, day = self.parse_bucket(bucket)
            except ValueError:
                problems.append(f"Bucket name {bucket!r} is not of the form gradeN_dayN")
                continue

            if bucket not in self.expected_counts:
                problems.append(f"No expected item count for {bucket}")
                continue

            if grade not in self.subject_total_marks:
                problems.append(f"No subject total marks for grade {grade}")
                continue

            for subject in subjects:
                mapped_day = self.subject_days.get(grade, {}).get(subject)
                if mapped_day != day:
                    problems.append(
                        f"{bucket}: subject {subject!r} is mapped to day {mapped_day}"
                    )

            composed = len(subjects) * self.subject_total_marks[grade]
            if composed != self.expected_counts[bucket]:
                problems.append(
                    f"{bucket}: expected {self.expected_counts[bucket]} items but "
                    f"{len(subjects)} subjects x {self.subject_total_marks[grade]} marks = {composed}"
                )

        for bucket in self.expected_counts:
            if bucket not in self.subject_order:
                problems.append(f"Expected count given for unknown bucket {bucket}")

        if problems:
            raise ConfigError(
                "Invalid assessment configuration:\n" + "\n".join(f"  - {p}" for p in problems)
            )
        return self


DEFAULT_CONFIG = AssessmentConfig(
    subject_order={
        'grade5_day1': ['Odia', 'EVS'],
        'grade5_day2': ['English', 'Mathematics'],
        'grade8_day1': ['Odia', 'English', 'Science'],
        'grade8_day2': ['Mathematics', 'Social Science'],
    },
    expected_counts={
        'grade5_day1': 30,  # 15 Odia + 15 EVS
        'grade5_day2': 30,  # 15 English + 15 Mathematics
        'grade8_day1': 60,  # 20 Odia + 20 English + 20 Science
        'grade8_day2': 40,  # 20 Mathematics + 20 Social Science
    },
    subject_days={
        5: {'Odia': 1, 'EVS': 1, 'English': 2, 'Mathematics': 2},
        8: {'Odia': 1, 'English': 1, 'Science': 1, 'Mathematics': 2, 'Social Science': 2},
    },
    subject_total_marks={5: 15, 8: 20},
)


# =============================================================================
# SPREADSHEET HEADER ALIASES
# =============================================================================
# Canonical field -> accepted header spellings, highest priority first

SCHOOL_HEADER_ALIASES = {
    "udise": ["UDISE", "UDISE Code", "UDISE_CODE", "Udise", "Udise Code", "Udise_Code"],
    "block": ["Block", "Block Name", "BLOCK", "Block_Name"],
    "schoolName": ["School Name", "Name of School", "School", "SCHOOL NAME", "School_Name"],
    "management": ["Management", "Management Type", "School Management", "mgmt"],
    "location": ["Location", "School Location", "Rural/Urban", "Area", "School_Location"],
}

KEY_HEADER_ALIASES = {
    "grade": ["Grade", "GRADE", "Class"],
    "day": ["Day", "DAY", "Assessment Day"],
    "subject": ["Subject", "SUBJECT", "Subject Name"],
    "loCode": ["LO Code", "LO_Code", "LO CODE", "Learning Outcome Code", "LOCode"],
    "loDescription": ["LO Description", "LO_Description", "LO DESC",
                      "Learning Outcome Description", "LO"],
    "questionNumber": ["Question Number", "Question No", "Question No.", "Qn No", "Q No",
                       "QNo", "Question_Number"],
    "answerKey": ["Answer Key", "Answer", "Correct Answer", "Key", "ANSWER KEY"],
}

STUDENT_HEADER_ALIASES = {
    "grade": ["Grade", "GRADE", "Class"],
    "day": ["Day", "DAY", "Assessment Day"],
    "udise": ["UDISE", "UDISE Code", "UDISE_CODE", "Udise", "Udise Code", "Udise_Code"],
    "block": ["Block", "Block Name", "BLOCK", "Block_Name"],
    "responses": ["Student Responses", "Responses", "Response", "Student Response",
                  "RESPONSES", "Answer String", "Answers"],
}

SCHOOL_REQUIRED_FIELDS = ["udise", "schoolName"]
KEY_REQUIRED_FIELDS = ["grade", "subject", "loCode", "loDescription", "questionNumber", "answerKey"]
STUDENT_REQUIRED_FIELDS = ["day", "udise", "responses"]


# =============================================================================
# SOURCE FILES AND OUTPUT
# =============================================================================
# Set these in a .env file next to this one, or pass them on the command line

SOURCE_ENV_VARS = {
    "schools": "SCHOOLS_XLSX_PATH",
    "keys": "KEYS_XLSX_PATH",
    "grade5": "GRADE5_XLSX_PATH",
    "grade8": "GRADE8_XLSX_PATH",
}

SOURCE_LABELS = {
    "schools": "Schools Master",
    "keys": "Answer Keys",
    "grade5": "Grade 5 Student Responses",
    "grade8": "Grade 8 Student Responses",
}

OUTPUT_DIR = os.getenv("OUTPUT_DIR", "output/data")


def source_paths_from_env() -> Dict[str, Optional[str]]:
    """Source name -> path from the environment (None when unset)."""
    return {name: (os.getenv(var) or None) for name, var in SOURCE_ENV_VARS.items()}
