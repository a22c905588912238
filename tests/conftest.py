import sys
from pathlib import Path

import pytest

# Add the repo root to sys.path so the loader modules import
REPO_ROOT = Path(__file__).resolve().parent.parent
if REPO_ROOT.as_posix() not in sys.path:
    sys.path.insert(0, REPO_ROOT.as_posix())

from config import AssessmentConfig, DEFAULT_CONFIG  # noqa: E402

KEY_HEADERS = ["Grade", "Subject", "LO Code", "LO Description", "Question No", "Answer Key"]
ANSWERS = "ABCD"


def answer_for(question_number: int) -> str:
    return ANSWERS[question_number % 4]


def lo_code_for(subject: str, question_number: int) -> str:
    """Five items per learning outcome."""
    return f"{subject[:3].upper()}-LO{(question_number - 1) // 5 + 1}"


def make_key_rows(assessment: AssessmentConfig):
    """A complete answer key sheet, subjects deliberately listed in reverse."""
    rows = [list(KEY_HEADERS)]
    for grade in assessment.grades():
        for subject in reversed(assessment.grade_subjects(grade)):
            for q in range(assessment.total_marks(grade), 0, -1):
                rows.append([
                    str(grade), subject, lo_code_for(subject, q),
                    f"{subject} outcome {(q - 1) // 5 + 1}", str(q), answer_for(q),
                ])
    return rows


def make_response(assessment: AssessmentConfig, grade: int, day: int, correct: dict) -> str:
    """
    Build a response string for a bucket.

    correct: subject -> number of leading questions answered correctly;
    the rest get a wrong letter.
    """
    tokens = []
    for subject in assessment.subject_order[assessment.bucket_name(grade, day)]:
        n_correct = correct.get(subject, 0)
        for q in range(1, assessment.total_marks(grade) + 1):
            right = answer_for(q)
            wrong = ANSWERS[(ANSWERS.index(right) + 1) % 4]
            tokens.append(right if q <= n_correct else wrong)
    return "#".join(tokens)


@pytest.fixture
def assessment():
    """The program's real configuration."""
    return DEFAULT_CONFIG


@pytest.fixture
def small_assessment():
    """A scaled-down program: grade 5 only, three items per day."""
    return AssessmentConfig(
        subject_order={'grade5_day1': ['Odia'], 'grade5_day2': ['English']},
        expected_counts={'grade5_day1': 3, 'grade5_day2': 3},
        subject_days={5: {'Odia': 1, 'English': 2}},
        subject_total_marks={5: 3},
    )


@pytest.fixture
def key_rows(assessment):
    return make_key_rows(assessment)


@pytest.fixture
def school_rows():
    return [
        ["", "", "", "", ""],
        ["UDISE Code", "School Name", "Block", "Management", "Location"],
        ["21150100101", "Govt UP School Angul", "Angul", "Government", "Rural"],
        ["21150100102", "Nodal School Banarpal", "Banarpal", "Government", "Urban"],
        ["", "Footer Row School", "", "", ""],
    ]


@pytest.fixture
def response_factory(assessment):
    """Build a response sheet row list: header + given (udise, day, correct) rows."""
    def factory(grade, students):
        rows = [["Grade", "Day", "UDISE", "Block", "Student Responses"]]
        for udise, day, correct in students:
            rows.append([str(grade), str(day), udise, "Angul",
                         make_response(assessment, grade, day, correct)])
        return rows
    return factory
