"""
Unit Tests for the Response Scorer

Tests for splitting, validating and positionally scoring response strings.
"""

import logging

import pytest

from load_data import AnswerKeyItem, load_item_keys
from scoring import (
    ResponseRow,
    check_response,
    read_response_rows,
    score_grade_file,
    score_response,
    score_tokens,
    split_responses,
)


def key_item(subject, answer, position, lo_code="L1"):
    return AnswerKeyItem(grade=5, day=1, subject=subject, lo_code=lo_code, lo_description="desc",
                         question_number=position, answer_key=answer, position=position)


class TestSplitResponses:
    """Tests for split_responses()."""

    def test_split_when_trailing_delimiter_then_dropped(self):
        assert split_responses("A#B#C#") == ["A", "B", "C"]

    def test_split_when_no_trailing_delimiter_then_unchanged(self):
        assert split_responses("A#B#C") == ["A", "B", "C"]

    def test_split_when_several_trailing_delimiters_then_all_dropped(self):
        assert split_responses("A#B##") == ["A", "B"]

    def test_split_when_empty_token_in_middle_then_kept(self):
        """A blank answer still occupies its position."""
        assert split_responses("A##C") == ["A", "", "C"]

    def test_split_when_empty_string_then_no_tokens(self):
        assert split_responses("") == []


class TestCheckResponse:
    """Tests for check_response() skip reasons."""

    def test_check_when_length_matches_with_trailing_delimiter_then_valid(self, small_assessment):
        row = ResponseRow(grade=5, day=1, udise="2115", responses="A#B#C#")
        tokens, reason = check_response(row, small_assessment)
        assert tokens == ["A", "B", "C"]
        assert reason is None

    def test_check_when_string_truncated_then_rejected_with_expected_length(self, small_assessment):
        row = ResponseRow(grade=5, day=1, udise="2115", responses="A#B")
        tokens, reason = check_response(row, small_assessment)
        assert tokens is None
        assert reason == "Invalid response length (expected 3)"

    def test_check_when_too_many_tokens_then_rejected(self, small_assessment):
        row = ResponseRow(grade=5, day=1, udise="2115", responses="A#B#C#D")
        assert check_response(row, small_assessment)[1] == "Invalid response length (expected 3)"

    def test_check_when_udise_missing_then_missing_udise(self, small_assessment):
        row = ResponseRow(grade=5, day=1, udise="", responses="A#B#C")
        assert check_response(row, small_assessment) == (None, "Missing UDISE")

    @pytest.mark.parametrize("day", [None, 0, 3])
    def test_check_when_day_not_one_or_two_then_invalid_day(self, small_assessment, day):
        row = ResponseRow(grade=5, day=day, udise="2115", responses="A#B#C")
        assert check_response(row, small_assessment) == (None, "Invalid Day")

    def test_check_when_udise_and_day_both_bad_then_udise_reported(self, small_assessment):
        row = ResponseRow(grade=5, day=9, udise="", responses="")
        assert check_response(row, small_assessment)[1] == "Missing UDISE"


class TestScoreTokens:
    """Tests for score_tokens() positional alignment."""

    def test_score_when_token_lowercase_then_counted_correct(self):
        score = score_tokens("2115", 5, 1, ["b"], [key_item("Odia", "B", 1)])
        assert score.subjects["Odia"].marks == 1
        assert score.subjects["Odia"].total == 1

    def test_score_when_token_wrong_then_total_still_incremented(self):
        score = score_tokens("2115", 5, 1, ["C"], [key_item("Odia", "B", 1)])
        assert score.subjects["Odia"].marks == 0
        assert score.subjects["Odia"].total == 1

    def test_score_when_token_padded_then_trimmed_before_compare(self):
        score = score_tokens("2115", 5, 1, [" a "], [key_item("Odia", "A", 1)])
        assert score.subjects["Odia"].marks == 1

    def test_score_when_two_subjects_then_split_by_item_subject(self):
        items = [key_item("Odia", "A", 1), key_item("Odia", "B", 2),
                 key_item("EVS", "C", 3), key_item("EVS", "D", 4)]
        score = score_tokens("2115", 5, 1, ["A", "A", "C", "D"], items)
        assert (score.subjects["Odia"].marks, score.subjects["Odia"].total) == (1, 2)
        assert (score.subjects["EVS"].marks, score.subjects["EVS"].total) == (2, 2)

    def test_score_when_lo_codes_differ_then_tallied_per_subject_and_lo(self):
        items = [key_item("Odia", "A", 1, "L1"), key_item("Odia", "B", 2, "L2"),
                 key_item("Odia", "C", 3, "L1")]
        score = score_tokens("2115", 5, 1, ["A", "A", "C"], items)
        l1 = score.lo_tallies[("Odia", "L1")]
        l2 = score.lo_tallies[("Odia", "L2")]
        assert (l1.attempts, l1.correct) == (2, 2)
        assert (l2.attempts, l2.correct) == (1, 0)

    def test_score_when_blank_token_then_wrong_not_skipped(self):
        score = score_tokens("2115", 5, 1, [""], [key_item("Odia", "A", 1)])
        assert (score.subjects["Odia"].marks, score.subjects["Odia"].total) == (0, 1)


class TestScoreResponse:
    """Tests for score_response() against the real item keys."""

    def test_score_when_full_row_then_aligned_by_position(self, key_rows, assessment, response_factory):
        item_keys, _ = load_item_keys(key_rows, assessment)
        rows = response_factory(5, [("2115", 1, {"Odia": 10, "EVS": 4})])
        response_rows, _ = read_response_rows(rows, 5)

        score, reason = score_response(response_rows[0], item_keys, assessment)

        assert reason is None
        assert (score.subjects["Odia"].marks, score.subjects["Odia"].total) == (10, 15)
        assert (score.subjects["EVS"].marks, score.subjects["EVS"].total) == (4, 15)

    def test_score_when_grade8_day2_then_forty_items(self, key_rows, assessment, response_factory):
        item_keys, _ = load_item_keys(key_rows, assessment)
        rows = response_factory(8, [("2115", 2, {"Mathematics": 20, "Social Science": 1})])
        response_rows, _ = read_response_rows(rows, 8)

        score, _ = score_response(response_rows[0], item_keys, assessment)

        assert score.subjects["Mathematics"].marks == 20
        assert score.subjects["Social Science"].marks == 1
        assert sum(s.total for s in score.subjects.values()) == 40


class TestScoreGradeFile:
    """Tests for score_grade_file() counters."""

    def test_score_file_when_mixed_rows_then_skip_reasons_tallied(self, key_rows, assessment, response_factory):
        item_keys, _ = load_item_keys(key_rows, assessment)
        rows = response_factory(5, [
            ("2115", 1, {"Odia": 15}),
            ("", 1, {}),
            ("2116", 2, {"English": 2}),
        ])
        rows.append(["5", "3", "2115", "Angul", rows[1][4]])
        rows.append(["5", "1", "2115", "Angul", "A#B#C"])
        rows.append(["", "", "", "", ""])

        scores, summary = score_grade_file(rows, 5, item_keys, assessment)

        assert [s.udise for s in scores] == ["2115", "2116"]
        assert summary.processed == 2
        assert summary.skipped == 3
        assert summary.skip_reasons == {
            "Missing UDISE": 1,
            "Invalid Day": 1,
            "Invalid response length (expected 30)": 1,
        }

    def test_score_file_when_row_skipped_then_sheet_row_number_logged(self, key_rows, assessment, caplog):
        item_keys, _ = load_item_keys(key_rows, assessment)
        rows = [["Grade", "Day", "UDISE", "Responses"],
                ["", "", "", ""],
                ["5", "1", "2115", "A#B#C"]]

        with caplog.at_level(logging.DEBUG, logger="scoring"):
            score_grade_file(rows, 5, item_keys, assessment)

        assert "Grade 5 row 3 skipped: Invalid response length (expected 30)" in caplog.text

    def test_score_file_when_responses_column_missing_then_no_rows_not_fatal(self, key_rows, assessment, caplog):
        item_keys, _ = load_item_keys(key_rows, assessment)
        rows = [["Grade", "Day", "UDISE"], ["5", "1", "2115"]]

        scores, summary = score_grade_file(rows, 5, item_keys, assessment)

        assert scores == []
        assert summary.missing_columns == ["responses"]
        assert "Grade 5 file missing required columns: responses" in caplog.text
        assert "Grade 5: no valid response rows" in caplog.text

    def test_score_file_when_grade_column_absent_then_still_scored(self, key_rows, assessment):
        item_keys, _ = load_item_keys(key_rows, assessment)
        response = "#".join(it.answer_key for it in item_keys['grade8_day1'])
        rows = [["UDISE Code", "Assessment Day", "Answers"], ["2115", "1", response + "#"]]

        scores, summary = score_grade_file(rows, 8, item_keys, assessment)

        assert summary.processed == 1
        assert all(s.marks == 20 for s in scores[0].subjects.values())
