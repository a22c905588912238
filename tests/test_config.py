"""
Unit Tests for AssessmentConfig

Tests for the program tables and their consistency checks.
"""

from dataclasses import replace

import pytest

from config import AssessmentConfig, ConfigError, DEFAULT_CONFIG


class TestDefaultConfig:
    """Tests for the shipped program tables."""

    def test_validate_when_default_then_passes(self):
        """The shipped tables must be self-consistent."""
        assert DEFAULT_CONFIG.validate() is DEFAULT_CONFIG

    def test_buckets_when_default_then_four_in_fixed_order(self):
        assert DEFAULT_CONFIG.buckets() == ['grade5_day1', 'grade5_day2', 'grade8_day1', 'grade8_day2']

    def test_expected_counts_when_default_then_30_30_60_40(self):
        counts = [DEFAULT_CONFIG.expected_counts[b] for b in DEFAULT_CONFIG.buckets()]
        assert counts == [30, 30, 60, 40]

    def test_grade_subjects_when_grade8_then_day1_subjects_first(self):
        assert DEFAULT_CONFIG.grade_subjects(8) == [
            'Odia', 'English', 'Science', 'Mathematics', 'Social Science'
        ]

    def test_day_for_when_subject_case_differs_then_matches(self):
        assert DEFAULT_CONFIG.day_for(5, "evs") == 1
        assert DEFAULT_CONFIG.day_for(8, " social science ") == 2

    def test_day_for_when_subject_not_taught_in_grade_then_none(self):
        """Science is a grade 8 subject only."""
        assert DEFAULT_CONFIG.day_for(5, "Science") is None

    def test_canonical_subject_when_lowercase_then_configured_spelling(self):
        assert DEFAULT_CONFIG.canonical_subject(5, "mathematics") == "Mathematics"

    def test_bucket_name_round_trips_through_parse_bucket(self):
        assert AssessmentConfig.parse_bucket(AssessmentConfig.bucket_name(8, 2)) == (8, 2)


class TestConfigValidation:
    """Tests for validate() rejecting inconsistent tables."""

    def test_validate_when_count_disagrees_with_composition_then_raises(self):
        bad = replace(DEFAULT_CONFIG, expected_counts={**DEFAULT_CONFIG.expected_counts, 'grade8_day2': 41})
        with pytest.raises(ConfigError, match="grade8_day2"):
            bad.validate()

    def test_validate_when_subject_on_wrong_day_then_raises(self):
        order = {**DEFAULT_CONFIG.subject_order, 'grade5_day1': ['Odia', 'English']}
        bad = replace(DEFAULT_CONFIG, subject_order=order)
        with pytest.raises(ConfigError, match="English"):
            bad.validate()

    def test_validate_when_bucket_has_no_expected_count_then_raises(self):
        counts = dict(DEFAULT_CONFIG.expected_counts)
        del counts['grade5_day2']
        with pytest.raises(ConfigError, match="No expected item count for grade5_day2"):
            replace(DEFAULT_CONFIG, expected_counts=counts).validate()

    def test_validate_when_delimiter_too_long_then_raises(self):
        with pytest.raises(ConfigError, match="single character"):
            replace(DEFAULT_CONFIG, response_delimiter="##").validate()

    def test_validate_when_small_program_then_passes(self, small_assessment):
        small_assessment.validate()
