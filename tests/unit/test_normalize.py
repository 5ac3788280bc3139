"""Unit tests for school_migration.normalize."""

import pytest
from decimal import Decimal

from school_migration.normalize import (
    PHP_EMPTY_ARRAY,
    derive_current_stage,
    has_stage_data,
    is_stage_complete,
    normalize_email,
    normalize_school_name,
    normalize_space,
    parse_numeric,
    parse_php_evidence_count,
    parse_round,
    split_display_name,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# normalize_space / normalize_email
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_runs(self):
        assert normalize_space("Green   field\t Primary") == "Green field Primary"

    def test_none(self):
        assert normalize_space(None) is None


class TestNormalizeEmail:
    def test_lowercases_and_trims(self):
        assert normalize_email("  Jane.Doe@Example.ORG ") == "jane.doe@example.org"

    def test_empty(self):
        assert normalize_email("") is None


# ---------------------------------------------------------------------------
# normalize_school_name
# ---------------------------------------------------------------------------

class TestNormalizeSchoolName:
    def test_case_and_whitespace_insensitive(self):
        assert normalize_school_name("Greenfield Primary") == normalize_school_name(
            "  greenfield   PRIMARY "
        )

    def test_html_ampersand_decoded(self):
        assert normalize_school_name("St Mary &amp; St John") == normalize_school_name(
            "St Mary & St John"
        )

    def test_distinct_names_stay_distinct(self):
        assert normalize_school_name("Greenfield Primary") != normalize_school_name(
            "Greenfield Secondary"
        )

    def test_none(self):
        assert normalize_school_name("   ") is None


# ---------------------------------------------------------------------------
# stage data
# ---------------------------------------------------------------------------

class TestStageData:
    def test_empty_is_not_stage_data(self):
        assert has_stage_data("") is False

    def test_php_empty_array_is_not_stage_data(self):
        assert has_stage_data(PHP_EMPTY_ARRAY) is False
        assert has_stage_data("  a:0:{}  ") is False

    def test_serialized_array_is_stage_data(self):
        assert has_stage_data('a:1:{i:0;s:3:"abc";}') is True

    def test_short_value_is_data_but_not_complete(self):
        assert has_stage_data("1") is True
        assert is_stage_complete("1") is False

    def test_long_payload_is_complete(self):
        assert is_stage_complete('a:1:{i:0;s:3:"abc";}') is True

    def test_empty_array_never_complete(self):
        assert is_stage_complete(PHP_EMPTY_ARRAY) is False


class TestEvidenceCount:
    @pytest.mark.parametrize("value,expected", [
        ("3", 3),
        ('a:2:{i:0;s:1:"x";i:1;s:1:"y";}', 2),
        ("a:0:{}", 0),
        ("", 0),
        (None, 0),
        ("garbage", 0),
    ])
    def test_counts(self, value, expected):
        assert parse_php_evidence_count(value) == expected


class TestDeriveCurrentStage:
    def test_nothing_complete_is_inspire(self):
        assert derive_current_stage(False, False, False) == "inspire"

    def test_stage_two(self):
        assert derive_current_stage(True, True, False) == "investigate"

    def test_stage_three_wins(self):
        assert derive_current_stage(True, False, True) == "act"


# ---------------------------------------------------------------------------
# parse_round / parse_numeric
# ---------------------------------------------------------------------------

class TestParseRound:
    def test_valid(self):
        assert parse_round("3") == 3

    def test_defaults_to_one(self):
        assert parse_round("") == 1
        assert parse_round("abc") == 1
        assert parse_round("0") == 1
        assert parse_round("-2") == 1


class TestParseNumeric:
    def test_decimal(self):
        assert parse_numeric("51.5074") == Decimal("51.5074")

    def test_negative(self):
        assert parse_numeric("-0.1278") == Decimal("-0.1278")

    def test_invalid(self):
        assert parse_numeric("north") is None

    def test_nan_rejected(self):
        assert parse_numeric("NaN") is None


# ---------------------------------------------------------------------------
# split_display_name
# ---------------------------------------------------------------------------

class TestSplitDisplayName:
    def test_three_parts(self):
        assert split_display_name("Jane Doe, Greenfield Primary, Leeds") == [
            "Jane Doe", "Greenfield Primary", "Leeds",
        ]

    def test_single_part(self):
        assert split_display_name("Jane Doe") == ["Jane Doe"]

    def test_empty(self):
        assert split_display_name("") == []
