"""Unit tests for siege_etl.normalize."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from siege_etl.normalize import (
    normalize_space,
    normalize_username,
    one_month_before,
    parse_instant,
    parse_progress,
    trim,
)


# ---------------------------------------------------------------------------
# trim / normalize_space
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  zezima  ") == "zezima"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("iron   man") == "iron man"

    def test_collapses_tabs(self):
        assert normalize_space("iron\t\tman") == "iron man"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# normalize_username
# ---------------------------------------------------------------------------

class TestNormalizeUsername:
    def test_lowercases(self):
        assert normalize_username("Zezima") == "zezima"

    def test_collapses_and_trims(self):
        assert normalize_username("  Dan   Xo ") == "dan xo"

    def test_internal_space_is_significant(self):
        assert normalize_username("Dan xo") != normalize_username("Danxo")

    def test_blank_is_none(self):
        assert normalize_username("  ") is None

    def test_none(self):
        assert normalize_username(None) is None


# ---------------------------------------------------------------------------
# parse_instant
# ---------------------------------------------------------------------------

class TestParseInstant:
    def test_z_suffix(self):
        assert parse_instant("2025-05-01T12:00:00.000Z") == datetime(
            2025, 5, 1, 12, 0, tzinfo=timezone.utc
        )

    def test_offset_converted_to_utc(self):
        result = parse_instant("2025-05-01T14:00:00+02:00")
        assert result == datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert result.utcoffset() == timedelta(0)

    def test_naive_assumed_utc(self):
        assert parse_instant("2025-05-01T12:00:00").tzinfo is not None

    def test_garbage_returns_none(self):
        assert parse_instant("next tuesday") is None

    def test_non_string_returns_none(self):
        assert parse_instant(1714564800) is None  # type: ignore[arg-type]

    def test_none(self):
        assert parse_instant(None) is None


# ---------------------------------------------------------------------------
# parse_progress
# ---------------------------------------------------------------------------

class TestParseProgress:
    def test_int(self):
        assert parse_progress(1500) == Decimal(1500)

    def test_float_keeps_decimal_text(self):
        assert parse_progress(1.1) == Decimal("1.1")

    def test_numeric_string(self):
        assert parse_progress(" 42.5 ") == Decimal("42.5")

    def test_negative_is_kept(self):
        assert parse_progress(-3) == Decimal(-3)

    def test_bool_rejected(self):
        assert parse_progress(True) is None

    def test_nan_rejected(self):
        assert parse_progress("NaN") is None

    def test_infinity_rejected(self):
        assert parse_progress(float("inf")) is None

    def test_garbage_rejected(self):
        assert parse_progress("lots") is None

    def test_none(self):
        assert parse_progress(None) is None

    def test_dict_rejected(self):
        assert parse_progress({"gained": 5}) is None


# ---------------------------------------------------------------------------
# one_month_before
# ---------------------------------------------------------------------------

class TestOneMonthBefore:
    def test_mid_month(self):
        now = datetime(2025, 6, 15, 9, 30, tzinfo=timezone.utc)
        assert one_month_before(now) == datetime(2025, 5, 15, 9, 30, tzinfo=timezone.utc)

    def test_january_wraps_year(self):
        now = datetime(2025, 1, 10, tzinfo=timezone.utc)
        assert one_month_before(now) == datetime(2024, 12, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "now, expected",
        [
            (datetime(2025, 3, 31, tzinfo=timezone.utc), datetime(2025, 2, 28, tzinfo=timezone.utc)),
            (datetime(2024, 3, 31, tzinfo=timezone.utc), datetime(2024, 2, 29, tzinfo=timezone.utc)),
            (datetime(2025, 5, 31, tzinfo=timezone.utc), datetime(2025, 4, 30, tzinfo=timezone.utc)),
        ],
    )
    def test_day_clamped_to_month_end(self, now, expected):
        assert one_month_before(now) == expected
