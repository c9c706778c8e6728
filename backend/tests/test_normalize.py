"""
Unit tests for utils/normalize.py

Tests registry input normalization:
- Turkish case folding
- Identifier validation
- Source timestamp parsing (7 fractional digits, offsets)
- API datetime coercion to Istanbul wall-clock
"""

import pytest
from datetime import datetime, timezone

from utils.normalize import (
    ValidationError,
    is_valid_identifier,
    normalize_identifier,
    parse_source_timestamp,
    registry_now,
    to_datetime,
    to_str,
    turkish_lower,
)


class TestTurkishLower:
    """Tests for turkish_lower()"""

    def test_dotless_capital_i(self):
        assert turkish_lower("IŞIK") == "ışık"

    def test_dotted_capital_i(self):
        assert turkish_lower("İSTANBUL") == "istanbul"

    def test_mixed_title(self):
        assert turkish_lower("İSTANBUL IŞIK A.Ş.") == "istanbul ışık a.ş."

    def test_plain_ascii(self):
        assert turkish_lower("ACME Ltd") == "acme ltd"

    def test_none_passthrough(self):
        assert turkish_lower(None) is None


class TestToStr:
    """Tests for to_str()"""

    def test_strips_whitespace(self):
        assert to_str("  abc  ") == "abc"

    def test_empty_returns_default(self):
        assert to_str("") is None
        assert to_str("   ", default="x") == "x"

    def test_none_returns_default(self):
        assert to_str(None, default="fallback") == "fallback"


class TestIdentifier:
    """Tests for is_valid_identifier() / normalize_identifier()"""

    def test_vkn_and_tckn_are_valid(self):
        assert is_valid_identifier("1234567890")
        assert is_valid_identifier("12345678901")

    def test_wrong_lengths_are_invalid(self):
        assert not is_valid_identifier("123456789")
        assert not is_valid_identifier("123456789012")

    def test_non_digits_are_invalid(self):
        assert not is_valid_identifier("12345abcde")
        assert not is_valid_identifier("")
        assert not is_valid_identifier(None)

    def test_normalize_strips(self):
        assert normalize_identifier(" 1234567890 ") == "1234567890"

    def test_normalize_raises_with_field(self):
        with pytest.raises(ValidationError) as exc:
            normalize_identifier("12-34", field="identifiers")
        assert exc.value.field == "identifiers"
        assert exc.value.received_value == "12-34"
        assert "10-11 digit" in str(exc.value)


class TestParseSourceTimestamp:
    """Tests for parse_source_timestamp()"""

    def test_seven_fraction_digits(self):
        result = parse_source_timestamp("2021-03-04T10:15:00.1234567")
        assert result == datetime(2021, 3, 4, 10, 15, 0, 123456)

    def test_offset_is_dropped_not_converted(self):
        result = parse_source_timestamp("2021-03-04T10:15:00+03:00")
        assert result == datetime(2021, 3, 4, 10, 15, 0)
        assert result.tzinfo is None

    def test_zulu_suffix(self):
        result = parse_source_timestamp("2021-03-04T10:15:00Z")
        assert result == datetime(2021, 3, 4, 10, 15, 0)

    def test_empty_returns_none(self):
        assert parse_source_timestamp(None) is None
        assert parse_source_timestamp("  ") is None

    def test_garbage_raises(self):
        with pytest.raises(ValidationError):
            parse_source_timestamp("yesterday")


class TestToDatetime:
    """Tests for to_datetime()"""

    def test_naive_string_kept_as_is(self):
        assert to_datetime("2026-10-01T12:00:00") == datetime(2026, 10, 1, 12, 0, 0)

    def test_utc_string_converted_to_istanbul(self):
        # Istanbul is UTC+3 all year
        assert to_datetime("2026-10-01T09:00:00Z") == datetime(2026, 10, 1, 12, 0, 0)

    def test_aware_datetime_converted(self):
        value = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert to_datetime(value) == datetime(2026, 1, 1, 3, 0)

    def test_empty_returns_default(self):
        default = datetime(2020, 1, 1)
        assert to_datetime("", default=default) == default
        assert to_datetime(None) is None

    def test_invalid_raises_with_field(self):
        with pytest.raises(ValidationError) as exc:
            to_datetime("not-a-date", field="since")
        assert exc.value.field == "since"


class TestRegistryNow:

    def test_is_naive(self):
        assert registry_now().tzinfo is None
