"""
Input Normalization Utilities
=============================

Single source of truth for normalizing GIB registry values and request inputs.
All parsing of external inputs happens here, nowhere else.

Usage:
    from utils.normalize import turkish_lower, parse_source_timestamp, ValidationError

    title_lower = turkish_lower("İSTANBUL IŞIK A.Ş.")   # 'istanbul ışık a.ş.'
    created = parse_source_timestamp("2021-03-04T10:15:00.1234567+03:00")
"""

import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from constants import IDENTIFIER_PATTERN, REGISTRY_TIME_ZONE

_IDENTIFIER_RE = re.compile(IDENTIFIER_PATTERN)

# GIB list timestamps carry up to 7 fractional digits; datetime accepts 6
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')


class ValidationError(ValueError):
    """Raised when input cannot be normalized to expected type."""

    def __init__(self, message: str, field: str = None, received_value=None):
        super().__init__(message)
        self.field = field
        self.received_value = received_value


# ============================================================================
# TEXT
# ============================================================================

def turkish_lower(value: Optional[str]) -> Optional[str]:
    """
    Lowercase with Turkish dotted/dotless I rules.

    'I' -> 'ı' and 'İ' -> 'i' are mapped before str.lower(), which would
    otherwise turn 'I' into 'i' and 'İ' into 'i' + combining dot.
    """
    if value is None:
        return None
    return value.replace('I', 'ı').replace('İ', 'i').lower()


def to_str(value: Optional[str], *, default: Optional[str] = None) -> Optional[str]:
    """Strip whitespace; empty or whitespace-only becomes default."""
    if value is None:
        return default
    result = str(value).strip()
    return result if result else default


# ============================================================================
# IDENTIFIERS
# ============================================================================

def is_valid_identifier(value: Optional[str]) -> bool:
    """VKN (10 digits) or TCKN (11 digits)."""
    return bool(value) and _IDENTIFIER_RE.match(value) is not None


def normalize_identifier(value: Optional[str], *, field: str = 'identifier') -> str:
    """
    Strip and validate a registry identifier.

    Raises:
        ValidationError: not a 10-11 digit string
    """
    identifier = to_str(value)
    if not is_valid_identifier(identifier):
        raise ValidationError(
            f"Expected 10-11 digit identifier, got: {value!r}",
            field=field,
            received_value=value,
        )
    return identifier


# ============================================================================
# TIMESTAMPS
# ============================================================================

def registry_now() -> datetime:
    """Current Istanbul wall-clock time as a naive datetime."""
    return datetime.now(ZoneInfo(REGISTRY_TIME_ZONE)).replace(tzinfo=None)


def parse_source_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a timestamp from the GIB record file.

    The registry stores wall-clock times without zone, so an explicit offset
    is dropped after parsing. Empty input returns None.

    Raises:
        ValidationError: value is not an ISO-8601 timestamp
    """
    text = to_str(value)
    if text is None:
        return None
    text = _FRACTION_RE.sub(r'\1', text)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(
            f"Expected ISO timestamp, got: {value!r}",
            received_value=value,
        )
    return parsed.replace(tzinfo=None)


def to_datetime(
    value,
    *,
    default: Optional[datetime] = None,
    field: str = None
) -> Optional[datetime]:
    """
    Convert ISO string to a naive registry (Istanbul) datetime.

    Accepts formats:
        - ISO 8601 format (e.g., 2024-01-15T10:30:00Z)
        - Already a datetime object (aware values are converted to Istanbul time)

    Raises:
        ValidationError: If value cannot be parsed as datetime
    """
    if value is None or value == "":
        return default
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (ValueError, TypeError):
            raise ValidationError(
                f"Expected ISO datetime, got {type(value).__name__}: {value!r}",
                field=field,
                received_value=value
            )
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(REGISTRY_TIME_ZONE)).replace(tzinfo=None)
    return value
