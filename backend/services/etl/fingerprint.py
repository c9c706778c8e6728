"""
ETL Fingerprinting Utilities

Provides hashing functions for:
- File-level fingerprinting (archive checksums)
- Alias signatures (order-independent alias canonicalization)
- Content fingerprints (per-identifier change detection)

The content fingerprint is computed in SQL during the diff (see
services/gib_sync_sql.py). compute_content_fingerprint() mirrors that
expression byte for byte so tests and tools can reproduce it.
"""
import hashlib
from datetime import datetime
from typing import Iterable, Optional, Tuple


def compute_file_sha256(filepath: str) -> str:
    """
    Compute SHA256 hash of entire file.

    Args:
        filepath: Path to file

    Returns:
        64-character hex SHA256 hash
    """
    sha256 = hashlib.sha256()
    with open(filepath, 'rb') as f:
        for chunk in iter(lambda: f.read(8192), b''):
            sha256.update(chunk)
    return sha256.hexdigest()


def pg_timestamp_text(value: datetime) -> str:
    """
    Render a naive datetime the way PostgreSQL casts timestamp to text.

    '2024-01-15 10:30:00', fractional seconds without trailing zeros.
    """
    text = value.strftime('%Y-%m-%d %H:%M:%S')
    if value.microsecond:
        text += ('.%06d' % value.microsecond).rstrip('0')
    return text


def compute_alias_signature(aliases: Iterable[Tuple[str, str]]) -> Optional[str]:
    """
    Canonical alias list: 'name:class' pairs de-duplicated and sorted.

    Args:
        aliases: (alias name, alias class) pairs, any order, duplicates allowed

    Returns:
        Comma-joined signature, or None for an empty alias set
    """
    # PostgreSQL orders text by collation; registry aliases are ASCII URNs
    unique = sorted(set(aliases))
    if not unique:
        return None
    return ','.join(f'{name}:{alias_class}' for name, alias_class in unique)


def compute_content_fingerprint(
    identifier: str,
    title_lower: Optional[str],
    account_type: Optional[str],
    subject_type: Optional[str],
    first_registered_at: datetime,
    aliases: Iterable[Tuple[str, str]],
) -> str:
    """
    Content fingerprint of one aggregated identifier.

    Two snapshots of an identifier are unchanged iff their fingerprints
    are equal. Alias order never affects the result.

    Returns:
        32-character hex md5
    """
    combined = (
        identifier
        + (title_lower or '')
        + (account_type or '')
        + (subject_type or '')
        + pg_timestamp_text(first_registered_at)
        + (compute_alias_signature(aliases) or '')
    )
    return hashlib.md5(combined.encode('utf-8')).hexdigest()
