"""
Cache key helpers.

Provides stable, normalized cache key construction so the read side and the
sync's invalidation always agree on key shape.

Point lookup key:  {category prefix}:id:{identifier}   e.g. einvoice:id:1234567890
"""

from typing import Iterable, List

from constants import Category


def identifier_prefix(category) -> str:
    """Prefix shared by every point-lookup key of a category."""
    return f"{Category.parse(category).cache_prefix}:id:"


def build_identifier_cache_key(category, identifier: str) -> str:
    return f"{identifier_prefix(category)}{identifier.strip()}"


def build_identifier_cache_keys(category, identifiers: Iterable[str]) -> List[str]:
    prefix = identifier_prefix(category)
    return [f"{prefix}{identifier.strip()}" for identifier in identifiers]
