"""
Pydantic models for API param validation.

Key features:
- Frozen models (immutable after normalization)
- Auto type coercion with clear error messages
- Category tokens resolved to the Category enum at the boundary

Usage:
    from api.contracts.pydantic_models import ChangesParams

    params = ChangesParams(category='einvoice', since='2026-10-01T00:00:00')
    params.since  # naive Istanbul datetime
"""

from .base import BaseParamsModel
from .gib_users import (
    ArchiveListParams,
    ChangesParams,
    UserBatchParams,
    UserLookupParams,
    UserSearchParams,
)

__all__ = [
    'BaseParamsModel',
    'ArchiveListParams',
    'ChangesParams',
    'UserBatchParams',
    'UserLookupParams',
    'UserSearchParams',
]
