"""
Pydantic models for /api/v1/{category}/* endpoints.

Endpoints:
- {category}/<identifier>
- {category}/batch (POST)
- {category}/?search=
- {category}/changes
- {category}/archives
"""

from pydantic import Field, field_validator, model_validator

from constants import IDENTIFIER_PATTERN, Category
from services.gib_user_reader import (
    MAX_BATCH_IDENTIFIERS,
    MAX_CHANGES_PAGE_SIZE,
    MAX_SEARCH_LENGTH,
    MAX_SEARCH_PAGE_SIZE,
)

from .base import BaseParamsModel
from .types import CommaList, CoercedInt, RegistryDateTime


class UserLookupParams(BaseParamsModel):
    """Params for {category}/<identifier>."""

    category: Category
    identifier: str = Field(pattern=IDENTIFIER_PATTERN)
    as_of: RegistryDateTime = Field(
        default=None,
        alias='firstCreationTime',
        description="Only match users registered at or before this time"
    )


class UserBatchParams(BaseParamsModel):
    """Params for {category}/batch."""

    category: Category
    identifiers: CommaList = Field(default=None)

    @field_validator('identifiers')
    @classmethod
    def check_identifiers(cls, v):
        if not v:
            raise ValueError("identifiers must not be empty")
        if len(v) > MAX_BATCH_IDENTIFIERS:
            raise ValueError(f"At most {MAX_BATCH_IDENTIFIERS} identifiers can be queried at once")
        return v


class UserSearchParams(BaseParamsModel):
    """Params for {category}/ search."""

    category: Category
    search: str = Field(min_length=1, max_length=MAX_SEARCH_LENGTH)
    page: CoercedInt = Field(default=1, ge=1)
    page_size: CoercedInt = Field(default=20, ge=1, le=MAX_SEARCH_PAGE_SIZE, alias='pageSize')


class ChangesParams(BaseParamsModel):
    """Params for {category}/changes."""

    category: Category
    since: RegistryDateTime = Field(description="Exclusive lower bound (required)")
    until: RegistryDateTime = Field(default=None, description="Inclusive upper bound, capped at now")
    page: CoercedInt = Field(default=1, ge=1)
    page_size: CoercedInt = Field(default=100, ge=1, le=MAX_CHANGES_PAGE_SIZE, alias='pageSize')

    @model_validator(mode='after')
    def check_window(self):
        if self.since is None:
            raise ValueError("since is required")
        if self.until is not None and self.until <= self.since:
            raise ValueError("until must be later than since")
        return self


class ArchiveListParams(BaseParamsModel):
    """Params for {category}/archives."""

    category: Category

