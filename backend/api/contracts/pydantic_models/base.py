"""
Base Pydantic model for all API param schemas.

Key features:
- frozen=True: Immutable after normalization (prevents downstream mutation)
- populate_by_name=True: Accept both alias and field name
- extra='ignore': Ignore undeclared fields (safe)
- category normalized to the Category enum at boundary
"""

from pydantic import BaseModel, ConfigDict, field_validator

from constants import Category


class BaseParamsModel(BaseModel):
    """
    Base model for all API param schemas.

    All param models inherit from this to ensure consistent behavior:
    - Frozen after creation (immutable)
    - Whitespace stripped from strings
    - Both alias and field name accepted
    - Unknown fields ignored
    - category normalized to Category at boundary (not API token)
    """
    model_config = ConfigDict(
        frozen=True,  # Immutable after normalization
        str_strip_whitespace=True,  # Strip whitespace from strings
        populate_by_name=True,  # Accept both alias and field name
        extra='ignore',  # Ignore undeclared fields
    )

    @field_validator('category', mode='before', check_fields=False)
    @classmethod
    def normalize_category(cls, v):
        """Accepts 'einvoice', 'edespatch' or the document tags; returns Category."""
        if v is None:
            return v
        return Category.parse(v)
