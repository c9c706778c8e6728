"""
Shared Pydantic types and validators for API params.

- CommaList: "a,b,c" -> ["a", "b", "c"]
- CoercedInt: "20" -> 20 (empty input is rejected)
- RegistryDateTime: "2026-10-18T03:15:00Z" -> naive Istanbul datetime
"""

from datetime import datetime
from typing import Annotated, Any, List, Optional

from pydantic import BeforeValidator

from utils.normalize import ValidationError, to_datetime


def split_comma_list(v: Any) -> Optional[List[str]]:
    """
    Convert comma-separated string to list.

    Examples:
        "a,b,c" -> ["a", "b", "c"]
        ["a", "b"] -> ["a", "b"]
        None -> None
        "" -> None
    """
    if v is None or v == '':
        return None
    if isinstance(v, list):
        items = []
        for item in v:
            items.extend(split_comma_list(item) or [])
        return items or None
    if isinstance(v, str):
        items = [item.strip() for item in v.split(',') if item.strip()]
        return items if items else None
    return [str(v)]


def coerce_int(v: Any) -> Optional[int]:
    """Coerce value to int."""
    if v is None or v == '':
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        try:
            return int(v)
        except ValueError:
            return v  # type: ignore
    return int(v)


def coerce_registry_datetime(v: Any) -> Optional[datetime]:
    """ISO string or datetime -> naive Istanbul datetime."""
    try:
        return to_datetime(v)
    except ValidationError:
        # Let Pydantic validation handle the error
        return v


CommaList = Annotated[Optional[List[str]], BeforeValidator(split_comma_list)]
CoercedInt = Annotated[int, BeforeValidator(coerce_int)]
RegistryDateTime = Annotated[Optional[datetime], BeforeValidator(coerce_registry_datetime)]
