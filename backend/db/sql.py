"""
SQL execution helpers for the registry queries.

Rules enforced:
1. Use :name param style only (SQLAlchemy bind params)
2. Pass Python date/datetime objects directly (no .isoformat() conversion)
3. Never use percent-paren psycopg2-specific style

Usage:
    from db.sql import run_sql

    rows = run_sql(
        session,
        '''
        SELECT identifier, change_type
        FROM gib_user_changelog
        WHERE document_type = :document_type
          AND changed_at > :since
        ''',
        document_type=1,
        since=datetime(2026, 1, 1)
    )
"""
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import text


PSYCOPG2_PARAM_PATTERN = re.compile(r'%\([a-zA-Z_][a-zA-Z0-9_]*\)s')

# Parameters that must always be date/datetime objects
DATE_PARAM_NAMES = {'since', 'until', 'as_of', 'cutoff', 'now'}


class SQLParamStyleError(Exception):
    """Raised when SQL uses incorrect parameter style."""
    pass


class SQLDateParamError(Exception):
    """Raised when date parameters are not Python date/datetime objects."""
    pass


def validate_sql_text(sql: str) -> None:
    """
    Validate that SQL text uses correct :name param style.

    Raises SQLParamStyleError if psycopg2 percent-paren style is detected.
    """
    matches = PSYCOPG2_PARAM_PATTERN.findall(sql)
    if matches:
        raise SQLParamStyleError(
            f"SQL contains psycopg2-style params: {matches}. "
            f"Use SQLAlchemy :name style instead."
        )


def validate_params(params: Dict[str, Any]) -> None:
    """
    Validate that date parameters are Python date/datetime objects.

    Raises SQLDateParamError if date params are strings.
    """
    for key, value in params.items():
        is_date_param = (
            key in DATE_PARAM_NAMES or
            key.endswith('_at') or
            key.endswith('_date')
        )

        if is_date_param and value is not None:
            if isinstance(value, str):
                raise SQLDateParamError(
                    f"Date parameter '{key}' is a string ('{value}'). "
                    f"Pass a Python date or datetime object instead."
                )
            if not isinstance(value, (date, datetime)):
                raise SQLDateParamError(
                    f"Date parameter '{key}' has type {type(value).__name__}. "
                    f"Expected date or datetime."
                )


def run_sql(
    db,
    sql: str,
    validate: bool = True,
    **params
) -> List[Tuple]:
    """
    Execute SQL with validation and best-practice enforcement.

    Args:
        db: SQLAlchemy session (or object with .session.execute)
        sql: SQL text using :name param style
        validate: Whether to validate SQL and params (default True)
        **params: Named parameters to pass to the query

    Returns:
        List of result rows

    Raises:
        SQLParamStyleError: If SQL uses psycopg2 percent-paren style
        SQLDateParamError: If date params are strings instead of date objects
    """
    if validate:
        validate_sql_text(sql)
        validate_params(params)

    session = getattr(db, 'session', db)

    result = session.execute(text(sql), params)
    return result.fetchall()


def run_sql_scalar(
    db,
    sql: str,
    validate: bool = True,
    **params
) -> Any:
    """
    Execute SQL and return a single scalar value.

    Useful for COUNT(*), MIN(), pg_try_advisory_xact_lock(), etc.
    """
    if validate:
        validate_sql_text(sql)
        validate_params(params)

    session = getattr(db, 'session', db)
    result = session.execute(text(sql), params)
    row = result.fetchone()
    return row[0] if row else None


def run_sql_one(
    db,
    sql: str,
    validate: bool = True,
    **params
) -> Optional[Any]:
    """
    Execute SQL and return a single row (as a mapping) or None.
    """
    if validate:
        validate_sql_text(sql)
        validate_params(params)

    session = getattr(db, 'session', db)
    result = session.execute(text(sql), params)
    return result.mappings().fetchone()


def run_sql_exec(
    db,
    sql: str,
    validate: bool = True,
    **params
) -> int:
    """
    Execute a DML/DDL statement and return the affected row count.
    """
    if validate:
        validate_sql_text(sql)
        validate_params(params)

    session = getattr(db, 'session', db)
    result = session.execute(text(sql), params)
    return result.rowcount
