"""
Canonical database engine factory.

Every process (sync job, read API, gauge refresher, scripts) gets its
engine from here so pool and timeout settings stay in one place.

Usage:
    from db.engine import get_engine

    # For cron/one-shot runs such as the GIB sync (NullPool)
    engine = get_engine("job")

    # For the long-lived read API (QueuePool)
    engine = get_engine("web")

Why NullPool for jobs?
    - The sync runs once per schedule tick and exits
    - Pooling doesn't help and increases stale connection risk
    - The run holds a single connection for its whole transaction anyway

Warmup with retry:
    - Exponential backoff (0.75s, 1.5s, 3s, 6s)
    - Fails fast after 4 attempts with clear error
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

log = logging.getLogger(__name__)

# Module-level engine cache (per-process singletons)
_ENGINE_JOB: Optional[Engine] = None
_ENGINE_WEB: Optional[Engine] = None


def _base_options() -> Dict[str, Any]:
    """Engine options from Config.SQLALCHEMY_ENGINE_OPTIONS (copied)."""
    from config import Config

    opts = dict(getattr(Config, "SQLALCHEMY_ENGINE_OPTIONS", {}) or {})
    return opts


def _warmup(engine: Engine, attempts: int = 4, base_sleep: float = 0.75) -> None:
    """
    Warm up database connection with exponential backoff retry.

    Args:
        engine: SQLAlchemy engine to warm up
        attempts: Number of retry attempts (default 4)
        base_sleep: Base sleep time in seconds (doubles each attempt)

    Raises:
        OperationalError: If all attempts fail
    """
    last_error: Optional[Exception] = None

    for i in range(attempts):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            log.info("db_warmup_success attempt=%d", i + 1)
            return
        except OperationalError as e:
            last_error = e
            sleep_s = base_sleep * (2 ** i)
            log.warning(
                "db_warmup_retry attempt=%d/%d sleep_s=%.2f err=%s",
                i + 1, attempts, sleep_s, str(e)[:100]
            )
            time.sleep(sleep_s)

    log.error("db_warmup_failed after %d attempts", attempts)
    raise last_error  # type: ignore[misc]


def get_engine(kind: str = "job") -> Engine:
    """
    Get a database engine configured for the specified use case.

    Args:
        kind: Engine type
            - "job": For cron/one-shot runs. Uses NullPool.
            - "web": For the long-lived read API. Uses QueuePool settings
                     from Config.

    Returns:
        SQLAlchemy Engine instance (cached per-process)

    Raises:
        ValueError: If kind is not "job" or "web"
        OperationalError: If database connection fails after retries
    """
    global _ENGINE_JOB, _ENGINE_WEB

    if kind not in ("job", "web"):
        raise ValueError("kind must be 'job' or 'web'")

    if kind == "job" and _ENGINE_JOB is not None:
        return _ENGINE_JOB
    if kind == "web" and _ENGINE_WEB is not None:
        return _ENGINE_WEB

    from config import get_database_url
    database_url = get_database_url()

    opts = _base_options()
    connect_args = dict(opts.pop("connect_args", {}) or {})
    connect_args.setdefault("connect_timeout", 30)

    if kind == "job":
        engine = create_engine(
            database_url,
            poolclass=NullPool,
            connect_args=connect_args,
            pool_pre_ping=opts.get("pool_pre_ping", True),
        )
        log.info("db_engine_created kind=job poolclass=NullPool")

        _warmup(engine)

        _ENGINE_JOB = engine
        return engine

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        **opts,
    )
    log.info(
        "db_engine_created kind=web pool_size=%s max_overflow=%s",
        opts.get("pool_size", "default"),
        opts.get("max_overflow", "default")
    )

    _warmup(engine)

    _ENGINE_WEB = engine
    return engine


def session_factory(kind: str = "job") -> sessionmaker:
    """sessionmaker bound to the cached engine of the given kind."""
    return sessionmaker(bind=get_engine(kind), class_=Session, expire_on_commit=False)


def dispose_engines() -> None:
    """
    Dispose all cached engines (for testing/cleanup).
    """
    global _ENGINE_JOB, _ENGINE_WEB

    for engine in (_ENGINE_JOB, _ENGINE_WEB):
        if engine is None:
            continue
        try:
            engine.dispose()
        except Exception as e:
            log.warning("db_engine_dispose_failed err=%s", str(e)[:100])

    _ENGINE_JOB = None
    _ENGINE_WEB = None

    log.info("db_engines_disposed")
