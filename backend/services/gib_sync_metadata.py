"""
Sync metadata - the single 'gib-gibuser-sync' row in sync_metadata

Three write paths:
    update_in_transaction: full upsert inside the data transaction (counts,
                           duration, success status), commits with the data
    update_status_only:    post-commit status/error update
    try_update_failure:    best-effort failure record; never raises

SyncTimeProvider caches last_sync_at for the read API (5 minute TTL) and is
invalidated by the orchestrator after every applied run.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text

from constants import MAX_ERROR_LENGTH, SYNC_METADATA_KEY, SYNC_STATUS_FAILED, trim_to_max_length
from db.sql import run_sql_exec, run_sql_one
from services.gib_sync_sql import (
    SELECT_SYNC_METADATA_SQL,
    build_sync_metadata_failure_update_sql,
    build_sync_metadata_status_update_sql,
    build_sync_metadata_upsert_sql,
)
from utils.normalize import registry_now

logger = logging.getLogger(__name__)


class SyncMetadataStore:

    def __init__(self, session_factory=None, key: str = SYNC_METADATA_KEY):
        self._session_factory = session_factory
        self.key = key

    def _new_session(self):
        if self._session_factory is None:
            from db.engine import session_factory
            self._session_factory = session_factory("job")
        return self._session_factory()

    # =========================================================================
    # Writes
    # =========================================================================

    def update_in_transaction(
        self,
        session,
        duration_seconds: float,
        status: str,
        attempt_at: Optional[datetime] = None,
    ):
        """Upsert inside the caller's transaction; the caller commits."""
        now = attempt_at or registry_now()
        session.execute(
            text(build_sync_metadata_upsert_sql()),
            {
                'key': self.key,
                'sync_at': now,
                'duration_seconds': float(duration_seconds),
                'status': status,
                'error': None,
                'attempt_at': now,
                'failure_at': None,
            },
        )

    def update_status_only(self, status: str, error: Optional[str] = None, attempt_at: Optional[datetime] = None):
        """Post-commit status update in its own short transaction."""
        session = self._new_session()
        try:
            run_sql_exec(
                session,
                build_sync_metadata_status_update_sql(),
                key=self.key,
                status=status,
                error=trim_to_max_length(error, MAX_ERROR_LENGTH),
                attempt_at=attempt_at or registry_now(),
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def try_update_failure(self, error: BaseException, attempt_at: Optional[datetime] = None) -> bool:
        """
        Record a failed run. Errors here are logged, never raised, so the
        original failure is what reaches the caller.
        """
        now = attempt_at or registry_now()
        session = self._new_session()
        try:
            run_sql_exec(
                session,
                build_sync_metadata_failure_update_sql(),
                key=self.key,
                status=SYNC_STATUS_FAILED,
                error=trim_to_max_length(str(error), MAX_ERROR_LENGTH),
                attempt_at=now,
                failure_at=now,
            )
            session.commit()
            return True
        except Exception as e:
            session.rollback()
            logger.warning(f"Failed to update sync metadata after failure: {e}")
            return False
        finally:
            session.close()

    # =========================================================================
    # Reads
    # =========================================================================

    def fetch(self) -> Optional[Dict[str, Any]]:
        session = self._new_session()
        try:
            row = run_sql_one(session, SELECT_SYNC_METADATA_SQL, key=self.key)
            return dict(row) if row is not None else None
        finally:
            session.close()

    def fetch_last_sync_at(self) -> Optional[datetime]:
        row = self.fetch()
        return row['last_sync_at'] if row else None


class SyncTimeProvider:
    """
    Process-wide cache of last_sync_at.

    Double-checked under a lock so concurrent requests trigger one DB read
    per TTL window.
    """

    DEFAULT_TTL_SECONDS = 300

    def __init__(
        self,
        fetch: Callable[[], Optional[datetime]],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[datetime] = None
        self._loaded_at: Optional[float] = None

    def _fresh(self) -> bool:
        return self._loaded_at is not None and (self._clock() - self._loaded_at) < self._ttl

    def get_last_sync_at(self) -> Optional[datetime]:
        if self._fresh():
            return self._value
        with self._lock:
            if self._fresh():
                return self._value
            self._value = self._fetch()
            self._loaded_at = self._clock()
            return self._value

    def invalidate(self):
        with self._lock:
            self._loaded_at = None
            self._value = None
