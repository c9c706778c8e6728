"""
Transactional applier - one locked unit of work per sync run

Inside a single transaction:

    pg_try_advisory_xact_lock      -> not acquired: rollback, SkippedByLock
    clear staging, COPY PK + GB, staging indexes
    per category (EINVOICE, EDESPATCH):
        build _new_data, classify, removal guard
        upsert added + modified
        hard delete removed (unless vetoed)
        change log: added, then modified, then removed
    prune change log by retention
    sync_metadata upsert (status success)
    COMMIT

Any exception before COMMIT rolls everything back and propagates. After the
commit the derived views are refreshed (ViewRefreshError propagates, data
stays committed), the point-lookup cache is invalidated and view counts are
read for reporting.

Outcomes are returned, not raised: SkippedByLock | Applied | GuardVetoed.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy import text

from constants import SYNC_ADVISORY_LOCK_ID, SYNC_STATUS_SUCCESS, Category, ChangeKind, OriginList
from services.etl.run_context import RunContext
from services.gib_cache_invalidator import CacheInvalidator
from services.gib_diff_engine import CategoryDiff, DiffEngine
from services.gib_errors import raise_if_cancelled
from services.gib_metrics import MetricsPort, NullMetrics
from services.gib_removal_guard import RemovalGuard
from services.gib_staging_loader import StagingLoader
from services.gib_sync_config import get_change_retention_days
from services.gib_sync_metadata import SyncMetadataStore
from services.gib_sync_sql import (
    TRY_ADVISORY_LOCK_SQL,
    build_changelog_from_snapshot_sql,
    build_changelog_removed_sql,
    build_hard_delete_sql,
    build_prune_changelog_sql,
    build_upsert_sql,
    build_view_count_sql,
)
from services.gib_view_refresher import ViewRefresher
from services.gib_xml_parser import ParseStats

logger = logging.getLogger(__name__)


# =============================================================================
# Outcomes
# =============================================================================

@dataclass
class SkippedByLock:
    """Another run holds the advisory lock; nothing was touched."""
    reason: str = 'AdvisoryLockNotAcquired'

    kind = 'skipped_by_lock'


@dataclass
class Applied:
    """Committed run. diffs are in Category order."""
    diffs: List[CategoryDiff] = field(default_factory=list)
    rows_staged: Dict[OriginList, int] = field(default_factory=dict)
    view_counts: Dict[Category, int] = field(default_factory=dict)
    parse_alarms: List[ParseStats] = field(default_factory=list)
    pruned_changes: int = 0

    kind = 'applied'

    def diff_for(self, category: Category) -> Optional[CategoryDiff]:
        for diff in self.diffs:
            if diff.category == category:
                return diff
        return None

    @property
    def pk_count(self) -> int:
        return self.rows_staged.get(OriginList.PK, 0)

    @property
    def gb_count(self) -> int:
        return self.rows_staged.get(OriginList.GB, 0)


@dataclass
class GuardVetoed(Applied):
    """Committed run where at least one category kept its rows because the removal guard vetoed."""

    kind = 'guard_vetoed'

    @property
    def vetoed(self) -> List[CategoryDiff]:
        return [d for d in self.diffs if d.removal_vetoed]


# =============================================================================
# Applier
# =============================================================================

class TransactionalApplier:

    def __init__(
        self,
        session_factory=None,
        loader: Optional[StagingLoader] = None,
        diff_engine: Optional[DiffEngine] = None,
        guard: Optional[RemovalGuard] = None,
        refresher: Optional[ViewRefresher] = None,
        invalidator: Optional[CacheInvalidator] = None,
        metadata: Optional[SyncMetadataStore] = None,
        metrics: Optional[MetricsPort] = None,
        retention_days: Optional[int] = None,
    ):
        self.metrics = metrics or NullMetrics()
        self._session_factory = session_factory
        self.loader = loader or StagingLoader(metrics=self.metrics)
        self.diff_engine = diff_engine or DiffEngine()
        self.guard = guard or RemovalGuard(metrics=self.metrics)
        self.refresher = refresher or ViewRefresher(metrics=self.metrics)
        self.invalidator = invalidator
        self.metadata = metadata or SyncMetadataStore(session_factory)
        self.retention_days = get_change_retention_days() if retention_days is None else retention_days

    def _new_session(self):
        if self._session_factory is None:
            from db.engine import session_factory
            self._session_factory = session_factory("job")
        return self._session_factory()

    def apply(
        self,
        xml_paths: Dict[OriginList, Path],
        cancel_event: Optional[threading.Event] = None,
        run_context: Optional[RunContext] = None,
    ):
        """
        Stage, diff and apply both origin lists in one transaction.

        Returns:
            SkippedByLock, Applied or GuardVetoed

        Raises:
            SyncCancelledError, database errors (rolled back)
            ViewRefreshError: after commit, views not refreshed
        """
        start_time = time.time()
        session = self._new_session()
        try:
            try:
                acquired = session.execute(
                    text(TRY_ADVISORY_LOCK_SQL), {'lock_id': SYNC_ADVISORY_LOCK_ID}
                ).scalar()
                if not acquired:
                    logger.warning("Another sync is already running. Skipping this run.")
                    session.rollback()
                    return SkippedByLock()

                logger.info("Advisory lock acquired. Proceeding with sync.")

                staged = self.loader.stage(session, xml_paths, cancel_event, run_context)

                diffs = []
                for category in Category:
                    diffs.append(self._apply_category(session, category, cancel_event))

                raise_if_cancelled(cancel_event, "change log retention")
                pruned = session.execute(
                    text(build_prune_changelog_sql()), {'retention_days': self.retention_days}
                ).rowcount or 0
                if pruned:
                    logger.info(f"Pruned {pruned:,} change log rows older than {self.retention_days} days")

                elapsed = run_context.elapsed_seconds if run_context is not None else time.time() - start_time
                self.metadata.update_in_transaction(session, elapsed, SYNC_STATUS_SUCCESS)

                raise_if_cancelled(cancel_event, "commit")
                session.commit()
                logger.info("Data transaction committed successfully.")

            except Exception:
                session.rollback()
                raise

            self.refresher.refresh(session)
            if self.invalidator is not None:
                self.invalidator.invalidate(diffs)

            result_cls = GuardVetoed if any(d.removal_vetoed for d in diffs) else Applied
            return result_cls(
                diffs=diffs,
                rows_staged=dict(staged.rows),
                view_counts=self._view_counts(session),
                parse_alarms=staged.alarms,
                pruned_changes=pruned,
            )
        finally:
            session.close()

    def _apply_category(
        self,
        session,
        category: Category,
        cancel_event: Optional[threading.Event],
    ) -> CategoryDiff:
        logger.info(f"Running diff engine for {category.table_name}...")
        diff = self.diff_engine.compute(session, category, cancel_event)
        diff.guard = self.guard.check(category, len(diff.removed), diff.current_count)

        raise_if_cancelled(cancel_event, f"{category.value} apply")

        if diff.upserted:
            session.execute(text(build_upsert_sql(category)), {'identifiers': diff.upserted})

        if diff.applied_removed:
            session.execute(text(build_hard_delete_sql(category)), {'identifiers': diff.applied_removed})

        # Added, Modified, Removed: seq order inside the run follows this order
        for kind, identifiers in (
            (ChangeKind.ADDED, diff.added),
            (ChangeKind.MODIFIED, diff.modified),
        ):
            if identifiers:
                session.execute(text(build_changelog_from_snapshot_sql()), {
                    'document_type': category.code,
                    'change_type': kind.value,
                    'identifiers': identifiers,
                })
        if diff.applied_removed:
            session.execute(text(build_changelog_removed_sql()), {
                'document_type': category.code,
                'change_type': ChangeKind.REMOVED.value,
                'identifiers': diff.applied_removed,
            })

        for kind in ChangeKind:
            count = diff.count_for(kind)
            if count:
                self.metrics.record_changes(kind.label, count)

        self.diff_engine.drop_snapshot(session)

        logger.info(
            f"{category.table_name}: {diff.added_count} added, {diff.modified_count} modified, "
            f"{diff.removed_count} removed"
            + (f" ({len(diff.removed)} removals vetoed)" if diff.removal_vetoed else "")
        )
        return diff

    def _view_counts(self, session) -> Dict[Category, int]:
        counts = {}
        for category in Category:
            try:
                counts[category] = session.execute(text(build_view_count_sql(category))).scalar() or 0
            except Exception as e:
                session.rollback()
                logger.warning(f"Could not read row count of {category.view_name}: {e}")
                counts[category] = 0
        return counts
