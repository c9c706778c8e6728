"""
GIB Sync Engine - Orchestrates the full registered-user list sync

Workflow:
1. Check kill switch (GIB_SYNC_ENABLED)
2. Download PK + GB archives in parallel, extract the XML files
3. Transactional apply (advisory lock, staging, diff, guard, upsert/delete,
   change log, metadata, commit), then view refresh + cache invalidation
4. Export snapshot archives and prune expired ones
5. Record run status (success / partial / failed) and notify

Outcomes:
- success: applied with no warnings
- partial: lock held by another run, removal guard veto, parse alarm,
           archive export/cleanup warnings
- failed:  any exception (download, staging, SQL, view refresh exhaustion)

Usage:
    # As module
    from services.gib_sync_engine import run_sync
    result = run_sync()  # Returns SyncResult

    # As CLI
    python -m services.gib_sync_engine
    # Exit 0 success, 1 failed, 2 disabled, 3 partial
"""

import logging
import os
import shutil
import sys
import tempfile
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from constants import (
    MAX_ERROR_LENGTH,
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PARTIAL,
    SYNC_STATUS_SUCCESS,
    Category,
    OriginList,
    trim_to_max_length,
)
from services.etl import compute_file_sha256, create_run_context
from services.gib_cache import build_cache_service
from services.gib_cache_invalidator import CacheInvalidator
from services.gib_list_client import GibListClient, extract_first_xml
from services.gib_metrics import MetricsPort, NullMetrics
from services.gib_removal_guard import RemovalGuard, guard_triggered_event
from services.gib_snapshot_exporter import SnapshotExporter
from services.gib_staging_loader import StagingLoader
from services.gib_sync_config import (
    is_sync_enabled,
    log_sync_config,
    validate_sync_config,
)
from services.gib_sync_metadata import SyncMetadataStore, SyncTimeProvider
from services.gib_transactional_applier import (
    Applied,
    GuardVetoed,
    SkippedByLock,
    TransactionalApplier,
)
from services.gib_view_refresher import ViewRefresher
from services.gib_webhooks import (
    NullWebhookNotifier,
    WebhookEvent,
    WebhookEventType,
    WebhookSeverity,
    build_notifier,
)

logger = logging.getLogger(__name__)


LOCK_SKIPPED_MESSAGE = "Sync skipped because another sync run is currently active."

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_DISABLED = 2
EXIT_PARTIAL = 3


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class SyncResult:
    """Result of a sync run."""
    status: str
    outcome: Optional[str] = None
    run_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    changes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    pk_count: int = 0
    gb_count: int = 0
    error_message: Optional[str] = None
    error_stage: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == SYNC_STATUS_SUCCESS

    @property
    def exit_code(self) -> int:
        if self.status == SYNC_STATUS_SUCCESS:
            return EXIT_SUCCESS
        if self.status == SYNC_STATUS_PARTIAL:
            return EXIT_PARTIAL
        return EXIT_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def category_counts(outcome: Applied, category: Category) -> Dict[str, int]:
    """Added/Modified/Removed/Total/TotalCount block of the completion webhook."""
    diff = outcome.diff_for(category)
    added = diff.added_count if diff else 0
    modified = diff.modified_count if diff else 0
    removed = diff.removed_count if diff else 0
    return {
        'Added': added,
        'Modified': modified,
        'Removed': removed,
        'Total': added + modified + removed,
        'TotalCount': outcome.view_counts.get(category, 0),
    }


# =============================================================================
# Engine
# =============================================================================

class GibSyncEngine:
    """
    Runs one sync end to end.

    Example:
        engine = GibSyncEngine(triggered_by='cron')
        result = engine.run()
        sys.exit(result.exit_code)
    """

    def __init__(
        self,
        triggered_by: str = 'manual',
        session_factory=None,
        client: Optional[GibListClient] = None,
        applier: Optional[TransactionalApplier] = None,
        exporter: Optional[SnapshotExporter] = None,
        metadata: Optional[SyncMetadataStore] = None,
        metrics: Optional[MetricsPort] = None,
        notifier=None,
        sync_time: Optional[SyncTimeProvider] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.triggered_by = triggered_by
        self.metrics = metrics or NullMetrics()
        self.notifier = notifier or NullWebhookNotifier()
        self.metadata = metadata or SyncMetadataStore(session_factory)
        self.client = client
        self.applier = applier or TransactionalApplier(
            session_factory=session_factory,
            loader=StagingLoader(metrics=self.metrics),
            guard=RemovalGuard(metrics=self.metrics),
            refresher=ViewRefresher(metrics=self.metrics, notifier=self.notifier),
            invalidator=CacheInvalidator(build_cache_service()),
            metadata=self.metadata,
            metrics=self.metrics,
        )
        self.exporter = exporter or SnapshotExporter(session_factory)
        self.sync_time = sync_time
        self.cancel_event = cancel_event or threading.Event()

    def run(self) -> SyncResult:
        """
        Execute the full sync workflow.

        Returns:
            SyncResult; failures are reported, not raised
        """
        ctx = create_run_context(triggered_by=self.triggered_by)
        start_time = time.time()
        temp_dir = Path(tempfile.gettempdir()) / f"gib_user_list_{uuid.uuid4().hex}"

        logger.info("=" * 70)
        logger.info("GIB SYNC ENGINE - STARTING")
        logger.info("=" * 70)
        logger.info(f"  Run ID:      {ctx.run_id}")
        logger.info(f"  Triggered:   {self.triggered_by}")
        logger.info(f"  Start time:  {ctx.started_at.isoformat()}")
        logger.info("=" * 70)

        is_valid, error = validate_sync_config()
        if not is_valid:
            logger.error(f"Sync configuration invalid: {error}")
            return SyncResult(
                status=SYNC_STATUS_FAILED,
                run_id=ctx.run_id,
                error_message=error,
                error_stage='config',
            )

        log_sync_config()
        self.metrics.sync_active(1)

        try:
            temp_dir.mkdir(parents=True, exist_ok=True)

            # 1. Download + extract
            ctx.mark_stage('download')
            xml_paths = self._download(temp_dir, ctx)

            # 2. Locked unit of work
            ctx.mark_stage('apply')
            outcome = self.applier.apply(xml_paths, self.cancel_event, ctx)

            if isinstance(outcome, SkippedByLock):
                return self._finish_skipped(ctx, outcome, start_time)

            return self._finish_applied(ctx, outcome, start_time)

        except Exception as e:
            return self._finish_failed(ctx, e, start_time)

        finally:
            self.metrics.sync_active(-1)
            self._cleanup(temp_dir)

    # =========================================================================
    # Stages
    # =========================================================================

    def _download(self, temp_dir: Path, ctx) -> Dict[OriginList, Path]:
        client = self.client or GibListClient()
        try:
            downloads = client.download_all(temp_dir, self.cancel_event)
        finally:
            if self.client is None:
                client.close()

        ctx.mark_stage('extract')
        xml_paths = {}
        for origin, download in downloads.items():
            ctx.file_fingerprints[download.path.name] = compute_file_sha256(download.path)
            xml_paths[origin] = extract_first_xml(download.path, temp_dir, origin.value.lower())
            download.path.unlink(missing_ok=True)
        return xml_paths

    def _finish_skipped(self, ctx, outcome: SkippedByLock, start_time: float) -> SyncResult:
        duration = time.time() - start_time
        logger.warning(LOCK_SKIPPED_MESSAGE)

        self.metrics.record_sync(SYNC_STATUS_PARTIAL, duration)
        self.metadata.update_status_only(SYNC_STATUS_PARTIAL, LOCK_SKIPPED_MESSAGE)
        self._notify(WebhookEvent(
            event_type=WebhookEventType.SYNC_PARTIAL,
            severity=WebhookSeverity.WARNING,
            summary=LOCK_SKIPPED_MESSAGE,
            payload={
                'Reason': outcome.reason,
                'Duration': f"{duration:.1f}s",
                'Status': SYNC_STATUS_PARTIAL,
            },
        ))
        ctx.add_warning(LOCK_SKIPPED_MESSAGE)
        ctx.complete()

        return SyncResult(
            status=SYNC_STATUS_PARTIAL,
            outcome=outcome.kind,
            run_id=ctx.run_id,
            warnings=list(ctx.warnings),
            duration_seconds=duration,
        )

    def _finish_applied(self, ctx, outcome: Applied, start_time: float) -> SyncResult:
        for stats in outcome.parse_alarms:
            ctx.add_warning(
                f"Parse failure rate {stats.failure_percent:.1f}% in {stats.file_name} "
                f"({stats.failures}/{stats.total} records skipped)"
            )
        if isinstance(outcome, GuardVetoed):
            for diff in outcome.vetoed:
                ctx.add_warning(
                    f"Removal guard vetoed {len(diff.removed)} removals from {diff.category.table_name} "
                    f"({diff.guard.ratio:.1%} of {diff.current_count})"
                )
                self._notify(guard_triggered_event(diff.category, diff.guard))

        # 3. Archives (non-fatal)
        ctx.mark_stage('archive')
        for warning in self.exporter.export_all():
            ctx.add_warning(warning)
        cleanup_warning = self.exporter.cleanup()
        if cleanup_warning:
            ctx.add_warning(cleanup_warning)

        # 4. Status
        ctx.mark_stage('metadata')
        duration = time.time() - start_time
        status = SYNC_STATUS_PARTIAL if ctx.has_warnings else SYNC_STATUS_SUCCESS
        error = trim_to_max_length(ctx.joined_warnings(), MAX_ERROR_LENGTH)

        self.metrics.record_sync(SYNC_STATUS_SUCCESS, duration)
        self.metadata.update_status_only(status, error)
        if self.sync_time is not None:
            self.sync_time.invalidate()

        changes = {category.value: category_counts(outcome, category) for category in Category}
        self._notify_applied(outcome, status, duration, ctx.warnings)
        ctx.complete()

        log = logger.info if status == SYNC_STATUS_SUCCESS else logger.warning
        log("=" * 70)
        log(f"GIB SYNC ENGINE - COMPLETED ({status.upper()})")
        log("=" * 70)
        log(f"  Run ID:      {ctx.run_id}")
        log(f"  Outcome:     {outcome.kind}")
        log(f"  Duration:    {duration:.1f}s")
        log(f"  PK records:  {outcome.pk_count:,}")
        log(f"  GB records:  {outcome.gb_count:,}")
        for category in Category:
            counts = changes[category.value]
            log(
                f"  {category.value:<11}  +{counts['Added']} ~{counts['Modified']} "
                f"-{counts['Removed']} (total {counts['TotalCount']:,})"
            )
        for warning in ctx.warnings:
            log(f"  Warning:     {warning}")
        log("=" * 70)

        return SyncResult(
            status=status,
            outcome=outcome.kind,
            run_id=ctx.run_id,
            warnings=list(ctx.warnings),
            changes=changes,
            pk_count=outcome.pk_count,
            gb_count=outcome.gb_count,
            duration_seconds=duration,
        )

    def _finish_failed(self, ctx, error: Exception, start_time: float) -> SyncResult:
        duration = time.time() - start_time
        stage = ctx.stage
        ctx.fail(str(error))
        logger.exception(f"Sync failed at stage '{stage}': {error}")

        self.metrics.record_sync('failure', duration)
        self.metadata.try_update_failure(error)
        self._notify(WebhookEvent(
            event_type=WebhookEventType.SYNC_FAILED,
            severity=WebhookSeverity.CRITICAL,
            summary=f"GIB user list sync FAILED: {error}",
            payload={
                'Duration': f"{duration:.1f}s",
                'Status': SYNC_STATUS_FAILED,
                'Error': str(error),
                'ExceptionType': type(error).__name__,
                'StackTrace': trim_to_max_length(
                    ''.join(traceback.format_exception(type(error), error, error.__traceback__)), 500
                ),
            },
        ))

        logger.error("=" * 70)
        logger.error("GIB SYNC ENGINE - FAILED")
        logger.error("=" * 70)
        logger.error(f"  Run ID:      {ctx.run_id}")
        logger.error(f"  Duration:    {duration:.1f}s")
        logger.error(f"  Error:       {error}")
        logger.error(f"  Stage:       {stage}")
        logger.error("=" * 70)

        return SyncResult(
            status=SYNC_STATUS_FAILED,
            run_id=ctx.run_id,
            warnings=list(ctx.warnings),
            error_message=trim_to_max_length(str(error), MAX_ERROR_LENGTH),
            error_stage=stage,
            duration_seconds=duration,
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    def _notify_applied(self, outcome: Applied, status: str, duration: float, warnings: List[str]):
        if status == SYNC_STATUS_SUCCESS:
            self._notify(WebhookEvent(
                event_type=WebhookEventType.SYNC_COMPLETED,
                severity=WebhookSeverity.INFO,
                summary="GIB user list sync completed successfully.",
                payload={
                    'Duration': f"{duration:.1f}s",
                    'Status': status,
                    'PkCount': outcome.pk_count,
                    'GbCount': outcome.gb_count,
                    'EInvoice': category_counts(outcome, Category.EINVOICE),
                    'EDespatch': category_counts(outcome, Category.EDESPATCH),
                },
            ))
            return

        self._notify(WebhookEvent(
            event_type=WebhookEventType.SYNC_PARTIAL,
            severity=WebhookSeverity.WARNING,
            summary=f"GIB user list sync completed with {len(warnings)} warning(s).",
            payload={
                'Duration': f"{duration:.1f}s",
                'Status': status,
                'Warnings': list(warnings),
            },
        ))

    def _notify(self, event: WebhookEvent):
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"Webhook notification {event.event_name} failed: {e}")

    def _cleanup(self, temp_dir: Path):
        if not temp_dir.exists():
            return
        try:
            shutil.rmtree(temp_dir)
        except OSError as e:
            logger.warning(f"Could not remove temp folder {temp_dir}: {e}")


# =============================================================================
# Module-level convenience function
# =============================================================================

def run_sync(triggered_by: str = 'manual', metrics: Optional[MetricsPort] = None) -> SyncResult:
    """
    Run a sync with the production wiring (job engine, env-configured cache and webhooks).
    """
    from db.engine import session_factory

    engine = GibSyncEngine(
        triggered_by=triggered_by,
        session_factory=session_factory("job"),
        metrics=metrics,
        notifier=build_notifier(),
    )
    return engine.run()


# =============================================================================
# CLI Entry Point
# =============================================================================

def main():
    """
    CLI entry point for cron/manual execution.

    Exit codes:
        0: Success
        1: Failure
        2: Disabled via kill switch
        3: Partial (lock held elsewhere, guard veto, archive warnings)
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Reduce noise from libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)

    print("=" * 70)
    print("GIB Sync Engine - Registered User List Sync")
    print("=" * 70)

    if not is_sync_enabled():
        print("\n[DISABLED] Sync is disabled via GIB_SYNC_ENABLED=false")
        print("Set GIB_SYNC_ENABLED=true to enable sync")
        sys.exit(EXIT_DISABLED)

    import argparse
    parser = argparse.ArgumentParser(description='GIB Sync Engine')
    parser.add_argument(
        '--triggered-by',
        default='manual',
        choices=['cron', 'manual', 'test'],
        help='Who triggered this run'
    )
    parser.add_argument(
        '--ensure-schema',
        action='store_true',
        help='Apply pending migrations before syncing'
    )
    args = parser.parse_args()

    if args.ensure_schema:
        from config import get_database_url
        from scripts.run_migrations import MigrationError, run_pending_migrations
        try:
            run_pending_migrations(os.environ.get('DATABASE_URL_MIGRATIONS') or get_database_url())
        except MigrationError as e:
            print(f"\n[FAILED] Schema migration failed: {e}")
            sys.exit(EXIT_FAILED)

    result = run_sync(triggered_by=args.triggered_by)

    print("\n" + "=" * 70)
    print("SYNC RESULT")
    print("=" * 70)
    print(f"  Status:     {result.status.upper()}")
    print(f"  Outcome:    {result.outcome}")
    print(f"  Run ID:     {result.run_id}")
    print(f"  Duration:   {result.duration_seconds:.1f}s")
    print(f"  PK records: {result.pk_count}")
    print(f"  GB records: {result.gb_count}")

    for category, counts in result.changes.items():
        print(f"\n  {category}:")
        print(f"    Added:      {counts['Added']}")
        print(f"    Modified:   {counts['Modified']}")
        print(f"    Removed:    {counts['Removed']}")
        print(f"    Total rows: {counts['TotalCount']}")

    if result.warnings:
        print("\n  Warnings:")
        for warning in result.warnings:
            print(f"    - {warning}")

    if result.error_message:
        print(f"\n  Error: {result.error_message}")
        print(f"  Stage: {result.error_stage}")

    print("=" * 70)

    if result.status == SYNC_STATUS_SUCCESS:
        print("\n[SUCCESS] Sync completed successfully")
    elif result.status == SYNC_STATUS_PARTIAL:
        print("\n[PARTIAL] Sync completed with warnings - check logs above")
    else:
        print("\n[FAILED] Sync failed - check logs above")
    sys.exit(result.exit_code)


if __name__ == '__main__':
    main()
