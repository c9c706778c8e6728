"""
Tests for the transactional applier: lock handling, statement order inside
the unit of work, rollback semantics and the post-commit steps.
"""

import threading
from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest

from constants import SYNC_ADVISORY_LOCK_ID, SYNC_STATUS_SUCCESS, Category, ChangeKind, OriginList
from services.gib_diff_engine import CategoryDiff
from services.gib_errors import SyncCancelledError, ViewRefreshError
from services.gib_removal_guard import RemovalGuard
from services.gib_staging_loader import StagingResult
from services.gib_transactional_applier import (
    Applied,
    GuardVetoed,
    SkippedByLock,
    TransactionalApplier,
)


XML_PATHS = {OriginList.PK: Path('/tmp/pk.xml'), OriginList.GB: Path('/tmp/gb.xml')}


class FakeSession:
    """Records executed SQL; answers the lock, prune and view count queries."""

    def __init__(self, lock_acquired=True, view_count=7, fail_on=None):
        self.lock_acquired = lock_acquired
        self.view_count = view_count
        self.fail_on = fail_on
        self.statements = []
        self.committed = 0
        self.rolled_back = 0
        self.closed = False

    def execute(self, statement, params=None):
        sql = str(statement)
        self.statements.append((sql, params))
        if self.fail_on and self.fail_on in sql:
            raise RuntimeError(f"failed on {self.fail_on}")
        result = MagicMock()
        if 'pg_try_advisory_xact_lock' in sql:
            result.scalar.return_value = self.lock_acquired
        elif 'SELECT COUNT(*)' in sql:
            result.scalar.return_value = self.view_count
        result.rowcount = 4 if 'DELETE FROM gib_user_changelog' in sql else 0
        return result

    def commit(self):
        self.committed += 1

    def rollback(self):
        self.rolled_back += 1

    def close(self):
        self.closed = True

    def sql_containing(self, fragment):
        return [(sql, params) for sql, params in self.statements if fragment in sql]


def _diffs():
    return {
        Category.EINVOICE: CategoryDiff(
            category=Category.EINVOICE,
            added=['1111111111'],
            modified=['2222222222'],
            removed=['3333333333'],
            current_count=100,
        ),
        Category.EDESPATCH: CategoryDiff(category=Category.EDESPATCH, current_count=50),
    }


def _applier(session, diffs=None, guard=None, **overrides):
    diffs = diffs or _diffs()
    loader = Mock()
    loader.stage.return_value = StagingResult(rows={OriginList.PK: 10, OriginList.GB: 5})
    diff_engine = Mock()
    diff_engine.compute.side_effect = lambda s, category, cancel_event=None: diffs[category]
    kwargs = dict(
        session_factory=lambda: session,
        loader=loader,
        diff_engine=diff_engine,
        guard=guard or RemovalGuard(max_percent=10.0),
        refresher=Mock(),
        invalidator=Mock(),
        metadata=Mock(),
        metrics=Mock(),
        retention_days=30,
    )
    kwargs.update(overrides)
    return TransactionalApplier(**kwargs)


class TestAdvisoryLock:

    def test_skipped_when_lock_held(self):
        session = FakeSession(lock_acquired=False)
        applier = _applier(session)

        result = applier.apply(XML_PATHS)

        assert isinstance(result, SkippedByLock)
        assert result.reason == 'AdvisoryLockNotAcquired'
        assert session.rolled_back == 1
        assert session.committed == 0
        applier.loader.stage.assert_not_called()
        applier.refresher.refresh.assert_not_called()
        assert session.closed

    def test_lock_id(self):
        session = FakeSession(lock_acquired=False)
        _applier(session).apply(XML_PATHS)
        assert session.statements[0][1] == {'lock_id': SYNC_ADVISORY_LOCK_ID}


class TestApplied:

    def test_applied_outcome(self):
        session = FakeSession()
        applier = _applier(session)

        result = applier.apply(XML_PATHS)

        assert type(result) is Applied
        assert result.pk_count == 10
        assert result.gb_count == 5
        assert result.pruned_changes == 4
        assert result.view_counts == {Category.EINVOICE: 7, Category.EDESPATCH: 7}
        assert result.diff_for(Category.EINVOICE).added == ['1111111111']
        assert session.committed == 1

    def test_upsert_delete_and_changelog(self):
        session = FakeSession()
        _applier(session).apply(XML_PATHS)

        upserts = session.sql_containing('INSERT INTO e_invoice_gib_users')
        assert upserts[0][1] == {'identifiers': ['1111111111', '2222222222']}
        deletes = session.sql_containing('DELETE FROM e_invoice_gib_users')
        assert deletes[0][1] == {'identifiers': ['3333333333']}

        changelog = [
            params for sql, params in session.statements
            if 'INSERT INTO gib_user_changelog' in sql
        ]
        assert [p['change_type'] for p in changelog] == [
            ChangeKind.ADDED.value, ChangeKind.MODIFIED.value, ChangeKind.REMOVED.value,
        ]
        assert all(p['document_type'] == Category.EINVOICE.code for p in changelog)

    def test_untouched_category_writes_nothing(self):
        session = FakeSession()
        _applier(session).apply(XML_PATHS)
        assert session.sql_containing('INSERT INTO e_despatch_gib_users') == []
        assert session.sql_containing('DELETE FROM e_despatch_gib_users') == []

    def test_metadata_written_before_commit(self):
        session = FakeSession()
        metadata = Mock()
        metadata.update_in_transaction.side_effect = lambda s, *args: setattr(
            session, 'committed_at_metadata', session.committed,
        )
        _applier(session, metadata=metadata).apply(XML_PATHS)

        assert session.committed_at_metadata == 0
        assert metadata.update_in_transaction.call_args.args[2] == SYNC_STATUS_SUCCESS

    def test_post_commit_refresh_and_invalidation(self):
        session = FakeSession()
        applier = _applier(session)

        applier.apply(XML_PATHS)

        applier.refresher.refresh.assert_called_once_with(session)
        invalidated = applier.invalidator.invalidate.call_args.args[0]
        assert [d.category for d in invalidated] == [Category.EINVOICE, Category.EDESPATCH]

    def test_change_metrics(self):
        session = FakeSession()
        applier = _applier(session)
        applier.apply(XML_PATHS)

        recorded = {c.args for c in applier.metrics.record_changes.call_args_list}
        assert recorded == {('added', 1), ('modified', 1), ('removed', 1)}


class TestGuardVetoed:

    def test_veto_keeps_rows_and_still_commits(self):
        diffs = _diffs()
        diffs[Category.EINVOICE].removed = [f'{n:010d}' for n in range(20)]
        session = FakeSession()

        result = _applier(session, diffs=diffs).apply(XML_PATHS)

        assert isinstance(result, GuardVetoed)
        assert [d.category for d in result.vetoed] == [Category.EINVOICE]
        assert session.sql_containing('DELETE FROM e_invoice_gib_users') == []
        changelog_types = [
            params['change_type'] for sql, params in session.statements
            if 'INSERT INTO gib_user_changelog' in sql
        ]
        assert ChangeKind.REMOVED.value not in changelog_types
        assert session.committed == 1


class TestRollback:

    def test_error_rolls_back_and_propagates(self):
        session = FakeSession(fail_on='INSERT INTO e_invoice_gib_users')
        applier = _applier(session)

        with pytest.raises(RuntimeError):
            applier.apply(XML_PATHS)

        assert session.committed == 0
        assert session.rolled_back == 1
        assert session.closed
        applier.refresher.refresh.assert_not_called()
        applier.invalidator.invalidate.assert_not_called()

    def test_cancellation_rolls_back(self):
        cancel = threading.Event()
        cancel.set()
        session = FakeSession()

        with pytest.raises(SyncCancelledError):
            _applier(session).apply(XML_PATHS, cancel_event=cancel)

        assert session.committed == 0

    def test_refresh_failure_after_commit_propagates(self):
        session = FakeSession()
        refresher = Mock()
        refresher.refresh.side_effect = ViewRefreshError("views stale")
        applier = _applier(session, refresher=refresher)

        with pytest.raises(ViewRefreshError):
            applier.apply(XML_PATHS)

        assert session.committed == 1
        applier.invalidator.invalidate.assert_not_called()
