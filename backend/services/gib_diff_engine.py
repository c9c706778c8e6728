"""
GIB Diff Engine - Builds a category's new snapshot and classifies identifiers

Runs set-oriented SQL against the loaded staging tables inside the sync
transaction:

    1. CREATE TEMP TABLE _new_data: documents of the category from both
       origin lists, aliases flattened and merged per identifier, content
       fingerprint per identifier
    2. added    = in _new_data, not in the canonical table
       modified = in both, fingerprints differ
       removed  = in the canonical table, not in _new_data
    3. current canonical row count (input of the removal guard)

Unchanged identifiers are never selected. _new_data stays alive until the
applier has written the category and calls drop_snapshot().
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import text

from constants import Category, ChangeKind
from services.gib_errors import raise_if_cancelled
from services.gib_removal_guard import GuardDecision
from services.gib_sync_sql import (
    DROP_NEW_DATA_SQL,
    build_added_identifiers_sql,
    build_current_count_sql,
    build_modified_identifiers_sql,
    build_prepare_new_data_sql,
    build_removed_identifiers_sql,
)

logger = logging.getLogger(__name__)


@dataclass
class CategoryDiff:
    """
    Classification of one category.

    removed holds the proposed removals; applied_removed is what actually
    gets deleted and logged once the guard has decided.
    """
    category: Category
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    current_count: int = 0
    guard: Optional[GuardDecision] = None

    @property
    def removal_vetoed(self) -> bool:
        return self.guard is not None and self.guard.vetoed

    @property
    def applied_removed(self) -> List[str]:
        return [] if self.removal_vetoed else self.removed

    @property
    def upserted(self) -> List[str]:
        return self.added + self.modified

    @property
    def added_count(self) -> int:
        return len(self.added)

    @property
    def modified_count(self) -> int:
        return len(self.modified)

    @property
    def removed_count(self) -> int:
        """Rows actually deleted (0 when vetoed)."""
        return len(self.applied_removed)

    @property
    def cache_prefix(self) -> str:
        return self.category.cache_prefix

    @property
    def invalidated_identifiers(self) -> List[str]:
        """Identifiers whose point-lookup cache entries are now stale."""
        return self.modified + self.applied_removed

    @property
    def invalidation_count(self) -> int:
        return len(self.invalidated_identifiers)

    def count_for(self, kind: ChangeKind) -> int:
        return {
            ChangeKind.ADDED: self.added_count,
            ChangeKind.MODIFIED: self.modified_count,
            ChangeKind.REMOVED: self.removed_count,
        }[kind]

    def to_dict(self) -> dict:
        return {
            'category': self.category.value,
            'added': self.added_count,
            'modified': self.modified_count,
            'removed': self.removed_count,
            'proposed_removed': len(self.removed),
            'current_count': self.current_count,
            'removal_vetoed': self.removal_vetoed,
        }


class DiffEngine:
    """Set-oriented change detection for one category at a time."""

    def compute(
        self,
        session,
        category: Category,
        cancel_event: Optional[threading.Event] = None,
    ) -> CategoryDiff:
        """
        Build _new_data for the category and classify it.

        Raises:
            ValueError: category outside the allow-list
        """
        category = Category.parse(category)

        raise_if_cancelled(cancel_event, f"{category.value} snapshot")
        session.execute(text(DROP_NEW_DATA_SQL))
        session.execute(text(build_prepare_new_data_sql()), {'document_tag': category.document_tag})

        raise_if_cancelled(cancel_event, f"{category.value} classification")
        diff = CategoryDiff(
            category=category,
            added=self._identifiers(session, build_added_identifiers_sql(category)),
            modified=self._identifiers(session, build_modified_identifiers_sql(category)),
            removed=self._identifiers(session, build_removed_identifiers_sql(category)),
        )
        diff.current_count = session.execute(text(build_current_count_sql(category))).scalar() or 0

        logger.info(
            f"Diff results for {category.table_name}: {diff.added_count} added, "
            f"{diff.modified_count} modified, {len(diff.removed)} removed "
            f"(current rows: {diff.current_count})"
        )
        return diff

    @staticmethod
    def drop_snapshot(session):
        session.execute(text(DROP_NEW_DATA_SQL))

    @staticmethod
    def _identifiers(session, sql: str) -> List[str]:
        return [row[0] for row in session.execute(text(sql)).fetchall()]
