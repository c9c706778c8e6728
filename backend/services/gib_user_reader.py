"""
GIB User Reader - read side of the registry

Serves point lookups, batch lookups, search and the change feed from the
derived views (mv_*) and gib_user_changelog, plus archive and sync-status
reads. Point lookups without as_of go through the shared cache (60 minute
TTL); everything else always hits the database.

get_changes_since returns Expired when `since` precedes the oldest retained
change event of the category; the consumer must re-bootstrap from the
latest archive.

Usage:
    reader = GibUserReader(session_factory("web"), cache=build_cache_service())
    user = reader.get_by_identifier('einvoice', '1234567890')
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from constants import CHANGELOG_TABLE, ChangeKind, Category
from db.sql import run_sql, run_sql_one, run_sql_scalar
from services.gib_archive_storage import FileSystemArchiveStorage
from services.gib_cache import CacheService, MemoryCacheService
from services.gib_metrics import MetricsPort, NullMetrics
from services.gib_sync_config import get_archive_base_path
from services.gib_sync_metadata import SyncMetadataStore
from services.gib_sync_sql import SELECT_ARCHIVE_FILES_SQL, derived_view
from utils.cache_key import build_identifier_cache_key
from utils.normalize import ValidationError, normalize_identifier, registry_now, to_str, turkish_lower

logger = logging.getLogger(__name__)


POINT_LOOKUP_TTL_SECONDS = 60 * 60

MAX_BATCH_IDENTIFIERS = 100
MAX_SEARCH_LENGTH = 200
MAX_SEARCH_PAGE_SIZE = 100
MAX_CHANGES_PAGE_SIZE = 1000

_ARCHIVE_NAME_RE = re.compile(r'^[A-Za-z0-9_\-]+_users_\d{4}-\d{2}-\d{2}_\d{6}\.xml\.gz$')

_USER_COLUMNS = "identifier, title, account_type, type, first_creation_time, aliases_json"


@dataclass(frozen=True)
class Expired:
    """`since` is older than the retained change log."""
    since: datetime
    oldest_change_at: datetime

    def to_dict(self) -> dict:
        return {
            'since': self.since.isoformat(),
            'oldestChangeAt': self.oldest_change_at.isoformat(),
        }


# =============================================================================
# Row mapping
# =============================================================================

def _iso(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


def parse_aliases(raw) -> List[Dict[str, Any]]:
    """aliases_json -> [{name, type, creationTime}]; malformed JSON yields []."""
    if raw is None or raw == '':
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Malformed aliases_json in registry row")
            return []
    if not isinstance(raw, list):
        return []
    return [
        {
            'name': alias.get('Alias') or '',
            'type': alias.get('Type') or '',
            'creationTime': alias.get('CreationTime'),
        }
        for alias in raw
        if isinstance(alias, dict)
    ]


def user_to_dict(row) -> Dict[str, Any]:
    return {
        'identifier': row['identifier'],
        'title': row['title'],
        'accountType': row['account_type'],
        'type': row['type'],
        'firstCreationTime': _iso(row['first_creation_time']),
        'aliases': parse_aliases(row['aliases_json']),
    }


def change_to_dict(row) -> Dict[str, Any]:
    return {
        'identifier': row['identifier'],
        'changeType': ChangeKind(row['change_type']).label,
        'changedAt': _iso(row['changed_at']),
        'title': row['title'],
        'accountType': row['account_type'],
        'type': row['type'],
        'firstCreationTime': _iso(row['first_creation_time']),
        'aliases': parse_aliases(row['aliases_json']) if row['aliases_json'] is not None else None,
    }


def like_pattern(value: str) -> str:
    """Substring LIKE pattern with %, _ and backslash escaped."""
    escaped = value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def _check_page(page: int, page_size: int, max_page_size: int):
    if page < 1:
        raise ValidationError("page must be 1 or greater", field='page', received_value=page)
    if not 1 <= page_size <= max_page_size:
        raise ValidationError(
            f"pageSize must be between 1 and {max_page_size}",
            field='pageSize',
            received_value=page_size,
        )


# =============================================================================
# Reader
# =============================================================================

class GibUserReader:

    def __init__(
        self,
        session_factory=None,
        cache: Optional[CacheService] = None,
        metrics: Optional[MetricsPort] = None,
        storage: Optional[FileSystemArchiveStorage] = None,
        metadata: Optional[SyncMetadataStore] = None,
    ):
        self._session_factory = session_factory
        self.cache = cache or MemoryCacheService(default_ttl_seconds=POINT_LOOKUP_TTL_SECONDS)
        self.metrics = metrics or NullMetrics()
        self.storage = storage or FileSystemArchiveStorage(get_archive_base_path())
        self.metadata = metadata or SyncMetadataStore(session_factory)

    def _new_session(self):
        if self._session_factory is None:
            from db.engine import session_factory
            self._session_factory = session_factory("web")
        return self._session_factory()

    def _query(self, query_type: str, category: Category, fn):
        """Run fn(session) with timing and error metrics."""
        start = time.time()
        session = self._new_session()
        try:
            result = fn(session)
        except Exception:
            self.metrics.record_query_error(query_type, category.value)
            raise
        finally:
            session.close()
        self.metrics.record_query(query_type, category.value, (time.time() - start) * 1000)
        return result

    # =========================================================================
    # Users
    # =========================================================================

    def get_by_identifier(
        self,
        category,
        identifier: str,
        as_of: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Point lookup. With as_of only users registered at or before it match,
        and the cache is bypassed.
        """
        category = Category.parse(category)
        identifier = normalize_identifier(identifier)
        cache_key = build_identifier_cache_key(category, identifier)
        use_cache = as_of is None

        if use_cache:
            start = time.time()
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.metrics.record_cache_hit()
                self.metrics.record_query('identifier', category.value, (time.time() - start) * 1000)
                return cached
            self.metrics.record_cache_miss()

        def fetch(session):
            sql = f"SELECT {_USER_COLUMNS} FROM {derived_view(category)} WHERE identifier = :identifier"
            params = {'identifier': identifier}
            if as_of is not None:
                sql += " AND first_creation_time <= :as_of"
                params['as_of'] = as_of
            return run_sql_one(session, sql, **params)

        row = self._query('identifier', category, fetch)
        if row is None:
            return None

        user = user_to_dict(row)
        if use_cache:
            self.cache.set(cache_key, user, POINT_LOOKUP_TTL_SECONDS)
        return user

    def get_by_identifiers(self, category, identifiers: List[str]) -> Dict[str, Any]:
        """Batch lookup of up to 100 identifiers (uncached)."""
        category = Category.parse(category)
        if not identifiers:
            raise ValidationError("identifiers must not be empty", field='identifiers')
        if len(identifiers) > MAX_BATCH_IDENTIFIERS:
            raise ValidationError(
                f"At most {MAX_BATCH_IDENTIFIERS} identifiers can be queried at once",
                field='identifiers',
                received_value=len(identifiers),
            )

        requested = []
        for value in identifiers:
            identifier = normalize_identifier(value, field='identifiers')
            if identifier not in requested:
                requested.append(identifier)

        def fetch(session):
            return run_sql(
                session,
                f"""
                SELECT {_USER_COLUMNS} FROM {derived_view(category)}
                WHERE identifier = ANY(CAST(:identifiers AS varchar[]))
                ORDER BY identifier
                """,
                identifiers=requested,
            )

        rows = self._query('batch', category, fetch)
        items = [user_to_dict(row._mapping) for row in rows]
        found = {item['identifier'] for item in items}
        return {
            'items': items,
            'notFound': [identifier for identifier in requested if identifier not in found],
            'totalRequested': len(requested),
            'totalFound': len(items),
        }

    def search(self, category, text: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        """Title (Turkish-lowercased) or identifier substring search, ordered by title_lower."""
        category = Category.parse(category)
        search = to_str(text)
        if search is None:
            raise ValidationError("search must not be empty", field='search')
        if len(search) > MAX_SEARCH_LENGTH:
            raise ValidationError(
                f"search must be at most {MAX_SEARCH_LENGTH} characters",
                field='search',
                received_value=len(search),
            )
        _check_page(page, page_size, MAX_SEARCH_PAGE_SIZE)

        view = derived_view(category)
        where = (
            "WHERE title_lower LIKE :title_pattern ESCAPE '\\' "
            "OR identifier LIKE :identifier_pattern ESCAPE '\\'"
        )
        params = {
            'title_pattern': like_pattern(turkish_lower(search)),
            'identifier_pattern': like_pattern(search),
        }

        def fetch(session):
            total = run_sql_scalar(session, f"SELECT COUNT(*) FROM {view} {where}", **params)
            rows = run_sql(
                session,
                f"""
                SELECT {_USER_COLUMNS} FROM {view} {where}
                ORDER BY title_lower, identifier
                LIMIT :limit OFFSET :offset
                """,
                limit=page_size,
                offset=(page - 1) * page_size,
                **params,
            )
            return total or 0, rows

        total, rows = self._query('search', category, fetch)
        return {
            'items': [user_to_dict(row._mapping) for row in rows],
            'totalCount': total,
            'page': page,
            'pageSize': page_size,
        }

    # =========================================================================
    # Change feed
    # =========================================================================

    def get_changes_since(
        self,
        category,
        since: datetime,
        page: int = 1,
        page_size: int = 100,
        until: Optional[datetime] = None,
    ):
        """
        Change events with since < changed_at <= until, in (changed_at, seq) order.

        Returns:
            dict page, or Expired when since predates the retained change log
        """
        category = Category.parse(category)
        if since is None:
            raise ValidationError("since is required", field='since')
        if until is not None and until <= since:
            raise ValidationError("until must be later than since", field='until', received_value=until)
        _check_page(page, page_size, MAX_CHANGES_PAGE_SIZE)

        now = registry_now()
        effective_until = until if until is not None and until <= now else now

        def fetch(session):
            oldest = run_sql_scalar(
                session,
                f"SELECT MIN(changed_at) FROM {CHANGELOG_TABLE} WHERE document_type = :document_type",
                document_type=category.code,
            )
            if oldest is not None and since < oldest:
                return Expired(since=since, oldest_change_at=oldest)

            params = {
                'document_type': category.code,
                'since': since,
                'until': effective_until,
            }
            where = "WHERE document_type = :document_type AND changed_at > :since AND changed_at <= :until"
            total = run_sql_scalar(session, f"SELECT COUNT(*) FROM {CHANGELOG_TABLE} {where}", **params)
            rows = run_sql(
                session,
                f"""
                SELECT identifier, change_type, changed_at, title, account_type, type,
                       first_creation_time, aliases_json
                FROM {CHANGELOG_TABLE} {where}
                ORDER BY changed_at, seq
                LIMIT :limit OFFSET :offset
                """,
                limit=page_size,
                offset=(page - 1) * page_size,
                **params,
            )
            return {
                'changes': [change_to_dict(row._mapping) for row in rows],
                'totalCount': total or 0,
                'page': page,
                'pageSize': page_size,
                'until': effective_until.isoformat(),
            }

        return self._query('changes', category, fetch)

    # =========================================================================
    # Archives
    # =========================================================================

    def list_archives(self, category) -> List[Dict[str, Any]]:
        category = Category.parse(category)
        session = self._new_session()
        try:
            rows = _archive_rows(session, category)
        finally:
            session.close()
        return [
            {
                'fileName': row['file_name'],
                'sizeBytes': row['size_bytes'],
                'createdAt': _iso(row['created_at']),
                'userCount': row['user_count'],
            }
            for row in rows
        ]

    def get_latest_archive(self, category) -> Optional[Tuple[str, BinaryIO]]:
        """(download name, stream) of the newest archive, or None."""
        archives = self.list_archives(category)
        if not archives:
            return None
        file_name = archives[0]['fileName']
        try:
            return file_name.rsplit('/', 1)[-1], self.storage.open(file_name)
        except FileNotFoundError:
            logger.warning(f"Archive indexed but missing from storage: {file_name}")
            return None

    def get_archive(self, category, file_name: str) -> Optional[Tuple[str, BinaryIO]]:
        """
        Raises:
            ValidationError: file name is not an archive name
        """
        category = Category.parse(category)
        if not file_name or not _ARCHIVE_NAME_RE.match(file_name):
            raise ValidationError("Invalid archive file name", field='fileName', received_value=file_name)
        try:
            return file_name, self.storage.open(f"{category.value}/{file_name}")
        except FileNotFoundError:
            return None

    # =========================================================================
    # Sync status
    # =========================================================================

    def get_sync_status(self) -> Dict[str, Any]:
        row = self.metadata.fetch() or {}
        duration = row.get('last_sync_duration_seconds')
        return {
            'lastSyncAt': _iso(row.get('last_sync_at')),
            'eInvoiceUserCount': row.get('e_invoice_user_count') or 0,
            'eDespatchUserCount': row.get('e_despatch_user_count') or 0,
            'lastSyncDurationSeconds': float(duration) if duration is not None else None,
            'lastSyncStatus': row.get('last_sync_status') or 'success',
            'lastSyncError': row.get('last_sync_error'),
            'lastAttemptAt': _iso(row.get('last_attempt_at')),
            'lastFailureAt': _iso(row.get('last_failure_at')),
        }


def _archive_rows(session, category: Category) -> List[Dict[str, Any]]:
    rows = run_sql(session, SELECT_ARCHIVE_FILES_SQL, document_type=category.code)
    return [row._mapping for row in rows]
