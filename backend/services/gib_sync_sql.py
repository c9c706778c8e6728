"""
GIB Sync SQL - Statement builders for staging, diff, apply and metadata

Table and view names only ever come from the Category / OriginList enums and
are re-checked against the allow-lists in constants.py before they reach
statement text. Every value (document tag, identifier lists, timestamps) is
a bind parameter.

Identifier lists are passed as arrays: `identifier = ANY(CAST(:identifiers AS varchar[]))`.
"""

from typing import List

from constants import (
    ALLOWED_CANONICAL_TABLES,
    ALLOWED_VIEWS,
    CHANGELOG_TABLE,
    REGISTRY_TIME_ZONE,
    STAGING_TABLES,
    Category,
    OriginList,
)


STAGING_COLUMNS = (
    'identifier',
    'account_type',
    'first_creation_time',
    'title',
    'title_lower',
    'type',
    'documents',
)

# Transaction-start time in registry wall-clock; identical for every row of a run
LOCAL_NOW = f"(NOW() AT TIME ZONE '{REGISTRY_TIME_ZONE}')"

NEW_DATA_TABLE = '_new_data'


# =============================================================================
# Allow-list checks
# =============================================================================

def canonical_table(category: Category) -> str:
    """Canonical table of a category, verified against the allow-list."""
    table = Category.parse(category).table_name
    if table not in ALLOWED_CANONICAL_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def derived_view(category: Category) -> str:
    view = Category.parse(category).view_name
    if view not in ALLOWED_VIEWS:
        raise ValueError(f"Invalid view name: {view}")
    return view


def staging_table(origin: OriginList) -> str:
    if not isinstance(origin, OriginList):
        raise ValueError(f"Invalid origin list: {origin!r}")
    return STAGING_TABLES[origin]


# =============================================================================
# Run lock
# =============================================================================

TRY_ADVISORY_LOCK_SQL = "SELECT pg_try_advisory_xact_lock(:lock_id)"


# =============================================================================
# Staging
# =============================================================================

def build_clear_staging_sql() -> List[str]:
    """Truncate both staging tables and drop their indexes before COPY."""
    statements = []
    for origin in OriginList:
        statements.append(f"TRUNCATE TABLE {staging_table(origin)}")
    for origin in OriginList:
        table = staging_table(origin)
        statements.append(f"DROP INDEX IF EXISTS idx_{table}_identifier")
        statements.append(f"DROP INDEX IF EXISTS idx_{table}_documents")
    return statements


def build_staging_index_sql() -> List[str]:
    """Recreate the staging indexes once all rows are loaded."""
    statements = []
    for origin in OriginList:
        table = staging_table(origin)
        statements.append(f"CREATE INDEX idx_{table}_identifier ON {table} (identifier)")
        statements.append(
            f"CREATE INDEX idx_{table}_documents ON {table} USING gin (documents jsonb_path_ops)"
        )
    return statements


def build_copy_sql(origin: OriginList) -> str:
    """COPY statement for psycopg2 copy_expert (CSV, empty unquoted field = NULL)."""
    columns = ', '.join(STAGING_COLUMNS)
    return f"COPY {staging_table(origin)} ({columns}) FROM STDIN WITH (FORMAT csv)"


# =============================================================================
# Diff
# =============================================================================

def build_prepare_new_data_sql() -> str:
    """
    Build the per-category new snapshot into a transaction-scoped temp table.

    Both staging tables are scanned for documents of :document_tag; aliases
    are flattened, de-duplicated on (alias, class) and aggregated per
    identifier. content_hash is the content fingerprint. A record whose
    category document holds no live alias does not enter the snapshot.
    """
    pk = staging_table(OriginList.PK)
    gb = staging_table(OriginList.GB)
    return f"""
        CREATE TEMP TABLE {NEW_DATA_TABLE} ON COMMIT DROP AS
        WITH docs AS (
            SELECT t.identifier, t.account_type, t.first_creation_time,
                   t.title, t.title_lower, t.type,
                   d.value AS doc
            FROM {pk} t
            CROSS JOIN LATERAL jsonb_array_elements(t.documents) d
            WHERE d.value ->> 'Type' = :document_tag
            UNION ALL
            SELECT t.identifier, t.account_type, t.first_creation_time,
                   t.title, t.title_lower, t.type,
                   d.value AS doc
            FROM {gb} t
            CROSS JOIN LATERAL jsonb_array_elements(t.documents) d
            WHERE d.value ->> 'Type' = :document_tag
        ),
        flat_aliases AS (
            SELECT DISTINCT ON (docs.identifier, a.value ->> 'Alias', a.value ->> 'Type')
                   docs.identifier, docs.account_type, docs.first_creation_time,
                   docs.title, docs.title_lower, docs.type,
                   a.value AS al
            FROM docs
            CROSS JOIN LATERAL jsonb_array_elements(docs.doc -> 'Aliases') a
            ORDER BY docs.identifier, a.value ->> 'Alias', a.value ->> 'Type',
                     a.value ->> 'CreationTime'
        ),
        aggregated AS (
            SELECT
                identifier,
                MAX(account_type) AS account_type,
                MAX(first_creation_time) AS first_creation_time,
                MAX(title) AS title,
                MAX(title_lower) AS title_lower,
                MAX(type) AS type,
                jsonb_agg(al ORDER BY al ->> 'Alias', al ->> 'Type') AS aliases_json,
                string_agg(
                    (al ->> 'Alias') || ':' || (al ->> 'Type'), ','
                    ORDER BY al ->> 'Alias', al ->> 'Type'
                ) AS alias_signature
            FROM flat_aliases
            GROUP BY identifier
        )
        SELECT
            identifier, account_type, first_creation_time, title, title_lower, type, aliases_json,
            md5(
                identifier ||
                COALESCE(title_lower, '') ||
                COALESCE(account_type, '') ||
                COALESCE(type, '') ||
                first_creation_time::text ||
                COALESCE(alias_signature, '')
            ) AS content_hash
        FROM aggregated
    """


DROP_NEW_DATA_SQL = f"DROP TABLE IF EXISTS {NEW_DATA_TABLE}"


def build_added_identifiers_sql(category: Category) -> str:
    table = canonical_table(category)
    return f"""
        SELECT nd.identifier FROM {NEW_DATA_TABLE} nd
        LEFT JOIN {table} t ON t.identifier = nd.identifier
        WHERE t.identifier IS NULL
        ORDER BY nd.identifier
    """


def build_modified_identifiers_sql(category: Category) -> str:
    table = canonical_table(category)
    return f"""
        SELECT nd.identifier FROM {NEW_DATA_TABLE} nd
        INNER JOIN {table} t ON t.identifier = nd.identifier
        WHERE t.content_hash IS DISTINCT FROM nd.content_hash
        ORDER BY nd.identifier
    """


def build_removed_identifiers_sql(category: Category) -> str:
    table = canonical_table(category)
    return f"""
        SELECT t.identifier FROM {table} t
        LEFT JOIN {NEW_DATA_TABLE} nd ON nd.identifier = t.identifier
        WHERE nd.identifier IS NULL
        ORDER BY t.identifier
    """


def build_current_count_sql(category: Category) -> str:
    return f"SELECT COUNT(*) FROM {canonical_table(category)}"


# =============================================================================
# Apply
# =============================================================================

def build_upsert_sql(category: Category) -> str:
    """Insert added rows and overwrite modified rows from the new snapshot."""
    table = canonical_table(category)
    return f"""
        INSERT INTO {table}
            (id, identifier, account_type, first_creation_time, title, title_lower,
             type, aliases_json, content_hash)
        SELECT
            gen_random_uuid(), nd.identifier, nd.account_type, nd.first_creation_time,
            nd.title, nd.title_lower, nd.type, nd.aliases_json, nd.content_hash
        FROM {NEW_DATA_TABLE} nd
        WHERE nd.identifier = ANY(CAST(:identifiers AS varchar[]))
        ON CONFLICT (identifier) DO UPDATE SET
            account_type = EXCLUDED.account_type,
            first_creation_time = EXCLUDED.first_creation_time,
            title = EXCLUDED.title,
            title_lower = EXCLUDED.title_lower,
            type = EXCLUDED.type,
            aliases_json = EXCLUDED.aliases_json,
            content_hash = EXCLUDED.content_hash
    """


def build_hard_delete_sql(category: Category) -> str:
    table = canonical_table(category)
    return f"""
        DELETE FROM {table}
        WHERE identifier = ANY(CAST(:identifiers AS varchar[]))
    """


def build_changelog_from_snapshot_sql() -> str:
    """
    Append Added or Modified events with the post-change snapshot.

    Rows are inserted in identifier order so seq follows it inside a kind.
    """
    return f"""
        INSERT INTO {CHANGELOG_TABLE}
            (id, document_type, identifier, change_type, changed_at,
             title, account_type, type, first_creation_time, aliases_json)
        SELECT gen_random_uuid(), :document_type, nd.identifier, :change_type, {LOCAL_NOW},
               nd.title, nd.account_type, nd.type, nd.first_creation_time, nd.aliases_json
        FROM {NEW_DATA_TABLE} nd
        WHERE nd.identifier = ANY(CAST(:identifiers AS varchar[]))
        ORDER BY nd.identifier
    """


def build_changelog_removed_sql() -> str:
    """Append Removed events; the snapshot columns stay NULL."""
    return f"""
        INSERT INTO {CHANGELOG_TABLE}
            (id, document_type, identifier, change_type, changed_at,
             title, account_type, type, first_creation_time, aliases_json)
        SELECT gen_random_uuid(), :document_type, ids.identifier, :change_type, {LOCAL_NOW},
               NULL, NULL, NULL, NULL, NULL
        FROM unnest(CAST(:identifiers AS varchar[])) AS ids(identifier)
        ORDER BY ids.identifier
    """


def build_prune_changelog_sql() -> str:
    """Delete change events older than :retention_days."""
    return f"""
        DELETE FROM {CHANGELOG_TABLE}
        WHERE changed_at < {LOCAL_NOW} - make_interval(days => :retention_days)
    """


# =============================================================================
# Views
# =============================================================================

def build_refresh_views_sql() -> List[str]:
    """REFRESH ... CONCURRENTLY keeps the views readable during the rebuild."""
    return [
        f"REFRESH MATERIALIZED VIEW CONCURRENTLY {derived_view(category)}"
        for category in Category
    ]


def build_view_count_sql(category: Category) -> str:
    return f"SELECT COUNT(*) FROM {derived_view(category)}"


# =============================================================================
# Sync metadata
# =============================================================================

_METADATA_COLUMNS = """
            key, last_sync_at, e_invoice_user_count, e_despatch_user_count, last_sync_duration,
            last_sync_status, last_sync_error, last_attempt_at, last_failure_at
"""

_KEEP_PREVIOUS_COUNTS = """
            (SELECT last_sync_at FROM sync_metadata WHERE key = :key),
            COALESCE((SELECT e_invoice_user_count FROM sync_metadata WHERE key = :key), 0),
            COALESCE((SELECT e_despatch_user_count FROM sync_metadata WHERE key = :key), 0),
            COALESCE((SELECT last_sync_duration FROM sync_metadata WHERE key = :key), INTERVAL '0 seconds'),
"""


def build_sync_metadata_upsert_sql() -> str:
    """Full upsert inside the data transaction; counts read from the canonical tables."""
    einvoice = canonical_table(Category.EINVOICE)
    edespatch = canonical_table(Category.EDESPATCH)
    return f"""
        INSERT INTO sync_metadata ({_METADATA_COLUMNS})
        VALUES (
            :key, :sync_at,
            (SELECT COUNT(*) FROM {einvoice}),
            (SELECT COUNT(*) FROM {edespatch}),
            make_interval(secs => :duration_seconds),
            :status, :error, :attempt_at, :failure_at
        )
        ON CONFLICT (key) DO UPDATE SET
            last_sync_at = EXCLUDED.last_sync_at,
            e_invoice_user_count = EXCLUDED.e_invoice_user_count,
            e_despatch_user_count = EXCLUDED.e_despatch_user_count,
            last_sync_duration = EXCLUDED.last_sync_duration,
            last_sync_status = EXCLUDED.last_sync_status,
            last_sync_error = EXCLUDED.last_sync_error,
            last_attempt_at = EXCLUDED.last_attempt_at,
            last_failure_at = EXCLUDED.last_failure_at
    """


def build_sync_metadata_status_update_sql() -> str:
    """Status-only update after commit; a success clears last_failure_at."""
    return f"""
        INSERT INTO sync_metadata ({_METADATA_COLUMNS})
        VALUES (
            :key,
            {_KEEP_PREVIOUS_COUNTS}
            :status, :error, :attempt_at,
            (SELECT last_failure_at FROM sync_metadata WHERE key = :key)
        )
        ON CONFLICT (key) DO UPDATE SET
            last_sync_status = EXCLUDED.last_sync_status,
            last_sync_error = EXCLUDED.last_sync_error,
            last_attempt_at = EXCLUDED.last_attempt_at,
            last_failure_at = CASE
                WHEN EXCLUDED.last_sync_status = 'success' THEN NULL
                ELSE sync_metadata.last_failure_at
            END
    """


def build_sync_metadata_failure_update_sql() -> str:
    return f"""
        INSERT INTO sync_metadata ({_METADATA_COLUMNS})
        VALUES (
            :key,
            {_KEEP_PREVIOUS_COUNTS}
            :status, :error, :attempt_at, :failure_at
        )
        ON CONFLICT (key) DO UPDATE SET
            last_sync_status = EXCLUDED.last_sync_status,
            last_sync_error = EXCLUDED.last_sync_error,
            last_attempt_at = EXCLUDED.last_attempt_at,
            last_failure_at = EXCLUDED.last_failure_at
    """


SELECT_SYNC_METADATA_SQL = """
    SELECT key, last_sync_at, e_invoice_user_count, e_despatch_user_count,
           EXTRACT(EPOCH FROM last_sync_duration) AS last_sync_duration_seconds,
           last_sync_status, last_sync_error, last_attempt_at, last_failure_at
    FROM sync_metadata
    WHERE key = :key
"""


# =============================================================================
# Archives
# =============================================================================

def build_archive_select_sql(category: Category) -> str:
    """Full canonical store of a category in identifier order."""
    return f"""
        SELECT identifier, title, account_type, type, first_creation_time, aliases_json
        FROM {canonical_table(category)}
        ORDER BY identifier
    """


INSERT_ARCHIVE_FILE_SQL = """
    INSERT INTO archive_files (id, document_type, file_name, size_bytes, created_at, user_count)
    VALUES (gen_random_uuid(), :document_type, :file_name, :size_bytes, :created_at, :user_count)
    ON CONFLICT (file_name) DO UPDATE SET
        size_bytes = EXCLUDED.size_bytes,
        created_at = EXCLUDED.created_at,
        user_count = EXCLUDED.user_count
"""

DELETE_ARCHIVE_FILE_SQL = "DELETE FROM archive_files WHERE file_name = :file_name"

SELECT_ARCHIVE_FILES_SQL = """
    SELECT file_name, size_bytes, created_at, user_count
    FROM archive_files
    WHERE document_type = :document_type
    ORDER BY created_at DESC
"""
