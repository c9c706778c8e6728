#!/usr/bin/env python3
"""
Run all pending SQL migrations in order.

Tracks applied migrations in a `_migrations` table to ensure idempotency.
Safe to run multiple times - only applies new migrations.

Connection: DATABASE_URL_MIGRATIONS, falling back to DATABASE_URL.
- Direct connection or session pooler: OK
- Transaction pooler (port 6543): REJECTED - wraps queries, breaks DDL

Concurrency: Uses pg_advisory_lock to ensure only one migration runner
executes at a time (parallel deploys, or the sync job's --ensure-schema).

Usage:
    DATABASE_URL_MIGRATIONS=<url> python scripts/run_migrations.py
    python services/gib_sync_engine.py --ensure-schema
"""
import os
import sys
import time
from pathlib import Path
from typing import Optional

# Add backend to path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from config import to_libpq_url

# Advisory lock ID for migration serialization (distinct from the sync run lock)
MIGRATION_LOCK_ID = 583920174

MIGRATIONS_DIR = backend_dir / 'migrations'


class MigrationError(Exception):
    """A migration file failed or the database is not in a migratable state."""


def connect_with_retry(db_url: str, attempts: int = 4, base_sleep: float = 0.75):
    """
    Connect to database with exponential backoff retry.

    Mirrors the retry logic in db/engine.py for consistency.

    Raises:
        psycopg2.OperationalError: If all attempts fail
    """
    import psycopg2

    last_error = None

    for i in range(attempts):
        try:
            conn = psycopg2.connect(db_url, connect_timeout=30)
            print(f"Database connected (attempt {i + 1}/{attempts})")
            return conn
        except psycopg2.OperationalError as e:
            last_error = e
            if i < attempts - 1:
                sleep_s = base_sleep * (2 ** i)
                print(f"Connection failed (attempt {i + 1}/{attempts}), retrying in {sleep_s:.2f}s...")
                print(f"  Error: {str(e)[:100]}")
                time.sleep(sleep_s)

    print(f"All {attempts} connection attempts failed")
    raise last_error


def needs_autocommit(sql_content: str) -> bool:
    """
    Check if migration needs autocommit mode.

    CREATE INDEX CONCURRENTLY cannot run inside a transaction block.
    Same for DROP INDEX CONCURRENTLY, REINDEX CONCURRENTLY, etc.
    """
    return 'CONCURRENTLY' in sql_content.upper()


def find_invalid_indexes(conn):
    """Names of invalid indexes left behind by interrupted CONCURRENTLY builds (public schema)."""
    cursor = conn.cursor()
    cursor.execute("""
        SELECT c.relname AS index_name
        FROM pg_index i
        JOIN pg_class c ON c.oid = i.indexrelid
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE NOT i.indisvalid
          AND i.indisready  -- Exclude in-progress concurrent builds
          AND n.nspname = 'public'
    """)
    invalid = [row[0] for row in cursor.fetchall()]
    cursor.close()
    return invalid


def check_invalid_indexes(conn, auto_drop: bool = False):
    """
    Detect and optionally drop invalid indexes.

    An invalid index blocks CREATE INDEX IF NOT EXISTS from creating a
    valid replacement.

    Raises:
        MigrationError: invalid indexes found and auto_drop=False
    """
    invalid = find_invalid_indexes(conn)
    if not invalid:
        return []

    print("\n" + "=" * 60)
    print("INVALID INDEXES DETECTED (from interrupted migrations)")
    print("=" * 60)
    for name in invalid:
        print(f"  - {name}")

    if not auto_drop:
        print("\nTo fix manually, run in psql:")
        for name in invalid:
            print(f'  DROP INDEX IF EXISTS "{name}";')
        print("\nOr set AUTO_DROP_INVALID_INDEXES=1 to drop automatically.")
        print("=" * 60)
        raise MigrationError(f"{len(invalid)} invalid index(es) found: {', '.join(invalid)}")

    print("\nAuto-dropping invalid indexes...")
    drop_cursor = conn.cursor()
    for name in invalid:
        drop_cursor.execute(f'DROP INDEX IF EXISTS "{name}"')
        print(f"  Dropped: {name}")
    drop_cursor.close()
    print("=" * 60 + "\n")
    return []


def is_transaction_pooler_url(url: str) -> bool:
    """Transaction poolers (port 6543 by convention) wrap queries in transactions, breaking DDL."""
    return ':6543' in url


def pending_migrations(migrations_dir: Path, applied) -> list:
    """Migration files not yet in `applied`, sorted by name."""
    return [f for f in sorted(migrations_dir.glob('*.sql')) if f.name not in applied]


def run_pending_migrations(db_url: str, migrations_dir: Optional[Path] = None) -> int:
    """
    Apply every pending migration under the migration lock.

    Returns:
        Number of migrations applied

    Raises:
        MigrationError: bad URL, missing directory, invalid indexes or a failing file
    """
    if is_transaction_pooler_url(db_url):
        raise MigrationError("Migration URL points at a transaction pooler (port 6543); use a direct connection")

    db_url = to_libpq_url(db_url)
    migrations_dir = Path(migrations_dir or MIGRATIONS_DIR)
    if not migrations_dir.exists():
        raise MigrationError(f"Migrations directory not found: {migrations_dir}")

    print("Connecting to database...")
    conn = connect_with_retry(db_url)
    cur = conn.cursor()

    try:
        conn.autocommit = True
        print("Acquiring migration lock...")
        cur.execute("SELECT pg_advisory_lock(%s)", (MIGRATION_LOCK_ID,))
        print("Migration lock acquired")

        cur.execute("""
            CREATE TABLE IF NOT EXISTS _migrations (
                name TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        auto_drop = os.environ.get('AUTO_DROP_INVALID_INDEXES', '').lower() in ('1', 'true', 'yes')
        check_invalid_indexes(conn, auto_drop=auto_drop)

        cur.execute("SELECT name FROM _migrations")
        applied = {row[0] for row in cur.fetchall()}
        print(f"Already applied: {len(applied)} migrations")

        pending = pending_migrations(migrations_dir, applied)
        if not pending:
            print("No pending migrations.")
            return 0

        print(f"Pending migrations: {len(pending)}")

        for sql_file in pending:
            sql_content = sql_file.read_text()
            use_autocommit = needs_autocommit(sql_content)

            mode = "AUTOCOMMIT" if use_autocommit else "TRANSACTION"
            print(f"\nApplying {sql_file.name} [{mode}]...")

            try:
                conn.autocommit = use_autocommit
                cur.execute(sql_content)
                cur.execute("INSERT INTO _migrations (name) VALUES (%s)", (sql_file.name,))
                if not use_autocommit:
                    conn.commit()
                print(f"  OK: {sql_file.name}")

            except Exception as e:
                if not use_autocommit:
                    conn.rollback()
                print(f"  FAILED: {sql_file.name}")
                print(f"  Error: {e}")
                raise MigrationError(f"{sql_file.name}: {e}") from e

        print(f"\nMigrations complete: {len(pending)} applied")
        return len(pending)

    finally:
        # Lock is also released on disconnect
        try:
            conn.autocommit = True
            cur.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_LOCK_ID,))
            print("Migration lock released")
        except Exception as e:
            print(f"Could not release migration lock explicitly: {e}")
        cur.close()
        conn.close()


def main():
    db_url = os.environ.get('DATABASE_URL_MIGRATIONS') or os.environ.get('DATABASE_URL')
    if not db_url:
        print("=" * 60)
        print("ERROR: DATABASE_URL_MIGRATIONS (or DATABASE_URL) environment variable required")
        print("=" * 60)
        sys.exit(1)

    try:
        run_pending_migrations(db_url)
    except MigrationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
