"""
GIB Staging Loader - Bulk loads parsed records into the staging tables

Each origin list lands in its own staging table (gib_user_temp_pk /
gib_user_temp_gb) through PostgreSQL COPY in fixed-size batches. The loader
runs on the caller's session, inside the sync transaction, so a failure
leaves nothing staged once the transaction rolls back.

Staging row layout:
    identifier, account_type, first_creation_time, title, title_lower, type,
    documents JSONB: [{"Type": "Invoice", "Aliases": [{"Alias", "CreationTime", "Type": "PK"}]}]

Aliases with a DeletionTime or without a Name are dropped here; an alias
with several names becomes one entry per name. The alias "Type" is the
origin list the record came from.
"""

import csv
import io
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy import text

from constants import OriginList
from services.etl.run_context import RunContext
from services.gib_errors import raise_if_cancelled
from services.gib_metrics import MetricsPort, NullMetrics
from services.gib_sync_config import get_batch_size
from services.gib_sync_sql import (
    build_clear_staging_sql,
    build_copy_sql,
    build_staging_index_sql,
)
from services.gib_xml_parser import CanonicalRecord, GibXmlParser, ParseStats

logger = logging.getLogger(__name__)


def _format_timestamp(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def build_documents(record: CanonicalRecord, origin: OriginList) -> List[dict]:
    """Staging JSON for a record's documents, live aliases only."""
    documents = []
    for doc in record.documents:
        aliases = [
            {
                'Alias': name,
                'CreationTime': _format_timestamp(alias.created_at),
                'Type': origin.value,
            }
            for alias in doc.aliases
            if alias.is_live
            for name in alias.names
        ]
        documents.append({'Type': doc.document_type, 'Aliases': aliases})
    return documents


def to_staging_row(record: CanonicalRecord, origin: OriginList) -> tuple:
    """One COPY row in STAGING_COLUMNS order."""
    return (
        record.identifier,
        record.account_type,
        record.first_registered_at.isoformat(sep=' '),
        record.title,
        record.title_lower,
        record.subject_type,
        json.dumps(build_documents(record, origin), ensure_ascii=False),
    )


@dataclass
class StagingResult:
    """Rows written and parse counters per origin list."""
    rows: Dict[OriginList, int] = field(default_factory=dict)
    parse_stats: Dict[OriginList, ParseStats] = field(default_factory=dict)

    @property
    def alarms(self) -> List[ParseStats]:
        return [stats for stats in self.parse_stats.values() if stats.alarm_raised]


class StagingLoader:
    """
    Writes CanonicalRecord streams into the staging tables with COPY.

    Example:
        loader = StagingLoader()
        result = loader.stage(session, {OriginList.PK: pk_xml, OriginList.GB: gb_xml})
        print(result.rows[OriginList.PK])
    """

    def __init__(
        self,
        batch_size: Optional[int] = None,
        parser: Optional[GibXmlParser] = None,
        metrics: Optional[MetricsPort] = None,
    ):
        self.batch_size = batch_size or get_batch_size()
        self.parser = parser or GibXmlParser()
        self.metrics = metrics or NullMetrics()

    # =========================================================================
    # Staging lifecycle
    # =========================================================================

    def clear(self, session):
        logger.info("Cleaning staging tables...")
        for statement in build_clear_staging_sql():
            session.execute(text(statement))

    def create_indexes(self, session):
        logger.info("Creating staging indexes...")
        for statement in build_staging_index_sql():
            session.execute(text(statement))

    def stage(
        self,
        session,
        xml_paths: Dict[OriginList, Path],
        cancel_event: Optional[threading.Event] = None,
        run_context: Optional[RunContext] = None,
    ) -> StagingResult:
        """
        Clear staging, load both origin lists, rebuild indexes.

        Each XML file is deleted once its rows are written.
        """
        result = StagingResult()
        self.clear(session)

        for origin in OriginList:
            raise_if_cancelled(cancel_event, f"staging {origin.value}")
            xml_path = Path(xml_paths[origin])

            logger.info(f"Processing {origin.value} user list...")
            records = self.parser.parse_records(xml_path)
            written = self.load(session, origin, records, cancel_event)

            result.rows[origin] = written
            result.parse_stats[origin] = self.parser.stats
            self.metrics.record_users_processed(origin.value.lower(), written)
            if run_context is not None:
                run_context.record_staged(origin.value, written, self.parser.stats.failures)

            xml_path.unlink(missing_ok=True)

        self.create_indexes(session)
        return result

    # =========================================================================
    # COPY
    # =========================================================================

    def load(
        self,
        session,
        origin: OriginList,
        records: Iterable[CanonicalRecord],
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """
        COPY records into the origin's staging table in batches.

        Cancellation is checked at every batch boundary.

        Returns:
            Number of rows written
        """
        # Raw psycopg2 connection of the session's transaction
        raw_conn = session.connection().connection
        copy_sql = build_copy_sql(origin)

        batch: List[tuple] = []
        total_written = 0

        with raw_conn.cursor() as cursor:
            for record in records:
                batch.append(to_staging_row(record, origin))

                if len(batch) >= self.batch_size:
                    raise_if_cancelled(cancel_event, f"next {origin.value} batch")
                    self._copy_batch(cursor, copy_sql, batch)
                    total_written += len(batch)
                    logger.info(f"Wrote {len(batch):,} {origin.value} records (total: {total_written:,})")
                    batch = []

            if batch:
                raise_if_cancelled(cancel_event, f"last {origin.value} batch")
                self._copy_batch(cursor, copy_sql, batch)
                total_written += len(batch)
                logger.info(f"Wrote {len(batch):,} remaining {origin.value} records (total: {total_written:,})")

        return total_written

    @staticmethod
    def _copy_batch(cursor, copy_sql: str, rows: List[tuple]):
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator='\n')
        writer.writerows(rows)
        buffer.seek(0)
        cursor.copy_expert(copy_sql, buffer)
