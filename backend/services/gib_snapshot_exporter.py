"""
Snapshot exporter - full per-category registry archives for consumer bootstrap

After an applied run, each category's canonical table is streamed (ordered by
identifier, server-side cursor) into a gzip XML file:

    <GibUserList documentType="Invoice" generatedAt="..." count="N">
      <User>
        <Identifier/><Title/><AccountType/><Type/><FirstCreationTime/>
        <Aliases><Alias><Name/><Type/><CreationTime/></Alias>...</Aliases>
      </User>
    </GibUserList>

The file is written to a local temp path, saved to archive storage and
indexed in archive_files. Failures are returned as warning strings; they
never abort the run.
"""

import gzip
import json
import logging
import os
import tempfile
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from xml.sax.saxutils import XMLGenerator

from sqlalchemy import text

from constants import Category
from services.gib_archive_storage import FileSystemArchiveStorage
from services.gib_sync_config import get_archive_base_path, get_archive_retention_days
from services.gib_sync_sql import (
    DELETE_ARCHIVE_FILE_SQL,
    INSERT_ARCHIVE_FILE_SQL,
    build_archive_select_sql,
    build_current_count_sql,
    canonical_table,
)
from utils.normalize import registry_now

logger = logging.getLogger(__name__)


ARCHIVE_TIMESTAMP_FORMAT = '%Y-%m-%d_%H%M%S'
STREAM_CHUNK_SIZE = 2000


def archive_file_name(category: Category, generated_at: datetime) -> str:
    """e.g. einvoice/einvoice_users_2026-10-18_031500.xml.gz"""
    category = Category.parse(category)
    stamp = generated_at.strftime(ARCHIVE_TIMESTAMP_FORMAT)
    return f"{category.value}/{category.value}_users_{stamp}.xml.gz"


def _format_time(value) -> str:
    return value.isoformat() if isinstance(value, datetime) else str(value)


def _load_aliases(raw) -> list:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Skipping malformed aliases_json in archive export")
            return []
    return raw if isinstance(raw, list) else []


def _element(writer: XMLGenerator, name: str, value: Optional[str]):
    writer.startElement(name, {})
    if value is not None:
        writer.characters(value)
    writer.endElement(name)


def write_user(writer: XMLGenerator, row) -> None:
    """One <User> element from a canonical row (identifier, title, account_type, type, first_creation_time, aliases_json)."""
    identifier, title, account_type, subject_type, first_creation_time, aliases_json = row

    writer.startElement('User', {})
    _element(writer, 'Identifier', identifier)
    _element(writer, 'Title', title)
    if account_type is not None:
        _element(writer, 'AccountType', account_type)
    if subject_type is not None:
        _element(writer, 'Type', subject_type)
    _element(writer, 'FirstCreationTime', _format_time(first_creation_time))

    aliases = _load_aliases(aliases_json)
    if aliases_json is not None:
        writer.startElement('Aliases', {})
        for alias in aliases:
            writer.startElement('Alias', {})
            if 'Alias' in alias:
                _element(writer, 'Name', alias['Alias'])
            if 'Type' in alias:
                _element(writer, 'Type', alias['Type'])
            if 'CreationTime' in alias:
                _element(writer, 'CreationTime', alias['CreationTime'])
            writer.endElement('Alias')
        writer.endElement('Aliases')

    writer.endElement('User')


class SnapshotExporter:
    """
    Writes archives for every category and prunes the expired ones.

    Usage:
        exporter = SnapshotExporter(session_factory)
        warnings = exporter.export_all()
        warning = exporter.cleanup()
    """

    def __init__(
        self,
        session_factory=None,
        storage: Optional[FileSystemArchiveStorage] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = registry_now,
    ):
        self._session_factory = session_factory
        self.storage = storage or FileSystemArchiveStorage(get_archive_base_path())
        self.retention_days = get_archive_retention_days() if retention_days is None else retention_days
        self._clock = clock

    def _new_session(self):
        if self._session_factory is None:
            from db.engine import session_factory
            self._session_factory = session_factory("job")
        return self._session_factory()

    def export_all(self) -> List[str]:
        """Export every category with a shared timestamp. Returns warning messages."""
        generated_at = self._clock()
        warnings = []
        for category in Category:
            error = self.export(category, generated_at)
            if error:
                warnings.append(error)
        return warnings

    def export(self, category: Category, generated_at: Optional[datetime] = None) -> Optional[str]:
        """Export one category. Returns None on success or a warning message."""
        category = Category.parse(category)
        table = canonical_table(category)
        generated_at = generated_at or self._clock()
        file_name = archive_file_name(category, generated_at)
        temp_path = os.path.join(tempfile.gettempdir(), f"gib_archive_{uuid.uuid4().hex}.xml.gz")
        start_time = time.time()

        session = self._new_session()
        try:
            user_count = self._write_archive(session, category, temp_path, generated_at)

            with open(temp_path, 'rb') as source:
                size_bytes = self.storage.save(file_name, source)

            session.execute(text(INSERT_ARCHIVE_FILE_SQL), {
                'document_type': category.code,
                'file_name': file_name,
                'size_bytes': size_bytes,
                'created_at': generated_at,
                'user_count': user_count,
            })
            session.commit()

            logger.info(
                f"Archive generated: {file_name} ({user_count:,} users, {size_bytes:,} bytes, "
                f"{time.time() - start_time:.1f}s)"
            )
            return None

        except Exception as e:
            session.rollback()
            logger.warning(f"Archive generation failed for {table}: {e}")
            return f"Archive generation failed for {table}: {e}"

        finally:
            session.close()
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as e:
                    logger.warning(f"Could not remove temp archive {temp_path}: {e}")

    def _write_archive(self, session, category: Category, path: str, generated_at: datetime) -> int:
        user_count = session.execute(text(build_current_count_sql(category))).scalar() or 0

        with gzip.open(path, 'wb') as gz:
            writer = XMLGenerator(gz, encoding='utf-8', short_empty_elements=True)
            writer.startDocument()
            writer.startElement('GibUserList', {
                'documentType': category.document_tag,
                'generatedAt': generated_at.isoformat(),
                'count': str(user_count),
            })

            result = session.execute(
                text(build_archive_select_sql(category)).execution_options(
                    stream_results=True, yield_per=STREAM_CHUNK_SIZE,
                )
            )
            for row in result:
                write_user(writer, tuple(row))

            writer.endElement('GibUserList')
            writer.endDocument()

        return user_count

    def cleanup(self) -> Optional[str]:
        """
        Delete archives older than the retention window, file and index row.

        Returns:
            None on success, or a warning message
        """
        cutoff = self._clock() - timedelta(days=self.retention_days)
        session = self._new_session()
        try:
            deleted = 0
            for info in self.storage.list():
                if info.created_at >= cutoff:
                    continue
                self.storage.delete(info.file_name)
                session.execute(text(DELETE_ARCHIVE_FILE_SQL), {'file_name': info.file_name})
                logger.info(f"Expired archive deleted: {info.file_name}")
                deleted += 1
            session.commit()
            if deleted:
                logger.info(f"Archive retention cleanup removed {deleted} file(s) older than {self.retention_days} days")
            return None

        except Exception as e:
            session.rollback()
            logger.warning(f"Archive retention cleanup failed: {e}")
            return f"Archive retention cleanup failed: {e}"

        finally:
            session.close()
