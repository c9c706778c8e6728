"""
Tests for the gzip XML snapshot exporter.
"""

import gzip
import io
import os
import time
import xml.etree.ElementTree as ET
from datetime import datetime
from unittest.mock import MagicMock, Mock

from xml.sax.saxutils import XMLGenerator

from constants import Category
from services.gib_archive_storage import FileSystemArchiveStorage
from services.gib_snapshot_exporter import SnapshotExporter, archive_file_name, write_user
from utils.normalize import registry_now


GENERATED_AT = datetime(2026, 10, 18, 3, 15, 0)

ROW = (
    '1234567890',
    'ÇAĞRI YAZILIM A.Ş.',
    'Özel',
    'Kagit',
    datetime(2014, 5, 6, 10, 11, 12),
    '[{"Alias": "urn:mail:defaultpk@cagri.com.tr", "Type": "PK", "CreationTime": "2014-05-06T10:11:12"}]',
)


def _render(row) -> ET.Element:
    buffer = io.StringIO()
    writer = XMLGenerator(buffer, encoding='utf-8', short_empty_elements=True)
    write_user(writer, row)
    return ET.fromstring(buffer.getvalue())


class TestArchiveFileName:

    def test_name_per_category(self):
        assert archive_file_name(Category.EINVOICE, GENERATED_AT) == 'einvoice/einvoice_users_2026-10-18_031500.xml.gz'
        assert archive_file_name('edespatch', GENERATED_AT) == 'edespatch/edespatch_users_2026-10-18_031500.xml.gz'


class TestWriteUser:

    def test_full_user(self):
        user = _render(ROW)

        assert user.findtext('Identifier') == '1234567890'
        assert user.findtext('Title') == 'ÇAĞRI YAZILIM A.Ş.'
        assert user.findtext('AccountType') == 'Özel'
        assert user.findtext('FirstCreationTime') == '2014-05-06T10:11:12'
        alias = user.find('Aliases/Alias')
        assert alias.findtext('Name') == 'urn:mail:defaultpk@cagri.com.tr'
        assert alias.findtext('Type') == 'PK'

    def test_optional_fields_omitted(self):
        user = _render(('1234567890', 'X', None, None, datetime(2020, 1, 1), None))
        assert user.find('AccountType') is None
        assert user.find('Type') is None
        assert user.find('Aliases') is None

    def test_malformed_aliases_json_writes_empty_list(self):
        user = _render(('1234567890', 'X', None, None, datetime(2020, 1, 1), '{not json'))
        assert list(user.find('Aliases')) == []


def _export_session(rows):
    session = Mock(spec=['execute', 'commit', 'rollback', 'close'])
    count_result = MagicMock()
    count_result.scalar.return_value = len(rows)
    session.execute.side_effect = [count_result, list(rows), MagicMock()]
    return session


class TestExport:

    def test_writes_archive_and_index_row(self, tmp_path):
        session = _export_session([ROW])
        storage = FileSystemArchiveStorage(str(tmp_path))
        exporter = SnapshotExporter(lambda: session, storage=storage, retention_days=7)

        assert exporter.export(Category.EINVOICE, GENERATED_AT) is None

        path = tmp_path / 'einvoice' / 'einvoice_users_2026-10-18_031500.xml.gz'
        with gzip.open(path, 'rb') as f:
            root = ET.fromstring(f.read())
        assert root.tag == 'GibUserList'
        assert root.get('documentType') == 'Invoice'
        assert root.get('count') == '1'
        assert root.find('User/Identifier').text == '1234567890'

        insert_params = session.execute.call_args_list[2].args[1]
        assert insert_params['document_type'] == Category.EINVOICE.code
        assert insert_params['user_count'] == 1
        assert insert_params['size_bytes'] == path.stat().st_size
        session.commit.assert_called_once()
        session.close.assert_called_once()

    def test_failure_returns_warning(self, tmp_path):
        session = Mock(spec=['execute', 'commit', 'rollback', 'close'])
        session.execute.side_effect = RuntimeError("relation does not exist")
        exporter = SnapshotExporter(lambda: session, storage=FileSystemArchiveStorage(str(tmp_path)))

        warning = exporter.export(Category.EDESPATCH, GENERATED_AT)

        assert 'Archive generation failed for e_despatch_gib_users' in warning
        session.rollback.assert_called_once()

    def test_export_all_collects_warnings(self, tmp_path):
        exporter = SnapshotExporter(Mock(), storage=FileSystemArchiveStorage(str(tmp_path)), clock=lambda: GENERATED_AT)
        exporter.export = Mock(side_effect=[None, "Archive generation failed for e_despatch_gib_users: boom"])

        assert exporter.export_all() == ["Archive generation failed for e_despatch_gib_users: boom"]
        assert exporter.export.call_args_list[0].args == (Category.EINVOICE, GENERATED_AT)


class TestCleanup:

    def test_deletes_only_expired(self, tmp_path):
        storage = FileSystemArchiveStorage(str(tmp_path))
        storage.save('einvoice/old.xml.gz', io.BytesIO(b'old'))
        storage.save('einvoice/new.xml.gz', io.BytesIO(b'new'))
        old_mtime = time.time() - 10 * 86400
        os.utime(tmp_path / 'einvoice' / 'old.xml.gz', (old_mtime, old_mtime))
        session = Mock(spec=['execute', 'commit', 'rollback', 'close'])

        exporter = SnapshotExporter(lambda: session, storage=storage, retention_days=7, clock=registry_now)

        assert exporter.cleanup() is None
        assert not (tmp_path / 'einvoice' / 'old.xml.gz').exists()
        assert (tmp_path / 'einvoice' / 'new.xml.gz').exists()
        assert session.execute.call_args.args[1] == {'file_name': 'einvoice/old.xml.gz'}
        session.commit.assert_called_once()
