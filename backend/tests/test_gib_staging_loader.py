"""
Tests for the staging loader.

COPY goes through a mocked psycopg2 cursor; rows are checked by reading the
CSV buffer handed to copy_expert.
"""

import csv
import io
import json
import threading
from datetime import datetime
from unittest.mock import MagicMock, Mock

import pytest

from constants import OriginList
from services.etl import create_run_context
from services.gib_errors import SyncCancelledError
from services.gib_staging_loader import (
    StagingLoader,
    StagingResult,
    build_documents,
    to_staging_row,
)
from services.gib_xml_parser import CanonicalRecord, ParseStats, SourceAlias, SourceDocument


def _record(identifier="1234567890", documents=None):
    return CanonicalRecord(
        identifier=identifier,
        title="İZMİR IŞIK LTD",
        account_type="Ozel",
        subject_type="Kurum",
        first_registered_at=datetime(2020, 5, 6, 7, 8, 9),
        documents=documents or [],
    )


def _mock_session():
    session = MagicMock()
    raw_conn = session.connection.return_value.connection
    cursor = raw_conn.cursor.return_value.__enter__.return_value
    copied = []

    def copy_expert(sql, buffer):
        copied.append((sql, list(csv.reader(io.StringIO(buffer.getvalue())))))

    cursor.copy_expert.side_effect = copy_expert
    return session, cursor, copied


# =============================================================================
# Row mapping
# =============================================================================

class TestBuildDocuments:

    def test_live_aliases_only_one_entry_per_name(self):
        record = _record(documents=[
            SourceDocument('Invoice', [
                SourceAlias(names=['a', 'b'], created_at=datetime(2020, 1, 1)),
                SourceAlias(names=['gone'], created_at=datetime(2019, 1, 1), deleted_at=datetime(2019, 2, 1)),
                SourceAlias(names=[], created_at=None),
            ]),
        ])

        documents = build_documents(record, OriginList.GB)

        assert documents == [{
            'Type': 'Invoice',
            'Aliases': [
                {'Alias': 'a', 'CreationTime': '2020-01-01T00:00:00', 'Type': 'GB'},
                {'Alias': 'b', 'CreationTime': '2020-01-01T00:00:00', 'Type': 'GB'},
            ],
        }]

    def test_document_with_no_live_alias_is_kept_empty(self):
        record = _record(documents=[SourceDocument('DespatchAdvice', [])])
        assert build_documents(record, OriginList.PK) == [{'Type': 'DespatchAdvice', 'Aliases': []}]


class TestToStagingRow:

    def test_column_order_and_turkish_lower(self):
        row = to_staging_row(_record(), OriginList.PK)

        assert row[0] == "1234567890"
        assert row[1] == "Ozel"
        assert row[2] == "2020-05-06 07:08:09"
        assert row[3] == "İZMİR IŞIK LTD"
        assert row[4] == "izmir ışık ltd"
        assert row[5] == "Kurum"
        assert json.loads(row[6]) == []

    def test_non_ascii_json_is_kept_readable(self):
        record = _record(documents=[SourceDocument('Invoice', [SourceAlias(names=['ş'], created_at=None)])])
        row = to_staging_row(record, OriginList.PK)
        assert '"ş"' in row[6]


# =============================================================================
# COPY batching
# =============================================================================

class TestLoad:

    def test_batches_by_size(self):
        session, cursor, copied = _mock_session()
        loader = StagingLoader(batch_size=2, parser=Mock())
        records = [_record(str(1000000000 + i)) for i in range(5)]

        written = loader.load(session, OriginList.PK, records)

        assert written == 5
        assert [len(rows) for _, rows in copied] == [2, 2, 1]
        assert copied[0][0].startswith("COPY gib_user_temp_pk (")

    def test_none_becomes_empty_csv_field(self):
        session, cursor, copied = _mock_session()
        record = _record()
        record.account_type = None
        StagingLoader(batch_size=10, parser=Mock()).load(session, OriginList.GB, [record])

        row = copied[0][1][0]
        assert row[1] == ''

    def test_empty_stream_writes_nothing(self):
        session, cursor, copied = _mock_session()
        assert StagingLoader(batch_size=10, parser=Mock()).load(session, OriginList.PK, []) == 0
        cursor.copy_expert.assert_not_called()

    def test_cancel_checked_between_batches(self):
        session, cursor, copied = _mock_session()
        cancel = threading.Event()
        cancel.set()
        loader = StagingLoader(batch_size=1, parser=Mock())

        with pytest.raises(SyncCancelledError):
            loader.load(session, OriginList.PK, [_record()], cancel)
        cursor.copy_expert.assert_not_called()


class TestStage:

    def _parser(self, per_origin):
        parser = Mock()
        calls = iter(per_origin)

        def parse_records(path):
            records, stats = next(calls)
            parser.stats = stats
            return iter(records)

        parser.parse_records.side_effect = parse_records
        return parser

    def test_stage_loads_both_lists_and_rebuilds_indexes(self, tmp_path):
        session, cursor, copied = _mock_session()
        pk_path = tmp_path / "pk.xml"
        gb_path = tmp_path / "gb.xml"
        pk_path.write_text("<x/>")
        gb_path.write_text("<x/>")

        pk_stats = ParseStats(file_name="pk.xml", successes=2)
        gb_stats = ParseStats(file_name="gb.xml", successes=1, failures=1, alarm_raised=True)
        parser = self._parser([
            ([_record("1111111111"), _record("2222222222")], pk_stats),
            ([_record("3333333333")], gb_stats),
        ])
        metrics = Mock()
        ctx = create_run_context()

        result = StagingLoader(batch_size=100, parser=parser, metrics=metrics).stage(
            session, {OriginList.PK: pk_path, OriginList.GB: gb_path}, run_context=ctx,
        )

        assert result.rows == {OriginList.PK: 2, OriginList.GB: 1}
        assert result.alarms == [gb_stats]
        assert ctx.rows_staged == {'PK': 2, 'GB': 1}
        assert ctx.parse_failures['GB'] == 1
        metrics.record_users_processed.assert_any_call('pk', 2)
        metrics.record_users_processed.assert_any_call('gb', 1)
        assert not pk_path.exists()
        assert not gb_path.exists()

        statements = [str(call.args[0]) for call in session.execute.call_args_list]
        assert statements[0] == "TRUNCATE TABLE gib_user_temp_pk"
        assert any("CREATE INDEX idx_gib_user_temp_gb_documents" in s for s in statements)


class TestStagingResult:

    def test_alarms_empty_by_default(self):
        assert StagingResult().alarms == []
