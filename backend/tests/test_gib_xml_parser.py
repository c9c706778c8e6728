"""
Tests for the GIB user list XML parser.

Covers record mapping, alias liveness, skipped bad records and the
failure-rate alarm.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import datetime

import pytest

from services.gib_xml_parser import (
    GibXmlParser,
    ParseStats,
    parse_user_element,
)
from utils.normalize import ValidationError


def _user_xml(identifier="1234567890", title="ACME A.Ş.", documents="", extra=""):
    return f"""
    <User>
      <Identifier>{identifier}</Identifier>
      <Title>{title}</Title>
      <Type>Ozel</Type>
      <AccountType>Kagit</AccountType>
      <FirstCreationTime>2020-01-02T03:04:05.1234567</FirstCreationTime>
      {extra}
      <Documents>{documents}</Documents>
    </User>
    """


INVOICE_DOC = """
<Document type="Invoice">
  <Alias>
    <Name>urn:mail:defaultpk@acme.com</Name>
    <CreationTime>2020-01-02T03:04:05</CreationTime>
  </Alias>
  <Alias>
    <Name>urn:mail:old@acme.com</Name>
    <CreationTime>2019-01-01T00:00:00</CreationTime>
    <DeletionTime>2019-06-01T00:00:00</DeletionTime>
  </Alias>
</Document>
"""


def _write(tmp_path, body, name="pk.xml"):
    path = tmp_path / name
    path.write_text(f"<UserList>{body}</UserList>", encoding="utf-8")
    return path


# =============================================================================
# parse_user_element
# =============================================================================

class TestParseUserElement:

    def test_maps_all_fields(self):
        record = parse_user_element(ET.fromstring(_user_xml(documents=INVOICE_DOC)))

        assert record.identifier == "1234567890"
        assert record.title == "ACME A.Ş."
        assert record.title_lower == "acme a.ş."
        assert record.subject_type == "Ozel"
        assert record.account_type == "Kagit"
        assert record.first_registered_at == datetime(2020, 1, 2, 3, 4, 5, 123456)
        assert record.document_types == ["Invoice"]

    def test_deleted_alias_is_not_live(self):
        record = parse_user_element(ET.fromstring(_user_xml(documents=INVOICE_DOC)))
        aliases = record.documents[0].aliases

        assert [a.is_live for a in aliases] == [True, False]

    def test_alias_without_name_is_not_live(self):
        doc = '<Document type="Invoice"><Alias><CreationTime>2020-01-01T00:00:00</CreationTime></Alias></Document>'
        record = parse_user_element(ET.fromstring(_user_xml(documents=doc)))

        assert record.documents[0].aliases[0].is_live is False

    def test_alias_with_several_names(self):
        doc = '<Document type="DespatchAdvice"><Alias><Name>a</Name><Name>b</Name></Alias></Document>'
        record = parse_user_element(ET.fromstring(_user_xml(documents=doc)))

        assert record.documents[0].aliases[0].names == ["a", "b"]

    def test_missing_title_raises(self):
        element = ET.fromstring(
            "<User><Identifier>1234567890</Identifier>"
            "<FirstCreationTime>2020-01-01T00:00:00</FirstCreationTime></User>"
        )
        with pytest.raises(ValidationError) as exc:
            parse_user_element(element)
        assert exc.value.field == "Title"

    def test_invalid_identifier_raises(self):
        with pytest.raises(ValidationError):
            parse_user_element(ET.fromstring(_user_xml(identifier="ABC")))

    def test_document_without_type_raises(self):
        with pytest.raises(ValidationError):
            parse_user_element(ET.fromstring(_user_xml(documents="<Document><Alias/></Document>")))

    def test_namespaced_elements(self):
        xml = (
            '<User xmlns="urn:gib"><Identifier>12345678901</Identifier><Title>X</Title>'
            '<FirstCreationTime>2020-01-01T00:00:00</FirstCreationTime></User>'
        )
        record = parse_user_element(ET.fromstring(xml))
        assert record.identifier == "12345678901"


# =============================================================================
# GibXmlParser
# =============================================================================

class TestGibXmlParser:

    def test_streams_records_and_counts(self, tmp_path):
        path = _write(tmp_path, _user_xml("1111111111") + _user_xml("2222222222"))
        parser = GibXmlParser()

        identifiers = [r.identifier for r in parser.parse_records(path)]

        assert identifiers == ["1111111111", "2222222222"]
        assert parser.stats.successes == 2
        assert parser.stats.failures == 0
        assert parser.stats.alarm_raised is False

    def test_bad_record_is_skipped(self, tmp_path, caplog):
        body = _user_xml("1111111111") + _user_xml("bad") + _user_xml("3333333333")
        path = _write(tmp_path, body)
        parser = GibXmlParser(failure_alarm_percent=50)

        with caplog.at_level(logging.WARNING):
            identifiers = [r.identifier for r in parser.parse_records(path)]

        assert identifiers == ["1111111111", "3333333333"]
        assert parser.stats.failures == 1
        assert "position 2" in caplog.text

    def test_alarm_at_threshold(self, tmp_path, caplog):
        body = "".join(_user_xml(str(1000000000 + i)) for i in range(19)) + _user_xml("bad")
        path = _write(tmp_path, body)
        parser = GibXmlParser()

        with caplog.at_level(logging.CRITICAL):
            list(parser.parse_records(path))

        assert parser.stats.failure_percent == pytest.approx(5.0)
        assert parser.stats.alarm_raised is True
        assert "Data quality may be compromised" in caplog.text

    def test_no_alarm_below_threshold(self, tmp_path):
        body = "".join(_user_xml(str(1000000000 + i)) for i in range(20)) + _user_xml("bad")
        path = _write(tmp_path, body)
        parser = GibXmlParser()

        list(parser.parse_records(path))

        assert parser.stats.alarm_raised is False

    def test_empty_file(self, tmp_path):
        path = _write(tmp_path, "")
        parser = GibXmlParser()

        assert list(parser.parse_records(path)) == []
        assert parser.stats.total == 0
        assert parser.stats.alarm_raised is False

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / "broken.xml"
        path.write_text("<UserList><User>", encoding="utf-8")

        with pytest.raises(ET.ParseError):
            list(GibXmlParser().parse_records(path))


class TestParseStats:

    def test_failure_percent_zero_when_empty(self):
        assert ParseStats(file_name="x").failure_percent == 0.0

    def test_to_dict(self):
        stats = ParseStats(file_name="pk.xml", successes=3, failures=1)
        d = stats.to_dict()
        assert d['file_name'] == "pk.xml"
        assert d['failure_percent'] == 25.0
