"""
GIB XML Parser - Streams User records out of a registered user list file

The record files are several hundred MB, so the parser walks them with
ElementTree.iterparse and detaches every finished <User> element from the
tree. Peak memory stays at one record regardless of file size.

Record shape:
    <User>
      <Identifier/> <Title/> <Type/> <AccountType/> <FirstCreationTime/>
      <Documents>
        <Document type="Invoice|DespatchAdvice">
          <Alias><Name/>...<CreationTime/><DeletionTime/></Alias>
        </Document>
      </Documents>
    </User>

A <User> that cannot be turned into a record (missing identifier, bad
timestamp, ...) is logged with its position and skipped. When the stream
ends with a failure rate of 5% or more a CRITICAL data-quality alarm is
logged and ParseStats.alarm_raised is set.

Usage:
    parser = GibXmlParser()
    for record in parser.parse_records(xml_path):
        ...
    print(parser.stats.to_dict())
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from utils.normalize import (
    ValidationError,
    normalize_identifier,
    parse_source_timestamp,
    to_str,
    turkish_lower,
)

logger = logging.getLogger(__name__)


FAILURE_ALARM_PERCENT = 5.0


# =============================================================================
# Record Types
# =============================================================================

@dataclass
class SourceAlias:
    """One <Alias> entry. Several <Name> children are allowed."""
    names: List[str]
    created_at: Optional[datetime]
    deleted_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None and len(self.names) > 0


@dataclass
class SourceDocument:
    """One <Document type="..."> with its aliases."""
    document_type: str
    aliases: List[SourceAlias] = field(default_factory=list)


@dataclass
class CanonicalRecord:
    """A registry entity exactly as one origin list publishes it."""
    identifier: str
    title: str
    account_type: Optional[str]
    subject_type: Optional[str]
    first_registered_at: datetime
    documents: List[SourceDocument] = field(default_factory=list)

    @property
    def title_lower(self) -> str:
        return turkish_lower(self.title)

    @property
    def document_types(self) -> List[str]:
        return [doc.document_type for doc in self.documents]


@dataclass
class ParseStats:
    """Counters for one parsed file."""
    file_name: str
    successes: int = 0
    failures: int = 0
    alarm_raised: bool = False

    @property
    def total(self) -> int:
        return self.successes + self.failures

    @property
    def failure_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return self.failures / self.total * 100

    def to_dict(self) -> dict:
        result = asdict(self)
        result['failure_percent'] = round(self.failure_percent, 2)
        return result


# =============================================================================
# Element helpers
# =============================================================================

def _local_name(tag: str) -> str:
    """Strip an '{namespace}' prefix if the file declares one."""
    return tag.rsplit('}', 1)[-1] if '}' in tag else tag


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in element:
        if _local_name(child.tag) == name:
            return to_str(child.text)
    return None


def parse_alias_element(element: ET.Element) -> SourceAlias:
    names = [to_str(n.text) for n in _children(element, 'Name')]
    return SourceAlias(
        names=[n for n in names if n],
        created_at=parse_source_timestamp(_child_text(element, 'CreationTime')),
        deleted_at=parse_source_timestamp(_child_text(element, 'DeletionTime')),
    )


def parse_user_element(element: ET.Element) -> CanonicalRecord:
    """
    Convert one <User> element into a CanonicalRecord.

    Raises:
        ValidationError: required field missing or malformed
    """
    identifier = normalize_identifier(_child_text(element, 'Identifier'))

    title = _child_text(element, 'Title')
    if title is None:
        raise ValidationError(f"User {identifier} has no Title", field='Title')

    first_registered_at = parse_source_timestamp(_child_text(element, 'FirstCreationTime'))
    if first_registered_at is None:
        raise ValidationError(f"User {identifier} has no FirstCreationTime", field='FirstCreationTime')

    documents = []
    for container in _children(element, 'Documents'):
        for doc in _children(container, 'Document'):
            document_type = to_str(doc.get('type'))
            if document_type is None:
                raise ValidationError(f"User {identifier} has a Document without type", field='type')
            documents.append(SourceDocument(
                document_type=document_type,
                aliases=[parse_alias_element(a) for a in _children(doc, 'Alias')],
            ))

    return CanonicalRecord(
        identifier=identifier,
        title=title,
        account_type=_child_text(element, 'AccountType'),
        subject_type=_child_text(element, 'Type'),
        first_registered_at=first_registered_at,
        documents=documents,
    )


# =============================================================================
# Parser
# =============================================================================

class GibXmlParser:
    """
    Lazy single-pass parser over a GIB user list XML file.

    stats holds the counters of the most recent parse_records() call and is
    final once the generator is exhausted.
    """

    def __init__(self, failure_alarm_percent: float = FAILURE_ALARM_PERCENT):
        self.failure_alarm_percent = failure_alarm_percent
        self.stats: Optional[ParseStats] = None

    def parse_records(self, xml_path) -> Iterator[CanonicalRecord]:
        """
        Yield records one by one.

        Raises:
            xml.etree.ElementTree.ParseError: the file itself is not well-formed
        """
        path = Path(xml_path)
        stats = ParseStats(file_name=path.name)
        self.stats = stats

        # Open elements; a finished <User> is removed from its parent
        stack: List[ET.Element] = []

        for event, element in ET.iterparse(str(path), events=('start', 'end')):
            if event == 'start':
                stack.append(element)
                continue

            stack.pop()
            if _local_name(element.tag) != 'User':
                continue

            record = None
            try:
                record = parse_user_element(element)
            except ValidationError as e:
                stats.failures += 1
                logger.warning(f"Failed to parse user at position {stats.total} from {path.name}: {e}")
            finally:
                if stack:
                    stack[-1].remove(element)
                element.clear()

            if record is not None:
                stats.successes += 1
                yield record

        self._finish(stats)

    def _finish(self, stats: ParseStats):
        if stats.failures > 0 and stats.failure_percent >= self.failure_alarm_percent:
            stats.alarm_raised = True
            logger.critical(
                f"XML parse failure rate {stats.failure_percent:.1f}% exceeds threshold "
                f"({self.failure_alarm_percent}%): {stats.failures}/{stats.total} entries failed "
                f"in {stats.file_name}. Data quality may be compromised."
            )

        logger.info(f"Parsed {stats.successes:,} users ({stats.failures} failures) from {stats.file_name}")
