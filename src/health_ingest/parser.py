# src/health_ingest/parser.py

"""
Streaming extraction of `<Record .../>` elements from an Apple Health export.

The export is far too large to build a DOM for, so the text is scanned
incrementally: a sliding buffer is searched for the `<Record ` opening marker
and the next `/>` closing marker, each complete span is turned into a
validated candidate, and valid candidates are grouped into fixed-size
batches. The buffer only ever holds the unconsumed tail, which is capped so
that a malformed export cannot grow memory without bound.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator

import pydantic

from .schemas import HealthRecordCandidate, PersistedHealthRecord

logger = logging.getLogger(__name__)

RECORD_OPEN = "<Record "
RECORD_CLOSE = "/>"

DEFAULT_BATCH_SIZE = 100
DEFAULT_BUFFER_CEILING = 5 * 1024 * 1024
DEFAULT_PROGRESS_INTERVAL = 1000
EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"
_FEED_SLICE_CHARS = 1024 * 1024

RECORD_ATTRIBUTES = (
    "type",
    "value",
    "unit",
    "startDate",
    "endDate",
    "sourceName",
    "sourceVersion",
    "device",
)

# One pattern per attribute so that a missing attribute never hides another.
_ATTRIBUTE_PATTERNS: dict[str, re.Pattern[str]] = {
    name: re.compile(rf"""\s{name}\s*=\s*(["'])(.*?)\1""", re.DOTALL)
    for name in RECORD_ATTRIBUTES
}


def extract_attributes(span: str) -> dict[str, str]:
    """
    Pulls the known attributes out of a record span.

    Only the record's own start tag is searched, so attributes of nested
    elements such as `<MetadataEntry value="..."/>` are never picked up.
    """
    tag_end = span.find(">")
    start_tag = span if tag_end == -1 else span[: tag_end + 1]

    attributes: dict[str, str] = {}
    for name, pattern in _ATTRIBUTE_PATTERNS.items():
        match = pattern.search(start_tag)
        if match is not None:
            attributes[name] = html.unescape(match.group(2))
    return attributes


def build_candidate(attributes: dict[str, str]) -> HealthRecordCandidate | None:
    """Returns a validated candidate, or None if the record must be dropped."""
    try:
        return HealthRecordCandidate.model_validate(attributes)
    except pydantic.ValidationError:
        return None


class RecordScanner:
    """
    Incremental scanner over XML text fed in arbitrary chunks.

    A record is only emitted once both its opening and closing markers are in
    the buffer, so a record split across chunks is always returned whole.
    """

    def __init__(self, buffer_ceiling: int = DEFAULT_BUFFER_CEILING):
        if buffer_ceiling < len(RECORD_OPEN):
            raise ValueError("buffer_ceiling is smaller than a record marker")
        self._buffer_ceiling = buffer_ceiling
        self._buffer = ""
        self.oversized = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, text: str) -> list[str]:
        buffer = self._buffer + text
        spans: list[str] = []
        pos = 0
        pending = -1

        while True:
            start = buffer.find(RECORD_OPEN, pos)
            if start == -1:
                break
            end = buffer.find(RECORD_CLOSE, start + len(RECORD_OPEN))
            if end == -1:
                pending = start
                break
            end += len(RECORD_CLOSE)
            spans.append(buffer[start:end])
            pos = end

        self._buffer = self._retain(buffer, pos, pending)
        return spans

    def _retain(self, buffer: str, pos: int, pending: int) -> str:
        if pending != -1:
            retained = buffer[pending:]
            if len(retained) <= self._buffer_ceiling:
                return retained
            # A single unterminated record larger than the ceiling.
            self.oversized += 1
            logger.warning(
                "Discarding oversized record fragment",
                extra={"fragment_chars": len(retained), "buffer_ceiling": self._buffer_ceiling},
            )
            return ""
        # Nothing pending: keep only what could be the start of a split marker.
        tail = buffer[pos:]
        return tail[-(len(RECORD_OPEN) - 1):]


@dataclass
class ParseStats:
    records_seen: int = 0
    records_processed: int = 0
    records_dropped: int = 0
    records_oversized: int = 0
    earliest_start_date: str | None = None
    latest_start_date: str | None = None
    _earliest: datetime | None = field(default=None, repr=False, compare=False)
    _latest: datetime | None = field(default=None, repr=False, compare=False)

    def observe_start_date(self, value: str) -> None:
        """Widens the imported date range. Unparseable dates are left out of it."""
        try:
            moment = datetime.strptime(value, EXPORT_DATE_FORMAT)
        except ValueError:
            return
        if self._earliest is None or moment < self._earliest:
            self._earliest = moment
            self.earliest_start_date = value
        if self._latest is None or moment > self._latest:
            self._latest = moment
            self.latest_start_date = value


def _slices(source: str | Iterable[str], size: int) -> Iterator[str]:
    chunks = (source,) if isinstance(source, str) else source
    for chunk in chunks:
        for offset in range(0, len(chunk), size):
            yield chunk[offset : offset + size]


class StreamingRecordParser:
    """
    Turns export text into batches of rows ready for the record store.

    Args:
        owner_id: The user the records belong to.
        request_id: Correlation id stamped into every row's metadata.
        batch_size: Maximum rows per yielded batch.
        buffer_ceiling: Maximum characters retained between chunks.
        progress_interval: Valid records between progress callbacks.
        on_progress: Called with the running count of valid records.
    """

    def __init__(
        self,
        owner_id: str,
        request_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        buffer_ceiling: int = DEFAULT_BUFFER_CEILING,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        on_progress: Callable[[int], None] | None = None,
    ):
        self._owner_id = owner_id
        self._request_id = request_id
        self._batch_size = batch_size
        self._buffer_ceiling = buffer_ceiling
        self._progress_interval = progress_interval
        self._on_progress = on_progress
        self.stats = ParseStats()

    def iter_batches(self, source: str | Iterable[str]) -> Iterator[list[PersistedHealthRecord]]:
        scanner = RecordScanner(self._buffer_ceiling)
        stats = self.stats
        batch: list[PersistedHealthRecord] = []

        for chunk in _slices(source, _FEED_SLICE_CHARS):
            for span in scanner.feed(chunk):
                stats.records_seen += 1
                candidate = build_candidate(extract_attributes(span))
                if candidate is None:
                    stats.records_dropped += 1
                    continue

                batch.append(candidate.to_row(self._owner_id, self._request_id))
                stats.records_processed += 1
                stats.observe_start_date(candidate.start_date)
                if self._on_progress and stats.records_processed % self._progress_interval == 0:
                    self._on_progress(stats.records_processed)

                if len(batch) >= self._batch_size:
                    yield batch
                    batch = []
            stats.records_oversized = scanner.oversized

        if batch:
            yield batch

        logger.info(
            "Finished scanning export",
            extra={
                "records_seen": stats.records_seen,
                "records_processed": stats.records_processed,
                "records_dropped": stats.records_dropped,
                "records_oversized": stats.records_oversized,
                "earliest_start_date": stats.earliest_start_date,
                "latest_start_date": stats.latest_start_date,
            },
        )
