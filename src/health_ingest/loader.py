# src/health_ingest/loader.py

"""
Persistence stages of the ingestion pipeline: batch writes of parsed records
and the trailing-window recomputation of daily aggregates.

Both stages degrade instead of failing. A rejected batch is retried row by
row so one bad row cannot sink its 99 neighbours, and a failed day is logged
and skipped so the remaining days are still aggregated.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Sequence

from .exceptions import AggregationError, RecordPersistenceError
from .schemas import PersistedHealthRecord
from .store import HealthDataStore

if TYPE_CHECKING:
    from .reporting import AuditReporter

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    inserted: int = 0
    failed: int = 0


@dataclass
class AggregationResult:
    days_aggregated: int = 0
    days_failed: int = 0


class BatchWriter:
    """Writes batches of validated rows, falling back to single-row inserts."""

    def __init__(self, store: HealthDataStore):
        self._store = store

    def write(self, rows: Sequence[PersistedHealthRecord]) -> BatchResult:
        if not rows:
            return BatchResult()

        try:
            inserted = self._store.insert_records(rows)
            return BatchResult(inserted=inserted)
        except RecordPersistenceError as e:
            logger.warning(
                "Batch insert rejected; retrying rows individually.",
                extra={"batch_size": len(rows), "error_code": e.error_code, "error": e.message},
            )

        result = BatchResult()
        for index, row in enumerate(rows):
            try:
                result.inserted += self._store.insert_records([row])
            except RecordPersistenceError as e:
                result.failed += 1
                logger.error(
                    "Dropping record rejected by the store.",
                    extra={
                        "row_index": index,
                        "record_type": row.get("record_type"),
                        "start_date": row.get("start_date"),
                        "error_code": e.error_code,
                    },
                )
        return result


class DailyAggregator:
    """Recomputes daily aggregates for the trailing window ending today."""

    def __init__(
        self,
        store: HealthDataStore,
        reporter: "AuditReporter",
        window_days: int = 30,
    ):
        self._store = store
        self._reporter = reporter
        self._window_days = window_days

    def days_in_window(self, today: date) -> list[date]:
        start = today - timedelta(days=self._window_days)
        return [start + timedelta(days=offset) for offset in range(self._window_days + 1)]

    def run(self, owner_id: str, request_id: str, today: date | None = None) -> AggregationResult:
        today = today or datetime.now(timezone.utc).date()
        result = AggregationResult()

        for day in self.days_in_window(today):
            try:
                self._store.aggregate_day(owner_id, day)
                result.days_aggregated += 1
            except AggregationError as e:
                result.days_failed += 1
                logger.warning(
                    "Daily aggregation failed; continuing with next day.",
                    extra={"day": day.isoformat(), "error_code": e.error_code, "error": e.message},
                )
                self._reporter.report(
                    owner_id,
                    "aggregation_failed",
                    f"Daily aggregation failed for {day.isoformat()}",
                    {"requestId": request_id, "date": day.isoformat(), "error": e.message},
                )

        logger.info(
            "Daily aggregation finished",
            extra={
                "days_aggregated": result.days_aggregated,
                "days_failed": result.days_failed,
            },
        )
        return result
