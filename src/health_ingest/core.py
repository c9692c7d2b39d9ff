# src/health_ingest/core.py

"""
Core business logic for ingesting one Apple Health export.

The main entry point, `IngestionPipeline.run`, drives a single job through
its stages strictly in order: locate and fetch the archive, stream records
out of `export.xml` into batched inserts, recompute the trailing window of
daily aggregates, record the import metric, and finally remove the source
archive. Every checkpoint is written to the audit trail.

A job never raises. Whatever happens inside, the archive deletion is
attempted and a terminal `processing_complete` or `processing_failed` entry
is written; the HTTP caller that submitted the job has long since received
its acknowledgement.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .archive import ArchiveReader, ArchiveStrategy
from .clients import StorageClient
from .config import AppConfig
from .exceptions import (
    HealthIngestError,
    RecordPersistenceError,
    get_error_context,
    is_retryable_error,
)
from .loader import AggregationResult, BatchWriter, DailyAggregator
from .parser import StreamingRecordParser
from .reporting import AuditReporter
from .schemas import IMPORT_SOURCE
from .store import HealthDataStore

logger = logging.getLogger(__name__)

IMPORT_METRIC_NAME = "Apple Health Import"
IMPORT_METRIC_CATEGORY = "import"
IMPORT_METRIC_UNIT = "records"


class JobState(str, Enum):
    RECEIVED = "received"
    STRATEGY_SELECTED = "strategy_selected"
    PARSING = "parsing"
    AGGREGATING = "aggregating"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IngestionJob:
    """One processing attempt for one uploaded archive."""

    owner_id: str
    archive_path: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    strategy: ArchiveStrategy | None = None
    state: JobState = JobState.RECEIVED

    def advance(self, state: JobState) -> None:
        logger.debug(
            "Job state change",
            extra={"request_id": self.request_id, "from": self.state.value, "to": state.value},
        )
        self.state = state


@dataclass
class JobOutcome:
    job: IngestionJob
    records_seen: int = 0
    records_processed: int = 0
    records_persisted: int = 0
    records_failed: int = 0
    records_dropped: int = 0
    records_oversized: int = 0
    earliest_start_date: str | None = None
    latest_start_date: str | None = None
    aggregation: AggregationResult | None = None
    metric_recorded: bool = False
    archive_removed: bool = False
    error: str | None = None
    failed_stage: JobState | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class IngestionPipeline:
    def __init__(
        self,
        storage: StorageClient,
        reader: ArchiveReader,
        store: HealthDataStore,
        reporter: AuditReporter,
        config: AppConfig,
    ):
        self._storage = storage
        self._reader = reader
        self._store = store
        self._reporter = reporter
        self._config = config
        self._writer = BatchWriter(store)
        self._aggregator = DailyAggregator(store, reporter, config.aggregation_window_days)

    def run(self, job: IngestionJob) -> JobOutcome:
        outcome = JobOutcome(job=job)
        self._reporter.report(
            job.owner_id,
            "processing_started",
            "Apple Health processing started",
            {"requestId": job.request_id, "filePath": job.archive_path},
        )

        try:
            self._ingest(job, outcome)
        except Exception as e:
            if isinstance(e, HealthIngestError) and e.correlation_id is None:
                e.correlation_id = job.request_id
            outcome.error = str(e)
            outcome.failed_stage = job.state
            logger.exception(
                "Ingestion job failed",
                extra={"request_id": job.request_id, "stage": job.state.value},
            )
            failure_details = {
                "requestId": job.request_id,
                "filePath": job.archive_path,
                "stage": job.state.value,
                "error": str(e),
                "errorType": type(e).__name__,
                "retryable": is_retryable_error(e),
                "errorContext": get_error_context(e),
            }
            if isinstance(e, HealthIngestError):
                failure_details["errorCode"] = e.error_code

        job.advance(JobState.CLEANUP)
        self._cleanup(job, outcome)

        if outcome.succeeded:
            job.advance(JobState.COMPLETED)
            self._reporter.report(
                job.owner_id,
                "processing_complete",
                f"Apple Health processing completed: {outcome.records_processed} records",
                {
                    "requestId": job.request_id,
                    "recordsProcessed": outcome.records_processed,
                    "recordsPersisted": outcome.records_persisted,
                    "recordsFailed": outcome.records_failed,
                    "recordsDropped": outcome.records_dropped,
                    "dateRange": {
                        "start": outcome.earliest_start_date,
                        "end": outcome.latest_start_date,
                    },
                    "daysAggregated": outcome.aggregation.days_aggregated if outcome.aggregation else 0,
                    "durationSeconds": self._elapsed(job),
                },
            )
        else:
            job.advance(JobState.FAILED)
            self._reporter.report(
                job.owner_id,
                "processing_failed",
                f"Apple Health processing failed: {outcome.error}",
                failure_details,
            )
        return outcome

    def _ingest(self, job: IngestionJob, outcome: JobOutcome) -> None:
        size_bytes = self._reader.locate(job.archive_path)
        job.strategy = self._reader.choose_strategy(size_bytes)
        job.advance(JobState.STRATEGY_SELECTED)
        self._reporter.report(
            job.owner_id,
            "file_found",
            "Archive found",
            {
                "requestId": job.request_id,
                "filePath": job.archive_path,
                "fileSizeMB": round(size_bytes / (1024 * 1024), 2),
                "strategy": job.strategy.value,
            },
        )

        archive = self._reader.fetch(job.archive_path, job.strategy)

        job.advance(JobState.PARSING)
        parser = StreamingRecordParser(
            owner_id=job.owner_id,
            request_id=job.request_id,
            batch_size=self._config.batch_size,
            buffer_ceiling=self._config.buffer_ceiling_chars,
            progress_interval=self._config.progress_interval,
            on_progress=lambda count: self._report_progress(job, count),
        )
        for batch in parser.iter_batches(self._reader.iter_payload_text(archive)):
            result = self._writer.write(batch)
            outcome.records_persisted += result.inserted
            outcome.records_failed += result.failed

        stats = parser.stats
        outcome.records_seen = stats.records_seen
        outcome.records_processed = stats.records_processed
        outcome.records_dropped = stats.records_dropped
        outcome.records_oversized = stats.records_oversized
        outcome.earliest_start_date = stats.earliest_start_date
        outcome.latest_start_date = stats.latest_start_date

        job.advance(JobState.AGGREGATING)
        outcome.aggregation = self._aggregator.run(job.owner_id, job.request_id)

        outcome.metric_recorded = self._record_import_metric(job, outcome)

    def _report_progress(self, job: IngestionJob, count: int) -> None:
        self._reporter.report(
            job.owner_id,
            "progress",
            f"Processed {count} records",
            {"requestId": job.request_id, "recordsProcessed": count},
        )

    def _record_import_metric(self, job: IngestionJob, outcome: JobOutcome) -> bool:
        try:
            metric_id = self._store.create_or_get_metric(
                job.owner_id,
                IMPORT_METRIC_NAME,
                IMPORT_METRIC_CATEGORY,
                IMPORT_METRIC_UNIT,
                IMPORT_SOURCE,
            )
            return self._store.record_import_metric(
                metric_id=metric_id,
                user_id=job.owner_id,
                value=outcome.records_processed,
                external_id=f"{IMPORT_SOURCE}_import_{job.request_id}",
                source_data={
                    "request_id": job.request_id,
                    "file_path": job.archive_path,
                    "strategy": job.strategy.value if job.strategy else None,
                    "records_seen": outcome.records_seen,
                    "records_processed": outcome.records_processed,
                    "records_persisted": outcome.records_persisted,
                    "records_failed": outcome.records_failed,
                    "records_dropped": outcome.records_dropped,
                    "records_oversized": outcome.records_oversized,
                    "date_range": {
                        "start": outcome.earliest_start_date,
                        "end": outcome.latest_start_date,
                    },
                },
            )
        except RecordPersistenceError as e:
            logger.warning(
                "Import metric could not be recorded",
                extra={"request_id": job.request_id, "error_code": e.error_code, "error": e.message},
            )
            return False

    def _cleanup(self, job: IngestionJob, outcome: JobOutcome) -> None:
        try:
            self._storage.remove(job.archive_path)
            outcome.archive_removed = True
        except Exception as e:
            logger.warning(
                "Archive removal failed",
                exc_info=True,
                extra={"request_id": job.request_id, "key": job.archive_path},
            )
            self._reporter.report(
                job.owner_id,
                "cleanup_failed",
                "Failed to remove source archive",
                {"requestId": job.request_id, "filePath": job.archive_path, "error": str(e)},
            )

    @staticmethod
    def _elapsed(job: IngestionJob) -> float:
        return round((datetime.now(timezone.utc) - job.started_at).total_seconds(), 3)
