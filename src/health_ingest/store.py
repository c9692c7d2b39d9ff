# src/health_ingest/store.py

"""
Relational record store used by the ingestion pipeline.

Only the slice of the application schema the pipeline touches is declared
here, with SQLAlchemy Core tables: raw health records, per-job import metric
rows and the append-only audit log. Two stored routines are called by name:
`aggregate_daily_health_data(user_id, date)` and
`create_or_get_metric(user_id, name, category, unit, source)`.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Sequence

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .exceptions import AggregationError, RecordPersistenceError
from .schemas import AuditLogEntry, PersistedHealthRecord

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata_obj = MetaData()

health_records = Table(
    "health_records",
    metadata_obj,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("user_id", String(64), nullable=False, index=True),
    Column("record_type", String(128), nullable=False),
    Column("value", Float, nullable=False),
    Column("unit", String(64)),
    Column("start_date", String(64), nullable=False),
    Column("end_date", String(64)),
    Column("source_name", Text),
    Column("source_version", Text),
    Column("device", Text),
    Column("external_id", String(255)),
    Column("metadata", JSON),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
)

metric_values = Table(
    "metric_values",
    metadata_obj,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("metric_id", String(36), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("value", Float, nullable=False),
    Column("measurement_date", String(10), nullable=False),
    Column("external_id", String(255), unique=True),
    Column("notes", Text),
    Column("source_data", JSON),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
)

error_logs = Table(
    "error_logs",
    metadata_obj,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("user_id", String(64)),
    Column("error_type", String(64), nullable=False),
    Column("error_message", Text, nullable=False),
    Column("error_details", Text),
    Column("source", String(64), nullable=False),
    Column("url", Text),
    Column("created_at", DateTime(timezone=True), default=_utcnow),
)


class HealthDataStore:
    """Thin wrapper over a SQLAlchemy engine for the pipeline's writes."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def insert_records(self, rows: Sequence[PersistedHealthRecord]) -> int:
        """
        Inserts *rows* in one transaction. Either every row is written or
        none is; a rejection raises RecordPersistenceError.
        """
        if not rows:
            return 0
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(health_records), [dict(row) for row in rows])
        except SQLAlchemyError as e:
            raise RecordPersistenceError(
                "health_records", len(rows), context={"db_error": str(e.__cause__ or e)}
            ) from e
        return len(rows)

    def aggregate_day(self, user_id: str, day: date) -> None:
        """Recomputes the daily aggregate row for (*user_id*, *day*)."""
        try:
            with self._engine.begin() as conn:
                conn.execute(select(func.aggregate_daily_health_data(user_id, day.isoformat())))
        except SQLAlchemyError as e:
            raise AggregationError(
                day.isoformat(), context={"user_id": user_id, "db_error": str(e.__cause__ or e)}
            ) from e

    def create_or_get_metric(
        self, user_id: str, name: str, category: str, unit: str, source: str
    ) -> str:
        try:
            with self._engine.begin() as conn:
                metric_id = conn.execute(
                    select(func.create_or_get_metric(user_id, name, category, unit, source))
                ).scalar_one()
        except SQLAlchemyError as e:
            raise RecordPersistenceError(
                "metrics", 1, context={"metric_name": name, "db_error": str(e.__cause__ or e)}
            ) from e
        return str(metric_id)

    def record_import_metric(
        self,
        metric_id: str,
        user_id: str,
        value: float,
        external_id: str,
        source_data: dict[str, Any],
    ) -> bool:
        """
        Writes one metric value keyed by *external_id*. Returns False without
        writing when a row with that external id already exists.
        """
        try:
            with self._engine.begin() as conn:
                existing = conn.execute(
                    select(metric_values.c.id).where(metric_values.c.external_id == external_id)
                ).first()
                if existing is not None:
                    logger.info(
                        "Import metric already recorded",
                        extra={"external_id": external_id},
                    )
                    return False
                conn.execute(
                    insert(metric_values).values(
                        metric_id=metric_id,
                        user_id=user_id,
                        value=value,
                        measurement_date=_utcnow().date().isoformat(),
                        external_id=external_id,
                        notes="Apple Health import",
                        source_data=source_data,
                    )
                )
        except SQLAlchemyError as e:
            raise RecordPersistenceError(
                "metric_values", 1, context={"db_error": str(e.__cause__ or e)}
            ) from e
        return True

    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._engine.begin() as conn:
            conn.execute(insert(error_logs).values(**entry))


def create_store(database_url: str) -> HealthDataStore:
    """Builds a store with a pooled engine for *database_url*."""
    engine = create_engine(database_url, pool_pre_ping=True)
    return HealthDataStore(engine)
