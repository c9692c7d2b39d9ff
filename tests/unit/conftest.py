"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import io
import json
import os
import uuid
import zipfile
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

# Powertools reads these when health_ingest.app is imported during collection.
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "health-ingest-test")
os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")

from health_ingest.config import AppConfig  # noqa: E402
from health_ingest.store import HealthDataStore, metadata_obj  # noqa: E402

STEP_COUNT = "HKQuantityTypeIdentifierStepCount"
HEART_RATE = "HKQuantityTypeIdentifierHeartRate"


# ---------- Configuration ---------- #
@pytest.fixture
def app_config() -> AppConfig:
    """An AppConfig with the documented defaults, built without the environment."""
    return AppConfig(
        upload_bucket="health-uploads",
        database_url="sqlite://",
        environment="test",
        log_level="INFO",
        large_file_threshold_mb=100,
        signed_url_expiry_seconds=3600,
        http_timeout_seconds=60,
        target_payload_name="export.xml",
        batch_size=100,
        buffer_ceiling_mb=5,
        progress_interval=1000,
        aggregation_window_days=30,
        dispatch_mode="thread",
        worker_function_name=None,
        max_background_workers=2,
        audit_url="process-apple-health",
    )


@pytest.fixture
def make_config(app_config):
    """Returns a factory producing copies of `app_config` with overrides."""

    def _make(**overrides) -> AppConfig:
        return replace(app_config, **overrides)

    return _make


# ---------- Export builders ---------- #
def record_element(
    record_type: str = STEP_COUNT,
    value: str | None = "100",
    start_date: str | None = "2024-03-01 08:00:00 +0000",
    **extra: str,
) -> str:
    attrs = {"type": record_type, "value": value, "startDate": start_date}
    attrs.update(
        {
            "unit": "count",
            "endDate": "2024-03-01 08:10:00 +0000",
            "sourceName": "iPhone",
            "sourceVersion": "17.2",
        }
    )
    attrs.update(extra)
    rendered = " ".join(f'{name}="{val}"' for name, val in attrs.items() if val is not None)
    return f"<Record {rendered}/>"


def export_document(records: list[str]) -> str:
    body = "\n ".join(records)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE HealthData>\n"
        '<HealthData locale="en_GB">\n'
        ' <ExportDate value="2024-03-02 09:00:00 +0000"/>\n'
        f" {body}\n"
        "</HealthData>\n"
    )


def export_zip(xml: str, entry_name: str = "apple_health_export/export.xml") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(entry_name, xml)
        archive.writestr("apple_health_export/export_cda.xml", "<ClinicalDocument/>")
    return buffer.getvalue()


@pytest.fixture
def make_record():
    return record_element


@pytest.fixture
def make_export():
    """Returns a builder turning record elements into a zipped export."""

    def _make(records: list[str], entry_name: str = "apple_health_export/export.xml") -> bytes:
        return export_zip(export_document(records), entry_name)

    return _make


# ---------- Record store ---------- #
@pytest.fixture
def db_calls() -> dict:
    """Captures calls made to the stored routines registered on SQLite."""
    return {"aggregated": [], "metrics": [], "fail_days": set()}


@pytest.fixture
def sqlite_engine(db_calls):
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _register_routines(dbapi_connection, _connection_record):
        def aggregate_daily_health_data(user_id, day):
            if day in db_calls["fail_days"]:
                raise RuntimeError(f"aggregation failed for {day}")
            db_calls["aggregated"].append((user_id, day))
            return 1

        def create_or_get_metric(user_id, name, category, unit, source):
            db_calls["metrics"].append((user_id, name, category, unit, source))
            return "metric-" + source

        dbapi_connection.create_function(
            "aggregate_daily_health_data", 2, aggregate_daily_health_data
        )
        dbapi_connection.create_function("create_or_get_metric", 5, create_or_get_metric)

    metadata_obj.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(sqlite_engine) -> HealthDataStore:
    return HealthDataStore(sqlite_engine)


# ---------- Lambda / API Gateway ---------- #
@pytest.fixture
def lambda_context() -> MagicMock:
    context = MagicMock()
    context.function_name = "health-ingest-test"
    context.memory_limit_in_mb = 1024
    context.invoked_function_arn = "arn:aws:lambda:eu-west-1:000000000000:function:health-ingest-test"
    context.aws_request_id = "req-" + uuid.uuid4().hex
    context.get_remaining_time_in_millis.return_value = 300_000
    return context


@pytest.fixture
def api_event():
    """Returns a builder for REST API Gateway proxy events."""

    def _make(
        body: dict | str | None = None,
        method: str = "POST",
        path: str = "/process-apple-health",
        origin: str | None = "https://app.example.com",
    ) -> dict:
        headers = {"content-type": "application/json"}
        if origin:
            headers["origin"] = origin
        if isinstance(body, dict):
            body = json.dumps(body)
        return {
            "resource": path,
            "path": path,
            "httpMethod": method,
            "headers": headers,
            "multiValueHeaders": {key: [value] for key, value in headers.items()},
            "queryStringParameters": None,
            "multiValueQueryStringParameters": None,
            "pathParameters": None,
            "stageVariables": None,
            "requestContext": {
                "resourcePath": path,
                "httpMethod": method,
                "path": f"/prod{path}",
                "stage": "prod",
                "requestId": str(uuid.uuid4()),
                "identity": {"sourceIp": "127.0.0.1"},
            },
            "body": body,
            "isBase64Encoded": False,
        }

    return _make
