# tests/unit/test_app.py

import json
from functools import partial
from unittest.mock import MagicMock, patch

import pytest

from health_ingest import app as app_module
from health_ingest.core import IngestionJob, JobOutcome, JobState

# The unwrapped builder, captured before any test patches get_service.
_build_service = app_module.get_service.__wrapped__


@pytest.fixture
def service(app_config) -> app_module.Service:
    return app_module.Service(config=app_config, pipeline=MagicMock(), dispatcher=MagicMock())


@pytest.fixture(autouse=True)
def patched_service(service):
    with patch.object(app_module, "get_service", return_value=service) as mock_get_service:
        yield mock_get_service


def _header(response: dict, name: str) -> str | None:
    headers = response.get("multiValueHeaders") or response.get("headers") or {}
    value = headers.get(name)
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _body(response: dict) -> dict:
    return json.loads(response["body"])


def _emitted_metrics(capsys) -> dict[str, float]:
    """Collects metric name -> value from the EMF blobs printed to stdout."""
    emitted = {}
    for line in capsys.readouterr().out.splitlines():
        if not line.startswith("{"):
            continue
        blob = json.loads(line)
        if "_aws" not in blob:
            continue
        for directive in blob["_aws"]["CloudWatchMetrics"]:
            for metric in directive["Metrics"]:
                value = blob[metric["Name"]]
                emitted[metric["Name"]] = value[0] if isinstance(value, list) else value
    return emitted


# --- HTTP trigger ---


def test_preflight_returns_cors_headers(api_event, lambda_context, service):
    response = app_module.handler(api_event(method="OPTIONS"), lambda_context)

    assert response["statusCode"] == 204
    assert _header(response, "Access-Control-Allow-Origin") == "*"
    assert "POST" in _header(response, "Access-Control-Allow-Methods")
    assert "content-type" in _header(response, "Access-Control-Allow-Headers")
    service.dispatcher.dispatch.assert_not_called()


def test_valid_request_is_acknowledged_and_dispatched(api_event, lambda_context, service):
    event = api_event({"userId": "u1", "filePath": "u1/export.zip"})

    response = app_module.handler(event, lambda_context)

    assert response["statusCode"] == 200
    assert _header(response, "Content-Type") == "application/json"
    assert _header(response, "Access-Control-Allow-Origin") == "*"
    body = _body(response)
    assert body["success"] is True
    results = body["results"]
    assert results["status"] == "processing_started"
    assert results["filePath"] == "u1/export.zip"
    assert results["message"]

    service.dispatcher.dispatch.assert_called_once()
    job = service.dispatcher.dispatch.call_args.args[0]
    assert isinstance(job, IngestionJob)
    assert job.owner_id == "u1"
    assert job.archive_path == "u1/export.zip"
    assert job.request_id == results["requestId"]


def test_request_path_is_normalized(api_event, lambda_context, service):
    event = api_event({"userId": "u1", "filePath": "/u1/./export.zip"})

    response = app_module.handler(event, lambda_context)

    assert _body(response)["results"]["filePath"] == "u1/export.zip"


@pytest.mark.parametrize(
    "body",
    [
        {"filePath": "u1/export.zip"},
        {"userId": "u1"},
        {"userId": "", "filePath": "u1/export.zip"},
        {"userId": "u1", "filePath": ""},
        {},
        None,
        "{not json",
        '["u1", "u1/export.zip"]',
    ],
)
def test_invalid_request_is_rejected_without_side_effects(
    api_event, lambda_context, service, patched_service, body
):
    response = app_module.handler(api_event(body), lambda_context)

    assert response["statusCode"] == 400
    assert "error" in _body(response)
    service.dispatcher.dispatch.assert_not_called()
    patched_service.assert_not_called()


def test_unsafe_path_is_rejected(api_event, lambda_context, service):
    event = api_event({"userId": "u1", "filePath": "../u2/export.zip"})

    response = app_module.handler(event, lambda_context)

    assert response["statusCode"] == 400
    assert "traversal" in _body(response)["error"]
    service.dispatcher.dispatch.assert_not_called()


def test_dispatch_failure_returns_500(api_event, lambda_context, service):
    service.dispatcher.dispatch.side_effect = RuntimeError("dispatch failed")
    event = api_event({"userId": "u1", "filePath": "u1/export.zip"})

    response = app_module.handler(event, lambda_context)

    assert response["statusCode"] == 500
    assert _body(response) == {"error": "dispatch failed"}


# --- Worker invocation ---


def test_worker_event_runs_pipeline(lambda_context, service):
    def _run(job: IngestionJob) -> JobOutcome:
        job.state = JobState.COMPLETED
        return JobOutcome(job=job, records_processed=3, records_persisted=3)

    service.pipeline.run.side_effect = _run
    event = {"ingestion_job": {"userId": "u1", "filePath": "u1/export.zip", "requestId": "req-7"}}

    result = app_module.handler(event, lambda_context)

    assert result == {
        "requestId": "req-7",
        "status": "completed",
        "recordsProcessed": 3,
        "recordsPersisted": 3,
    }
    job = service.pipeline.run.call_args.args[0]
    assert (job.owner_id, job.archive_path, job.request_id) == ("u1", "u1/export.zip", "req-7")
    service.dispatcher.dispatch.assert_not_called()


def test_worker_reports_failed_job(lambda_context, service, capsys):
    def _run(job: IngestionJob) -> JobOutcome:
        job.state = JobState.FAILED
        return JobOutcome(job=job, error="Archive not found", failed_stage=JobState.RECEIVED)

    service.pipeline.run.side_effect = _run
    event = {"ingestion_job": {"userId": "u1", "filePath": "u1/export.zip", "requestId": "req-8"}}

    result = app_module.handler(event, lambda_context)

    assert result["status"] == "failed"
    assert result["recordsPersisted"] == 0
    emitted = _emitted_metrics(capsys)
    assert emitted["IngestionJobsFailed"] == 1
    assert emitted["HealthRecordsImported"] == 0


def test_thread_dispatched_job_emits_outcome_metrics(capsys):
    pipeline = MagicMock()

    def _run(job: IngestionJob) -> JobOutcome:
        job.state = JobState.COMPLETED
        return JobOutcome(job=job, records_processed=3, records_persisted=3)

    pipeline.run.side_effect = _run
    dispatcher = app_module.ThreadDispatcher(partial(app_module.run_job, pipeline), max_workers=1)
    job = IngestionJob(owner_id="u1", archive_path="u1/export.zip", request_id="req-10")

    try:
        outcome = dispatcher.dispatch(job).result(timeout=10)
    finally:
        dispatcher.shutdown()

    assert outcome.records_persisted == 3
    emitted = _emitted_metrics(capsys)
    assert emitted["HealthRecordsImported"] == 3
    assert "IngestionJobsFailed" not in emitted


# --- Service wiring ---


def test_get_service_builds_lambda_dispatcher(make_config):
    config = make_config(dispatch_mode="lambda", worker_function_name="worker-fn")

    with patch.object(app_module, "get_config", return_value=config), patch.object(
        app_module, "boto3"
    ) as mock_boto3, patch.object(app_module, "create_store") as mock_create_store:
        built = _build_service()

    assert isinstance(built.dispatcher, app_module.LambdaDispatcher)
    mock_create_store.assert_called_once_with(config.database_url)
    assert [c.args[0] for c in mock_boto3.client.call_args_list] == ["s3", "lambda"]


def test_get_service_builds_thread_dispatcher(make_config):
    config = make_config(dispatch_mode="thread")

    with patch.object(app_module, "get_config", return_value=config), patch.object(
        app_module, "boto3"
    ), patch.object(app_module, "create_store"):
        built = _build_service()

    try:
        assert isinstance(built.dispatcher, app_module.ThreadDispatcher)
        runner = built.dispatcher._runner
        assert runner.func is app_module.run_job
        assert runner.args == (built.pipeline,)
    finally:
        built.dispatcher.shutdown()
