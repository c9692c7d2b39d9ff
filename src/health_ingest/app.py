"""
The Lambda Adapter for the Health Ingest service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing AWS Lambda Powertools (Logger, Tracer, Metrics) and the
    REST event resolver with permissive CORS.
2.  Validating the `POST /process-apple-health` request and acknowledging it
    immediately with a request id.
3.  Handing the accepted job to the configured background dispatcher.
4.  Running a dispatched job when the function is invoked as a worker with an
    `ingestion_job` event.
"""

import json
from dataclasses import dataclass
from functools import lru_cache, partial
from typing import Any

import boto3
import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.event_handler import (
    APIGatewayRestResolver,
    CORSConfig,
    Response,
    content_types,
)
from aws_lambda_powertools.metrics import MetricUnit, single_metric
from aws_lambda_powertools.utilities.typing import LambdaContext

from .archive import ArchiveReader
from .clients import StorageClient
from .config import AppConfig, get_config
from .core import IngestionJob, IngestionPipeline, JobOutcome
from .dispatch import JobDispatcher, LambdaDispatcher, ThreadDispatcher
from .exceptions import InputValidationError, ValidationError
from .reporting import AuditReporter
from .schemas import IngestionRequest
from .security import sanitize_storage_path
from .store import create_store

# --- Global & Reusable Components ---
# Service name and log level come from POWERTOOLS_* variables so that nothing
# here reads application configuration at import time.
METRICS_NAMESPACE = "HealthIngest"

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace=METRICS_NAMESPACE)

cors_config = CORSConfig(
    allow_origin="*",
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    max_age=300,
)
app = APIGatewayRestResolver(cors=cors_config)

ROUTE = "/process-apple-health"


@dataclass
class Service:
    """Long-lived collaborators shared by every invocation of a warm container."""

    config: AppConfig
    pipeline: IngestionPipeline
    dispatcher: JobDispatcher


@lru_cache(maxsize=1)
def get_service() -> Service:
    """Builds the service graph once per container, on first use."""
    config = get_config()
    logger.setLevel(config.log_level)

    storage = StorageClient(s3_client=boto3.client("s3"), bucket=config.upload_bucket)
    store = create_store(config.database_url)
    reporter = AuditReporter(store, config.audit_url)
    reader = ArchiveReader(storage, config)
    pipeline = IngestionPipeline(storage, reader, store, reporter, config)

    dispatcher: JobDispatcher
    if config.dispatch_mode == "lambda":
        dispatcher = LambdaDispatcher(boto3.client("lambda"), config.worker_function_name)
    else:
        dispatcher = ThreadDispatcher(partial(run_job, pipeline), config.max_background_workers)

    logger.info(
        "Service initialised",
        extra={"dispatch_mode": config.dispatch_mode, "environment": config.environment},
    )
    return Service(config=config, pipeline=pipeline, dispatcher=dispatcher)


def _json_response(status_code: int, body: dict[str, Any]) -> Response:
    return Response(
        status_code=status_code,
        content_type=content_types.APPLICATION_JSON,
        body=json.dumps(body),
    )


def parse_request(raw_body: str | None) -> IngestionRequest:
    """Parses the trigger body. Raises InputValidationError when it is unusable."""
    try:
        body = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError as e:
        raise InputValidationError("Request body must be valid JSON") from e

    try:
        return IngestionRequest.model_validate(body)
    except pydantic.ValidationError as e:
        raise InputValidationError(
            "Missing userId or filePath",
            context={"fields": [".".join(map(str, err["loc"])) for err in e.errors()]},
        ) from e


def _reject(message: str) -> Response:
    metrics.add_metric(name="InvalidIngestionRequests", unit=MetricUnit.Count, value=1)
    logger.warning("Rejected ingestion request", extra={"reason": message})
    return _json_response(400, {"error": message})


@app.post(ROUTE)
@tracer.capture_method
def process_apple_health() -> Response:
    try:
        request = parse_request(app.current_event.decoded_body)
        file_path = sanitize_storage_path(request.file_path)
    except ValidationError as e:
        return _reject(e.message)

    service = get_service()
    job = IngestionJob(owner_id=request.user_id, archive_path=file_path)
    service.dispatcher.dispatch(job)

    metrics.add_metric(name="IngestionJobsAccepted", unit=MetricUnit.Count, value=1)
    logger.info(
        "Ingestion job accepted",
        extra={"request_id": job.request_id, "file_path": file_path},
    )
    return _json_response(
        200,
        {
            "success": True,
            "results": {
                "status": "processing_started",
                "message": "Apple Health file processing started in background",
                "requestId": job.request_id,
                "filePath": file_path,
            },
        },
    )


@app.exception_handler(Exception)
def handle_unexpected_error(ex: Exception) -> Response:
    logger.exception("Unhandled error while accepting ingestion request")
    return _json_response(500, {"error": str(ex)})


def run_job(pipeline: IngestionPipeline, job: IngestionJob) -> JobOutcome:
    """
    Runs one job and emits its outcome metrics the moment it finishes.

    A thread-dispatched job finishes after the handler's `log_metrics` flush,
    so each metric is written as its own EMF blob.
    """
    outcome = pipeline.run(job)
    strategy = job.strategy.value if job.strategy else "unknown"

    with single_metric(
        name="HealthRecordsImported",
        unit=MetricUnit.Count,
        value=outcome.records_persisted,
        namespace=METRICS_NAMESPACE,
    ) as metric:
        metric.add_dimension(name="strategy", value=strategy)
    if not outcome.succeeded:
        with single_metric(
            name="IngestionJobsFailed",
            unit=MetricUnit.Count,
            value=1,
            namespace=METRICS_NAMESPACE,
        ) as metric:
            stage = outcome.failed_stage.value if outcome.failed_stage else "unknown"
            metric.add_dimension(name="stage", value=stage)
    return outcome


def _run_worker(job_event: dict[str, Any]) -> dict[str, Any]:
    """Runs one dispatched job to completion inside this invocation."""
    job = IngestionJob(
        owner_id=job_event["userId"],
        archive_path=job_event["filePath"],
        request_id=job_event["requestId"],
    )
    outcome = run_job(get_service().pipeline, job)

    return {
        "requestId": job.request_id,
        "status": job.state.value,
        "recordsProcessed": outcome.records_processed,
        "recordsPersisted": outcome.records_persisted,
    }


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict:
    """Main Lambda handler for API Gateway requests and worker invocations."""
    if "ingestion_job" in event:
        logger.info("Worker invocation received.", extra={"ingestion_job": event["ingestion_job"]})
        return _run_worker(event["ingestion_job"])
    return app.resolve(event, context)
