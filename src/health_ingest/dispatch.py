# src/health_ingest/dispatch.py

"""
Hands accepted ingestion jobs to a background executor.

The HTTP path must answer immediately, so the job body runs elsewhere:
either on a bounded thread pool inside the same process, or in a second,
asynchronous invocation of the same function that receives the job as its
event. Either way the submission is fire-and-forget from the caller's side
and every outcome is recorded in the audit trail by the job itself.
"""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Protocol

from .core import IngestionJob
from .schemas import job_payload

logger = logging.getLogger(__name__)


class JobDispatcher(Protocol):
    def dispatch(self, job: IngestionJob) -> None: ...


class ThreadDispatcher:
    """Runs jobs on a bounded in-process thread pool."""

    def __init__(self, runner: Callable[[IngestionJob], Any], max_workers: int = 4):
        self._runner = runner
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ingest"
        )

    def dispatch(self, job: IngestionJob) -> Future:
        future = self._executor.submit(self._runner, job)
        future.add_done_callback(lambda f: self._log_unhandled(job, f))
        logger.info(
            "Ingestion job queued on thread pool",
            extra={"request_id": job.request_id, "file_path": job.archive_path},
        )
        return future

    @staticmethod
    def _log_unhandled(job: IngestionJob, future: Future) -> None:
        # The runner reports its own failures; anything here escaped it.
        error = future.exception()
        if error is not None:
            logger.error(
                "Background ingestion job raised",
                exc_info=error,
                extra={"request_id": job.request_id},
            )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class LambdaDispatcher:
    """Runs each job in an asynchronous invocation of the worker function."""

    def __init__(self, lambda_client: Any, function_name: str):
        self._lambda = lambda_client
        self._function_name = function_name

    def dispatch(self, job: IngestionJob) -> None:
        payload = job_payload(job.owner_id, job.archive_path, job.request_id)
        response = self._lambda.invoke(
            FunctionName=self._function_name,
            InvocationType="Event",
            Payload=json.dumps(payload).encode("utf-8"),
        )
        logger.info(
            "Ingestion job handed to worker function",
            extra={
                "request_id": job.request_id,
                "function_name": self._function_name,
                "status_code": response.get("StatusCode"),
            },
        )
