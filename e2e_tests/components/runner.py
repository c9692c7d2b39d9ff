# e2e_tests/components/runner.py
import json
import time
import uuid
from typing import Any, Optional, TypedDict

import boto3
from botocore.client import Config as BotocoreConfig
from botocore.exceptions import ClientError
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .config import Config
from .data_generator import ExportGenerator


class CheckResult(TypedDict):
    check: str
    status: str  # 'PASS' or 'FAIL'
    details: str


ROUTE = "/process-apple-health"


class E2ETestRunner:
    """Uploads a synthetic export, triggers ingestion and waits for it to finish."""

    def __init__(self, config: Config):
        self.config = config
        self.lambda_client = boto3.client(
            "lambda",
            config=BotocoreConfig(read_timeout=60, connect_timeout=10, retries={"max_attempts": 2}),
        )
        self.s3 = boto3.client("s3")
        self.console = Console()
        self.run_id = f"e2e-test-{uuid.uuid4().hex[:8]}"
        self.archive_key = f"{self.config.user_id}/{self.run_id}.zip"
        self.results: list[CheckResult] = []

    def _check(self, name: str, passed: bool, details: str) -> bool:
        self.results.append({"check": name, "status": "PASS" if passed else "FAIL", "details": details})
        return passed

    def _api_event(self, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"content-type": "application/json", "origin": "https://e2e.local"}
        return {
            "resource": ROUTE,
            "path": ROUTE,
            "httpMethod": "POST",
            "headers": headers,
            "multiValueHeaders": {key: [value] for key, value in headers.items()},
            "requestContext": {"resourcePath": ROUTE, "httpMethod": "POST", "stage": "e2e"},
            "body": json.dumps(body),
            "isBase64Encoded": False,
        }

    def _invoke(self, body: dict[str, Any]) -> dict[str, Any]:
        response = self.lambda_client.invoke(
            FunctionName=self.config.lambda_function_name,
            InvocationType="RequestResponse",
            Payload=json.dumps(self._api_event(body)).encode("utf-8"),
        )
        return json.loads(response["Payload"].read())

    def _upload(self) -> int:
        self.console.print("\n--- [bold green]Producer Phase[/bold green] ---")
        export = ExportGenerator().generate(self.config.num_records, self.config.num_ignored_records)
        self.s3.put_object(Bucket=self.config.upload_bucket, Key=self.archive_key, Body=export.archive)
        self.console.log(
            f"Uploaded export with {export.expected_records} importable and "
            f"{export.ignored_records} ignored records to [cyan]{self.archive_key}[/cyan]"
        )
        return export.expected_records

    def _archive_exists(self) -> bool:
        try:
            self.s3.head_object(Bucket=self.config.upload_bucket, Key=self.archive_key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise

    def _wait_for_archive_removal(self) -> Optional[float]:
        """Polls until the archive is deleted; returns the elapsed seconds or None."""
        started = time.monotonic()
        deadline = started + self.config.timeout_seconds
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=self.console,
        ) as progress:
            progress.add_task("Waiting for the ingestion job to remove the archive...", total=None)
            while time.monotonic() < deadline:
                if not self._archive_exists():
                    return time.monotonic() - started
                time.sleep(self.config.poll_interval_seconds)
        return None

    def _run_rejection_checks(self) -> None:
        self.console.print("\n--- [bold blue]Request Validation[/bold blue] ---")
        missing = self._invoke({"userId": self.config.user_id})
        self._check(
            "missing filePath rejected",
            missing.get("statusCode") == 400,
            f"statusCode={missing.get('statusCode')}",
        )
        traversal = self._invoke({"userId": self.config.user_id, "filePath": "../other/export.zip"})
        self._check(
            "path traversal rejected",
            traversal.get("statusCode") == 400,
            f"statusCode={traversal.get('statusCode')}",
        )

    def _run_ingestion_check(self) -> None:
        expected = self._upload()

        self.console.print("\n--- [bold blue]Trigger Phase[/bold blue] ---")
        response = self._invoke({"userId": self.config.user_id, "filePath": self.archive_key})
        body = json.loads(response.get("body") or "{}")
        results = body.get("results", {})
        accepted = self._check(
            "request acknowledged",
            response.get("statusCode") == 200 and results.get("status") == "processing_started",
            f"statusCode={response.get('statusCode')} requestId={results.get('requestId')}",
        )
        if not accepted:
            return

        elapsed = self._wait_for_archive_removal()
        self._check(
            "archive removed after processing",
            elapsed is not None,
            f"{elapsed:.1f}s for {expected} records" if elapsed is not None else "timed out",
        )

    def _display_and_report(self) -> None:
        table = Table(title=f"E2E Results ({self.run_id})")
        table.add_column("Check", style="cyan")
        table.add_column("Status")
        table.add_column("Details", style="dim")
        for result in self.results:
            status = "[green]PASS[/green]" if result["status"] == "PASS" else "[red]FAIL[/red]"
            table.add_row(result["check"], status, result["details"])
        self.console.print(table)

        if self.config.report_file:
            with open(self.config.report_file, "w") as f:
                json.dump(
                    {"run_id": self.run_id, "config": self.config.raw_config, "results": self.results},
                    f,
                    indent=2,
                )
            self.console.log(f"Report written to [cyan]{self.config.report_file}[/cyan]")

    def _cleanup(self) -> None:
        if self.config.keep_files:
            return
        try:
            self.s3.delete_object(Bucket=self.config.upload_bucket, Key=self.archive_key)
        except ClientError as e:
            self.console.log(f"[yellow]Could not delete {self.archive_key}: {e}[/yellow]")

    def run(self) -> int:
        self.console.print(
            Panel(f"{self.config.description}\nRun ID: {self.run_id}", title="Health Ingest E2E")
        )
        try:
            self._run_rejection_checks()
            self._run_ingestion_check()
        finally:
            self._cleanup()

        self._display_and_report()
        if all(result["status"] == "PASS" for result in self.results):
            self.console.print("\n[bold green]✅ TEST PASSED[/bold green]")
            return 0
        self.console.print("\n[bold red]❌ TEST FAILED[/bold red]")
        return 1
