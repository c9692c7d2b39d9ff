#!/usr/bin/env python

# e2e_tests/main.py

import argparse

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, NoRegionError
from rich.console import Console
from rich.panel import Panel

from components.config import Config, load_configuration
from components.runner import E2ETestRunner


def verify_aws_connectivity(config: Config):
    """
    Performs pre-flight checks before the test runner is even instantiated.
    - Verifies credentials and region are configured.
    - Verifies access to the upload bucket and the ingestion function.
    - Exits with a clear error message on failure.
    """
    console = Console()
    console.print("\n--- [bold blue]Pre-flight Checks[/bold blue] ---")

    try:
        session = boto3.Session()
        s3_client = session.client("s3")
        s3_client.head_bucket(Bucket=config.upload_bucket)
        console.log(f"[green]✓[/green] Access confirmed for S3 bucket: '{config.upload_bucket}'")

        lambda_client = session.client("lambda")
        lambda_client.get_function_configuration(FunctionName=config.lambda_function_name)
        console.log(
            f"[green]✓[/green] Access confirmed for Lambda function: '{config.lambda_function_name}'"
        )
        console.print("[bold green]✅ Pre-flight checks passed.[/bold green]")

    except NoCredentialsError:
        console.print("\n[bold red]❌ PRE-FLIGHT CHECK FAILED[/bold red]\n")
        console.print(
            Panel(
                "AWS credentials not found. Configure environment variables, a shared "
                "credentials profile or an attached IAM role.",
                title="Authentication Error",
                border_style="red",
            )
        )
        exit(2)

    except NoRegionError:
        console.print("\n[bold red]❌ PRE-FLIGHT CHECK FAILED[/bold red]\n")
        console.print(
            Panel(
                "An AWS region was not specified. Set AWS_REGION or AWS_DEFAULT_REGION.",
                title="Configuration Error",
                border_style="red",
            )
        )
        exit(2)

    except ClientError as e:
        console.print("\n[bold red]❌ PRE-FLIGHT CHECK FAILED[/bold red]\n")
        error_code = e.response["Error"]["Code"]
        if error_code == "404":
            error_message = f"Upload bucket '{config.upload_bucket}' does not exist."
        elif error_code == "403":
            error_message = "Access Denied when trying to access an AWS resource. Check your IAM permissions."
        elif error_code == "ResourceNotFoundException":
            error_message = f"Lambda function not found: '{config.lambda_function_name}'."
        else:
            error_message = f"An unexpected AWS API error occurred: {e}"
        console.print(Panel(error_message, title="AWS API Error", border_style="red"))
        exit(2)


def main():
    """Main entry point for the test runner script."""
    parser = argparse.ArgumentParser(
        description="End-to-end test for the Apple Health ingestion function.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-c", "--config", help="Path to a JSON configuration file.")
    parser.add_argument("--upload-bucket", dest="upload_bucket", help="Bucket receiving export archives.")
    parser.add_argument("--lambda-function-name", dest="lambda_function_name", help="Deployed ingestion function.")
    parser.add_argument("--user-id", dest="user_id", help="Owner id used for the upload prefix.")
    parser.add_argument("--num-records", dest="num_records", type=int, help="Importable records to generate.")
    parser.add_argument("--timeout-seconds", dest="timeout_seconds", type=int, help="How long to wait for the job.")
    parser.add_argument("--report-file", dest="report_file", help="Write a JSON report to this path.")
    parser.add_argument("--keep-files", dest="keep_files", action="store_true", default=None)
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=None,
        help="Enable verbose output, including full exception tracebacks.",
    )

    args = parser.parse_args()
    config = load_configuration(args)
    verify_aws_connectivity(config)

    try:
        runner = E2ETestRunner(config)
        exit(runner.run())
    except Exception as e:
        print(f"\nAn unexpected error occurred during the test run: {e}")
        if config.verbose:
            import traceback
            traceback.print_exc()
        exit(1)


if __name__ == "__main__":
    main()
