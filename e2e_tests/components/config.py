import argparse
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class Config:
    """Configuration for the E2E test runner."""

    upload_bucket: str
    lambda_function_name: str
    description: str = "E2E Test Run"
    user_id: str = "e2e-user"
    num_records: int = 500
    num_ignored_records: int = 50
    keep_files: bool = False
    timeout_seconds: int = 300
    poll_interval_seconds: int = 5
    report_file: Optional[str] = None
    verbose: bool = False
    raw_config: Dict[str, Any] = field(default_factory=dict, repr=False)


def load_configuration(args: argparse.Namespace) -> Config:
    """Loads configuration from file and overrides with CLI arguments."""
    config_data: Dict[str, Any] = {}
    if args.config:
        try:
            with open(args.config) as f:
                config_data = json.load(f)
        except FileNotFoundError as e:
            raise FileNotFoundError(
                f"Error: Configuration file '{args.config}' not found."
            ) from e

    description = config_data.pop("description", "E2E Test Run")
    cli_args = {
        key: value
        for key, value in vars(args).items()
        if value is not None and key != "config"
    }
    config_data.update(cli_args)
    raw_config = config_data.copy()
    config_data["description"] = description

    if "upload_bucket" not in config_data or "lambda_function_name" not in config_data:
        raise ValueError("The --upload-bucket and --lambda-function-name are required.")

    return Config(raw_config=raw_config, **config_data)
