import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_DISPATCH_MODES = ("thread", "lambda")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    upload_bucket: str
    database_url: str
    environment: str

    # --- Optional Variables with Defaults ---
    log_level: str
    large_file_threshold_mb: int
    signed_url_expiry_seconds: int
    http_timeout_seconds: int
    target_payload_name: str

    # --- Parsing & Loading ---
    batch_size: int
    buffer_ceiling_mb: int
    progress_interval: int
    aggregation_window_days: int

    # --- Background Dispatch ---
    dispatch_mode: str
    worker_function_name: str | None
    max_background_workers: int
    audit_url: str

    # --- Derived Properties ---
    @property
    def large_file_threshold_bytes(self) -> int:
        return self.large_file_threshold_mb * 1_048_576

    @property
    def buffer_ceiling_chars(self) -> int:
        return self.buffer_ceiling_mb * 1_048_576

    @staticmethod
    def _positive_int(name: str, default: str) -> int:
        value = int(os.getenv(name, default))
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer.")
        return value

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            upload_bucket = os.environ["UPLOAD_BUCKET_NAME"]
            database_url = os.environ["DATABASE_URL"]
            environment = os.environ["ENVIRONMENT"]

            # --- Handle optional and numeric variables with validation ---
            large_file_threshold_mb = cls._positive_int("LARGE_FILE_THRESHOLD_MB", "100")
            signed_url_expiry_seconds = cls._positive_int("SIGNED_URL_EXPIRY_SECONDS", "3600")
            http_timeout_seconds = cls._positive_int("HTTP_TIMEOUT_SECONDS", "60")
            batch_size = cls._positive_int("BATCH_SIZE", "100")
            buffer_ceiling_mb = cls._positive_int("BUFFER_CEILING_MB", "5")
            progress_interval = cls._positive_int("PROGRESS_INTERVAL", "1000")
            aggregation_window_days = int(os.getenv("AGGREGATION_WINDOW_DAYS", "30"))
            if aggregation_window_days < 0:
                raise ValueError("AGGREGATION_WINDOW_DAYS must be a non-negative integer.")
            max_background_workers = cls._positive_int("MAX_BACKGROUND_WORKERS", "4")

            target_payload_name = os.getenv("TARGET_PAYLOAD_NAME", "export.xml")
            if not target_payload_name:
                raise ValueError("TARGET_PAYLOAD_NAME must not be empty.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            # --- Handle dispatch configuration ---
            dispatch_mode = os.getenv("DISPATCH_MODE", "thread").lower()
            if dispatch_mode not in _DISPATCH_MODES:
                raise ValueError(
                    f"DISPATCH_MODE must be one of {list(_DISPATCH_MODES)}, not '{dispatch_mode}'"
                )
            worker_function_name = os.getenv("WORKER_FUNCTION_NAME") or None
            if dispatch_mode == "lambda" and not worker_function_name:
                raise ValueError("WORKER_FUNCTION_NAME is required when DISPATCH_MODE is 'lambda'.")

            audit_url = os.getenv("AUDIT_URL", "process-apple-health")

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            upload_bucket=upload_bucket,
            database_url=database_url,
            environment=environment,
            log_level=log_level,
            large_file_threshold_mb=large_file_threshold_mb,
            signed_url_expiry_seconds=signed_url_expiry_seconds,
            http_timeout_seconds=http_timeout_seconds,
            target_payload_name=target_payload_name,
            batch_size=batch_size,
            buffer_ceiling_mb=buffer_ceiling_mb,
            progress_interval=progress_interval,
            aggregation_window_days=aggregation_window_days,
            dispatch_mode=dispatch_mode,
            worker_function_name=worker_function_name,
            max_background_workers=max_background_workers,
            audit_url=audit_url,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
