# src/health_ingest/exceptions.py

"""
Shared custom exceptions for the Health Ingest service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- HealthIngestError (base)
  - RetryableError (a resubmitted job may succeed)
    - StorageThrottlingError
    - StorageTimeoutError
    - ArchiveDownloadError
  - NonRetryableError (resubmitting the same input will fail again)
    - ValidationError
      - InputValidationError
    - StorageAccessDeniedError
    - ArchiveNotFoundError
    - PayloadMissingError
    - ConfigurationError
  - RecordPersistenceError (absorbed by the batch writer)
  - AggregationError (absorbed per day by the aggregator)
"""

from typing import Any, Dict, Optional


class HealthIngestError(Exception):
    """Base exception for all Health Ingest service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(HealthIngestError):
    """Base class for errors where a resubmitted job may succeed."""
    pass


class NonRetryableError(HealthIngestError):
    """Base class for errors that will recur on resubmission."""
    pass


# === Validation Errors ===

class ValidationError(NonRetryableError):
    """Base class for validation errors."""
    pass


class InputValidationError(ValidationError):
    """Raised when an ingestion request is missing required fields."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_REQUEST"
        super().__init__(message, **kwargs)


# === Storage Errors ===

class StorageError(HealthIngestError):
    """Base class for archive storage errors."""
    pass


class ArchiveNotFoundError(StorageError, NonRetryableError):
    """Raised when the uploaded archive does not exist in the bucket."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Archive not found: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="ARCHIVE_NOT_FOUND", context=context, **kwargs)


class StorageAccessDeniedError(StorageError, NonRetryableError):
    """Raised when access is denied to an archive object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to archive: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="STORAGE_ACCESS_DENIED", context=context, **kwargs)


class StorageThrottlingError(StorageError, RetryableError):
    """Raised when storage operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"Storage operation throttled: {operation}"
        context = {"operation": operation}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="STORAGE_THROTTLING", context=context, **kwargs)


class StorageTimeoutError(StorageError, RetryableError):
    """Raised when storage operations time out or cannot connect."""

    def __init__(self, operation: str, **kwargs):
        message = f"Storage operation timed out: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation})
        super().__init__(message, error_code="STORAGE_TIMEOUT", context=context, **kwargs)


class ArchiveDownloadError(StorageError, RetryableError):
    """Raised when the archive bytes cannot be transferred."""

    def __init__(self, reason: str, **kwargs):
        message = f"Archive download failed: {reason}"
        context = {"reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="ARCHIVE_DOWNLOAD_FAILED", context=context, **kwargs)


class PayloadMissingError(NonRetryableError):
    """Raised when the archive holds no entry matching the payload name."""

    def __init__(self, target_name: str, **kwargs):
        message = f"No entry matching '{target_name}' found in archive"
        context = {"target_name": target_name}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="PAYLOAD_MISSING", context=context, **kwargs)


# === Record Store Errors ===

class RecordPersistenceError(HealthIngestError):
    """Raised when the record store rejects an insert."""

    def __init__(self, table: str, row_count: int, **kwargs):
        message = f"Failed to insert {row_count} row(s) into {table}"
        context = {"table": table, "row_count": row_count}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="RECORD_PERSISTENCE_FAILED", context=context, **kwargs)


class AggregationError(HealthIngestError):
    """Raised when the daily aggregation routine fails for a day."""

    def __init__(self, day: str, **kwargs):
        message = f"Daily aggregation failed for {day}"
        context = {"day": day}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="AGGREGATION_FAILED", context=context, **kwargs)


# === Configuration Errors ===

class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===

def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, HealthIngestError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
