# src/health_ingest/clients.py

"""
Client wrapper for the archive storage bucket (S3).

The class provides a small, typed interface over a raw boto3 client covering
the four operations the ingestion pipeline needs: list, download, presign and
remove. botocore failures are translated into the service's own exception
types so that callers never depend on botocore error codes.
"""

import logging
from typing import TYPE_CHECKING, Any, NoReturn

from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from .exceptions import (
    ArchiveDownloadError,
    ArchiveNotFoundError,
    StorageAccessDeniedError,
    StorageThrottlingError,
    StorageTimeoutError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

_THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown"}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}
_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class StorageClient:
    """
    A wrapper for S3 operations on the upload bucket.
    """

    def __init__(self, s3_client: "S3ClientType", bucket: str):
        """
        Initializes the StorageClient.

        Args:
            s3_client: A typed boto3 S3 client.
            bucket: Name of the bucket that receives archive uploads.
        """
        self._client = s3_client
        self.bucket = bucket

    def _raise_for_client_error(self, e: ClientError, key: str, operation: str) -> NoReturn:
        error_code = e.response["Error"]["Code"]
        error_message = e.response["Error"].get("Message", "")
        context = {
            "operation": operation,
            "aws_error_code": error_code,
            "aws_error_message": error_message,
        }

        # Map boto3 error codes to our specific exception types
        if error_code in _NOT_FOUND_CODES:
            raise ArchiveNotFoundError(bucket=self.bucket, key=key, context=context) from e
        elif error_code == "AccessDenied":
            raise StorageAccessDeniedError(bucket=self.bucket, key=key, context=context) from e
        elif error_code in _THROTTLING_CODES:
            raise StorageThrottlingError(
                operation, context={"bucket": self.bucket, "key": key, **context}
            ) from e
        elif error_code in _TIMEOUT_CODES:
            raise StorageTimeoutError(
                operation, context={"bucket": self.bucket, "key": key, **context}
            ) from e
        else:
            raise ArchiveDownloadError(
                f"S3 client error: {error_message}",
                context={"bucket": self.bucket, "key": key, **context},
            ) from e

    def list_objects(self, prefix: str) -> list[dict[str, Any]]:
        """Returns every object under *prefix* as `{"Key", "Size"}` dicts."""
        objects: list[dict[str, Any]] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append({"Key": item["Key"], "Size": item["Size"]})
        except ClientError as e:
            self._raise_for_client_error(e, prefix, "list_objects")
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise StorageTimeoutError(
                "list_objects",
                context={"bucket": self.bucket, "prefix": prefix, "connection_error": str(e)},
            ) from e
        return objects

    def get_object_size(self, key: str) -> int:
        """
        Lists the folder containing *key* and returns the object's byte size.
        Raises ArchiveNotFoundError when the listing does not contain it.
        """
        folder, _, _ = key.rpartition("/")
        prefix = f"{folder}/" if folder else ""
        for item in self.list_objects(prefix):
            if item["Key"] == key:
                return int(item["Size"])
        raise ArchiveNotFoundError(bucket=self.bucket, key=key, context={"prefix": prefix})

    def download(self, key: str) -> bytes:
        """Downloads the whole object into memory."""
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            self._raise_for_client_error(e, key, "download")
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise StorageTimeoutError(
                "download",
                context={"bucket": self.bucket, "key": key, "connection_error": str(e)},
            ) from e

    def create_signed_url(self, key: str, expires_in: int) -> str:
        """Creates a presigned GET URL for *key* valid for *expires_in* seconds."""
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            self._raise_for_client_error(e, key, "create_signed_url")

    def remove(self, key: str) -> None:
        """Deletes the object at *key*."""
        logger.info("Removing archive", extra={"bucket": self.bucket, "key": key})
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            self._raise_for_client_error(e, key, "remove")
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise StorageTimeoutError(
                "remove",
                context={"bucket": self.bucket, "key": key, "connection_error": str(e)},
            ) from e
