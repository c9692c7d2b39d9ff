# src/health_ingest/archive.py

"""
Archive retrieval for uploaded Apple Health exports.

An export arrives as a ZIP archive in the upload bucket. The reader sizes it,
picks a download strategy, pulls the bytes into memory and then streams the
single `export.xml` entry out of the ZIP as decoded text chunks, so only one
entry is ever open and the XML is never held twice.
"""

import codecs
import io
import logging
import zipfile
from enum import Enum
from typing import BinaryIO, Iterator

import requests

from .clients import StorageClient
from .config import AppConfig
from .exceptions import ArchiveDownloadError, PayloadMissingError

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1024 * 1024  # 1 MiB


class ArchiveStrategy(str, Enum):
    SMALL = "small"
    LARGE = "large"


def choose_strategy(size_bytes: int, threshold_bytes: int) -> ArchiveStrategy:
    """Archives at or above the threshold are fetched through a signed URL."""
    if size_bytes >= threshold_bytes:
        return ArchiveStrategy.LARGE
    return ArchiveStrategy.SMALL


class ArchiveReader:
    """Locates, downloads and unzips an uploaded export."""

    def __init__(
        self,
        storage: StorageClient,
        config: AppConfig,
        http_session: requests.Session | None = None,
    ):
        self._storage = storage
        self._config = config
        self._http = http_session or requests.Session()

    def locate(self, path: str) -> int:
        """Returns the archive's size in bytes. Raises ArchiveNotFoundError."""
        size = self._storage.get_object_size(path)
        logger.debug("Archive located", extra={"key": path, "size_bytes": size})
        return size

    def choose_strategy(self, size_bytes: int) -> ArchiveStrategy:
        return choose_strategy(size_bytes, self._config.large_file_threshold_bytes)

    def fetch(self, path: str, strategy: ArchiveStrategy) -> bytes | BinaryIO:
        if strategy is ArchiveStrategy.SMALL:
            return self._storage.download(path)
        return self._fetch_signed(path)

    def _fetch_signed(self, path: str) -> BinaryIO:
        url = self._storage.create_signed_url(path, self._config.signed_url_expiry_seconds)
        logger.info("Fetching large archive through signed URL", extra={"key": path})

        try:
            response = self._http.get(url, stream=True, timeout=self._config.http_timeout_seconds)
        except requests.RequestException as e:
            raise ArchiveDownloadError(
                f"signed URL request failed: {e}", context={"key": path}
            ) from e

        with response:
            if not 200 <= response.status_code < 300:
                raise ArchiveDownloadError(
                    f"signed URL returned HTTP {response.status_code}",
                    context={"key": path, "status_code": response.status_code},
                )
            buffer = io.BytesIO()
            try:
                for chunk in response.iter_content(chunk_size=_READ_CHUNK_BYTES):
                    buffer.write(chunk)
            except requests.RequestException as e:
                raise ArchiveDownloadError(
                    f"signed URL transfer interrupted: {e}",
                    context={"key": path, "bytes_received": buffer.tell()},
                ) from e
        # The buffer itself, rewound; never a second copy of the archive.
        buffer.seek(0)
        return buffer

    def iter_payload_text(self, archive: bytes | BinaryIO) -> Iterator[str]:
        """
        Yields the target entry of the ZIP as UTF-8 text chunks.

        Raises PayloadMissingError when the bytes are not a ZIP archive or no
        entry name contains the target payload name.
        """
        target = self._config.target_payload_name
        try:
            source = io.BytesIO(archive) if isinstance(archive, (bytes, bytearray)) else archive
            zip_file = zipfile.ZipFile(source)
        except zipfile.BadZipFile as e:
            raise PayloadMissingError(target, context={"reason": str(e)}) from e

        with zip_file:
            matches = [info for info in zip_file.infolist() if target in info.filename]
            if not matches:
                raise PayloadMissingError(target, context={"entries": len(zip_file.infolist())})
            if len(matches) > 1:
                logger.warning(
                    "Several entries match the payload name; using the first.",
                    extra={"entries": [info.filename for info in matches]},
                )
            entry = matches[0]
            logger.info(
                "Payload found in archive",
                extra={"entry": entry.filename, "uncompressed_bytes": entry.file_size},
            )

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            with zip_file.open(entry) as stream:
                for chunk in iter(lambda: stream.read(_READ_CHUNK_BYTES), b""):
                    text = decoder.decode(chunk)
                    if text:
                        yield text
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail

    def read_payload_text(self, archive: bytes | BinaryIO) -> str:
        return "".join(self.iter_payload_text(archive))
