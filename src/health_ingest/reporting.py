# src/health_ingest/reporting.py

"""
Append-only audit trail for ingestion jobs.

Every checkpoint of a job (start, file found, progress, completion, failure)
is written to the `error_logs` table so that the outcome of a job, which the
HTTP caller never sees, can be observed afterwards. The reporter must never
take down the job it observes: failures to write an entry are logged and
swallowed.
"""

import json
import logging
from typing import Any

from .schemas import IMPORT_SOURCE, AuditLogEntry
from .store import HealthDataStore

logger = logging.getLogger(__name__)


class AuditReporter:
    def __init__(self, store: HealthDataStore, url: str, source: str = IMPORT_SOURCE):
        self._store = store
        self._url = url
        self._source = source

    def report(
        self,
        owner_id: str | None,
        event_type: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        logger.info(
            message,
            extra={"event_type": event_type, "owner_id": owner_id, "details": details},
        )
        try:
            entry: AuditLogEntry = {
                "user_id": owner_id,
                "error_type": event_type,
                "error_message": message,
                "error_details": json.dumps(details, default=str),
                "source": self._source,
                "url": self._url,
            }
            self._store.append_audit_entry(entry)
        except Exception:
            logger.warning(
                "Failed to write audit entry",
                exc_info=True,
                extra={"event_type": event_type, "owner_id": owner_id},
            )
