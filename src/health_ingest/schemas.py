# src/health_ingest/schemas.py

from typing import Any, TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator

IMPORT_SOURCE = "apple_health"

# Vendor-defined identifiers this pipeline persists. Anything else is dropped.
RECORD_TYPE_WHITELIST: frozenset[str] = frozenset(
    {
        "HKQuantityTypeIdentifierStepCount",
        "HKQuantityTypeIdentifierDistanceWalkingRunning",
        "HKQuantityTypeIdentifierHeartRate",
        "HKQuantityTypeIdentifierRestingHeartRate",
        "HKQuantityTypeIdentifierActiveEnergyBurned",
        "HKQuantityTypeIdentifierBasalEnergyBurned",
        "HKQuantityTypeIdentifierBodyMass",
        "HKQuantityTypeIdentifierBodyMassIndex",
        "HKQuantityTypeIdentifierBodyFatPercentage",
        "HKQuantityTypeIdentifierBloodPressureSystolic",
        "HKQuantityTypeIdentifierBloodPressureDiastolic",
        "HKQuantityTypeIdentifierBloodGlucose",
        "HKQuantityTypeIdentifierOxygenSaturation",
        "HKCategoryTypeIdentifierSleepAnalysis",
        "HKQuantityTypeIdentifierSleepDuration",
        "HKQuantityTypeIdentifierVO2Max",
        "HKQuantityTypeIdentifierRespiratoryRate",
    }
)


# --- Static Type Hinting (for mypy and IDEs) ---


class RecordMetadata(TypedDict):
    request_id: str
    imported_from: str


class PersistedHealthRecord(TypedDict):
    """Row shape accepted by the `health_records` table."""

    user_id: str
    record_type: str
    value: float
    unit: str | None
    start_date: str
    end_date: str | None
    source_name: str | None
    source_version: str | None
    device: str | None
    metadata: RecordMetadata


class AuditLogEntry(TypedDict):
    """Row shape accepted by the `error_logs` table."""

    user_id: str | None
    error_type: str
    error_message: str
    error_details: str
    source: str
    url: str


# --- Runtime Validation (using Pydantic) ---


class IngestionRequest(BaseModel):
    """Body of the HTTP trigger: `{"userId": ..., "filePath": ...}`."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)
    file_path: str = Field(..., alias="filePath", min_length=1)


class HealthRecordCandidate(BaseModel):
    """
    One `<Record>` element lifted out of export.xml, before it is persisted.

    Construction fails for a non-whitelisted type, a value that is not a
    finite non-zero number, or a missing start date. Callers treat that
    failure as "drop the record".
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    record_type: str = Field(..., alias="type")
    value: float = Field(..., allow_inf_nan=False)
    unit: str | None = None
    start_date: str = Field(..., alias="startDate", min_length=1)
    end_date: str | None = Field(None, alias="endDate")
    source_name: str | None = Field(None, alias="sourceName")
    source_version: str | None = Field(None, alias="sourceVersion")
    device: str | None = None

    @field_validator("record_type")
    @classmethod
    def validate_whitelisted(cls, value: str) -> str:
        if value not in RECORD_TYPE_WHITELIST:
            raise ValueError(f"record type '{value}' is not imported")
        return value

    @field_validator("value")
    @classmethod
    def validate_non_zero(cls, value: float) -> float:
        if value == 0:
            raise ValueError("zero-valued records are not imported")
        return value

    def to_row(self, user_id: str, request_id: str) -> PersistedHealthRecord:
        return {
            "user_id": user_id,
            "record_type": self.record_type,
            "value": self.value,
            "unit": self.unit,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "source_name": self.source_name,
            "source_version": self.source_version,
            "device": self.device,
            "metadata": {"request_id": request_id, "imported_from": IMPORT_SOURCE},
        }


def job_payload(owner_id: str, archive_path: str, request_id: str) -> dict[str, Any]:
    """Payload carried by an asynchronous worker invocation."""
    return {
        "ingestion_job": {
            "userId": owner_id,
            "filePath": archive_path,
            "requestId": request_id,
        }
    }
