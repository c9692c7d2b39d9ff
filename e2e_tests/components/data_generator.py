# e2e_tests/components/data_generator.py

import io
import random
import zipfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

EXPORT_ENTRY = "apple_health_export/export.xml"

IMPORTED_TYPES = (
    ("HKQuantityTypeIdentifierStepCount", "count", (50, 2500)),
    ("HKQuantityTypeIdentifierHeartRate", "count/min", (48, 160)),
    ("HKQuantityTypeIdentifierActiveEnergyBurned", "kcal", (1, 90)),
)
IGNORED_TYPE = "HKQuantityTypeIdentifierDietaryCaffeine"


@dataclass
class GeneratedExport:
    archive: bytes
    expected_records: int
    ignored_records: int


class ExportGenerator:
    """Builds a synthetic Apple Health export archive."""

    def __init__(self, seed: int | None = None):
        self._random = random.Random(seed)

    def _record(self, record_type: str, unit: str, value: float, start: datetime) -> str:
        fmt = "%Y-%m-%d %H:%M:%S +0000"
        end = start + timedelta(minutes=5)
        return (
            f'<Record type="{record_type}" sourceName="E2E Watch" sourceVersion="10.0" '
            f'unit="{unit}" creationDate="{end.strftime(fmt)}" '
            f'startDate="{start.strftime(fmt)}" endDate="{end.strftime(fmt)}" value="{value}">\n'
            '  <MetadataEntry key="HKMetadataKeySyncVersion" value="2"/>\n'
            " </Record>"
        )

    def generate(self, num_records: int, num_ignored: int) -> GeneratedExport:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        lines = []
        for index in range(num_records):
            record_type, unit, (low, high) = self._random.choice(IMPORTED_TYPES)
            start = now - timedelta(minutes=7 * (index + 1))
            lines.append(self._record(record_type, unit, self._random.randint(low, high), start))
        for index in range(num_ignored):
            lines.append(self._record(IGNORED_TYPE, "mg", 80, now - timedelta(hours=index + 1)))
        self._random.shuffle(lines)

        xml = (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            "<!DOCTYPE HealthData>\n"
            '<HealthData locale="en_GB">\n'
            f' <ExportDate value="{now.strftime("%Y-%m-%d %H:%M:%S +0000")}"/>\n '
            + "\n ".join(lines)
            + "\n</HealthData>\n"
        )

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(EXPORT_ENTRY, xml)
            archive.writestr("apple_health_export/export_cda.xml", "<ClinicalDocument/>")
        return GeneratedExport(
            archive=buffer.getvalue(),
            expected_records=num_records,
            ignored_records=num_ignored,
        )
