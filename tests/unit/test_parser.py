# tests/unit/test_parser.py

import math

import pytest

from health_ingest.parser import (
    RecordScanner,
    StreamingRecordParser,
    build_candidate,
    extract_attributes,
)

from conftest import HEART_RATE, STEP_COUNT, export_document, record_element


def _parser(**kwargs) -> StreamingRecordParser:
    kwargs.setdefault("owner_id", "u1")
    kwargs.setdefault("request_id", "req-1")
    return StreamingRecordParser(**kwargs)


def _valid_records(count: int) -> list[str]:
    return [
        record_element(value=str(index + 1), start_date=f"2024-03-01 08:{index % 60:02d}:00 +0000")
        for index in range(count)
    ]


# --- Attribute extraction ---


def test_extract_attributes_reads_start_tag_only():
    span = (
        f'<Record type="{HEART_RATE}" value="61" startDate="2024-03-01 08:00:00 +0000">\n'
        '  <MetadataEntry key="HKMetadataKeyHeartRateMotionContext" value="1"/>'
    )

    attrs = extract_attributes(span)

    assert attrs["value"] == "61"
    assert "unit" not in attrs


def test_extract_attributes_unescapes_entities():
    span = '<Record type="X" sourceName="Anna&apos;s Watch &amp; Phone" device="&lt;&lt;HKDevice&gt;&gt;"/>'

    attrs = extract_attributes(span)

    assert attrs["sourceName"] == "Anna's Watch & Phone"
    assert attrs["device"] == "<<HKDevice>>"


def test_extract_attributes_does_not_confuse_prefixed_names():
    span = '<Record type="X" creationDate="2024-01-01" startDate="2024-03-01"/>'

    assert extract_attributes(span)["startDate"] == "2024-03-01"


@pytest.mark.parametrize(
    "attrs",
    [
        {"type": "HKQuantityTypeIdentifierDietaryWater", "value": "1", "startDate": "d"},
        {"type": STEP_COUNT, "value": "0", "startDate": "d"},
        {"type": STEP_COUNT, "value": "abc", "startDate": "d"},
        {"type": STEP_COUNT, "value": "10"},
    ],
)
def test_build_candidate_drops_invalid(attrs):
    assert build_candidate(attrs) is None


# --- Scanner ---


def test_scanner_emits_record_split_across_chunks():
    record = record_element()
    scanner = RecordScanner(buffer_ceiling=1024)

    assert scanner.feed("<HealthData>\n <Rec") == []
    assert scanner.feed(record[4:30]) == []
    assert scanner.feed(record[30:] + "\n</HealthData>") == [record]


def test_scanner_tail_is_bounded_without_pending_record():
    scanner = RecordScanner(buffer_ceiling=64)

    scanner.feed("x" * 10_000)

    assert scanner.buffered < len("<Record ")


def test_scanner_discards_oversized_record():
    scanner = RecordScanner(buffer_ceiling=64)
    good = record_element()

    assert scanner.feed('<Record type="' + "A" * 200) == []
    assert scanner.oversized == 1
    assert scanner.buffered == 0
    assert scanner.feed(good) == [good]


def test_scanner_rejects_ceiling_smaller_than_marker():
    with pytest.raises(ValueError):
        RecordScanner(buffer_ceiling=3)


# --- Parser ---


@pytest.mark.parametrize("count", [0, 1, 99, 100, 101, 250])
def test_batches_are_capped_at_batch_size(count):
    parser = _parser()

    batches = list(parser.iter_batches(export_document(_valid_records(count))))

    assert len(batches) == math.ceil(count / 100)
    assert all(len(batch) <= 100 for batch in batches)
    assert sum(len(batch) for batch in batches) == count
    assert parser.stats.records_processed == count


def test_invalid_records_are_dropped_and_counted():
    records = [
        record_element(value="10"),
        record_element(value="0"),
        record_element(record_type="HKQuantityTypeIdentifierDietaryCaffeine"),
        record_element(start_date=None),
        record_element(value="HKCategoryValueSleepAnalysisInBed"),
        record_element(record_type=HEART_RATE, value="58", unit="count/min"),
    ]
    parser = _parser()

    rows = [row for batch in parser.iter_batches(export_document(records)) for row in batch]

    assert [row["value"] for row in rows] == [10.0, 58.0]
    assert parser.stats.records_seen == 6
    assert parser.stats.records_dropped == 4
    assert rows[1]["unit"] == "count/min"
    assert rows[0]["metadata"] == {"request_id": "req-1", "imported_from": "apple_health"}
    assert all(row["user_id"] == "u1" for row in rows)


def test_chunked_input_matches_single_string():
    document = export_document(_valid_records(37))
    whole = _parser()
    chunked = _parser(buffer_ceiling=512)
    pieces = [document[i : i + 13] for i in range(0, len(document), 13)]

    expected = [row for batch in whole.iter_batches(document) for row in batch]
    actual = [row for batch in chunked.iter_batches(iter(pieces)) for row in batch]

    assert actual == expected
    assert chunked.stats.records_oversized == 0


def test_oversized_record_is_counted_and_parsing_continues():
    huge = '<Record type="' + STEP_COUNT + '" notes="' + "x" * 5000 + '" value="1"/>'
    document = export_document([record_element(value="1"), huge, record_element(value="2")])
    pieces = [document[i : i + 100] for i in range(0, len(document), 100)]
    parser = _parser(buffer_ceiling=1024)

    rows = [row for batch in parser.iter_batches(pieces) for row in batch]

    assert parser.stats.records_oversized == 1
    assert [row["value"] for row in rows] == [1.0, 2.0]


def test_progress_reported_every_interval():
    progress: list[int] = []
    parser = _parser(batch_size=50, progress_interval=1000, on_progress=progress.append)

    list(parser.iter_batches(export_document(_valid_records(2500))))

    assert progress == [1000, 2000]


def test_progress_counts_only_valid_records():
    progress: list[int] = []
    records = _valid_records(3) + [record_element(value="0")] * 5
    parser = _parser(progress_interval=2, on_progress=progress.append)

    list(parser.iter_batches(export_document(records)))

    assert progress == [2]


# --- Buffer boundaries ---


def test_record_exactly_at_buffer_ceiling_is_kept_whole():
    record = record_element()
    scanner = RecordScanner(buffer_ceiling=len(record))

    spans = []
    for offset in range(0, len(record), 7):
        spans.extend(scanner.feed(record[offset : offset + 7]))

    assert spans == [record]
    assert scanner.oversized == 0


def test_close_marker_split_between_chunks():
    records = [record_element(value=str(n)) for n in (1, 2, 3)]
    document = export_document(records)
    split_at = document.index("/>", document.index("<Record ")) + 1
    parser = _parser(buffer_ceiling=len(records[0]))

    rows = [row for batch in parser.iter_batches([document[:split_at], document[split_at:]]) for row in batch]

    assert [row["value"] for row in rows] == [1.0, 2.0, 3.0]
    assert parser.stats.records_oversized == 0


# --- Imported date range ---


def test_stats_track_earliest_and_latest_start_date():
    records = [
        record_element(value="1", start_date="2024-03-02 02:00:00 +0000"),
        record_element(value="2", start_date="2024-03-01 23:30:00 -0500"),
        record_element(value="3", start_date="2024-02-28 09:15:00 +0100"),
        record_element(value="0", start_date="2023-01-01 00:00:00 +0000"),
    ]
    parser = _parser()

    list(parser.iter_batches(export_document(records)))

    assert parser.stats.earliest_start_date == "2024-02-28 09:15:00 +0100"
    assert parser.stats.latest_start_date == "2024-03-01 23:30:00 -0500"


def test_unparseable_start_date_is_imported_but_not_ranged():
    parser = _parser()

    rows = [
        row
        for batch in parser.iter_batches(export_document([record_element(start_date="yesterday")]))
        for row in batch
    ]

    assert [row["start_date"] for row in rows] == ["yesterday"]
    assert parser.stats.earliest_start_date is None
    assert parser.stats.latest_start_date is None


def test_workouts_and_activity_summaries_are_not_records():
    workout = (
        '<Workout workoutActivityType="HKWorkoutActivityTypeRunning" duration="31.5" '
        'durationUnit="min" startDate="2024-03-01 07:00:00 +0000" endDate="2024-03-01 07:31:30 +0000">'
        '<WorkoutStatistics type="' + STEP_COUNT + '" sum="4200"/></Workout>'
    )
    summary = '<ActivitySummary dateComponents="2024-03-01" activeEnergyBurned="512"/>'
    parser = _parser()

    rows = [
        row
        for batch in parser.iter_batches(export_document([workout, summary, record_element(value="7")]))
        for row in batch
    ]

    assert [row["value"] for row in rows] == [7.0]
    assert parser.stats.records_seen == 1
