from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest

from models.records import MeasurementRecord
from storage.csv_codec import (
    HEADER,
    IssueSeverity,
    detect_delimiter,
    export_records,
    format_records,
    normalize_header,
    parse_csv,
    parse_timestamp,
    resolve_columns,
    unit_hint,
)


def _record(ts: datetime, co2: int = 420) -> MeasurementRecord:
    return MeasurementRecord(timestamp=ts, co2=co2, temperature=21.456, humidity=40.0, pressure=1013.2)


def test_format_records_sorted_with_fixed_precision() -> None:
    later = _record(datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc), co2=500)
    earlier = _record(datetime(2024, 1, 1, 0, 0, 0, 250000, tzinfo=timezone.utc))

    text = format_records([later, earlier])

    assert text.splitlines() == [
        HEADER,
        "2024-01-01T00:00:00.250Z,420,21.46,40.00,1013.20",
        "2024-01-01T00:05:00.000Z,500,21.46,40.00,1013.20",
    ]
    assert not text.endswith("\n")


def test_format_records_empty_is_header_only() -> None:
    assert format_records([]) == HEADER


def test_export_records_writes_atomically(tmp_path: Path) -> None:
    destination = tmp_path / "nested" / "history.csv"

    path = export_records([_record(datetime(2024, 1, 1, tzinfo=timezone.utc))], destination)

    assert path == destination
    assert destination.read_text(encoding="utf-8").startswith(HEADER)
    assert [entry.name for entry in destination.parent.iterdir()] == ["history.csv"]


def test_export_then_parse_preserves_values() -> None:
    written = [
        _record(datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc), co2=401),
        _record(datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc), co2=402),
    ]

    report = parse_csv(format_records(written))

    assert report.errors == 0 and report.warnings == 0
    assert [(r.timestamp, r.co2) for r in report.records] == [(r.timestamp, r.co2) for r in written]
    assert report.records[0].temperature == pytest.approx(21.46)


def test_normalize_header_strips_accents_and_units() -> None:
    assert normalize_header(" Température (°C) ") == "temperaturec"
    assert normalize_header("Humidité %") == "humidite"


def test_detect_delimiter() -> None:
    assert detect_delimiter("a;b;c") == ";"
    assert detect_delimiter("a\tb\tc") == "\t"
    assert detect_delimiter("abc") is None


def test_resolve_columns_matches_french_vendor_headers() -> None:
    headers = ["Horodatage", "Dioxyde de carbone (ppm)", "Température (°C)", "Humidité (%)", "Pression (hPa)"]

    assert resolve_columns(headers) == {
        "date": 0,
        "co2": 1,
        "temperature": 2,
        "humidity": 3,
        "pressure": 4,
    }


def test_time_header_is_not_taken_for_temperature() -> None:
    columns = resolve_columns(["Time", "Temp", "CO2", "RH", "Pressure"])

    assert columns["date"] == 0
    assert columns["temperature"] == 1


@pytest.mark.parametrize(
    ("header", "hint"),
    [
        ("Pressure (kPa)", "kpa"),
        ("Pressure hPa", "hpa"),
        ("Pressure (Pa)", "pa"),
        ("Temperature °F", "f"),
        ("Temperature (C)", "c"),
        ("Humidity %", "%"),
        ("co2", None),
    ],
)
def test_unit_hint(header: str, hint) -> None:
    assert unit_hint(header) == hint


def test_parse_timestamp_variants() -> None:
    expected = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)

    assert parse_timestamp("1704067200") == expected
    assert parse_timestamp("1704067200000") == expected
    assert parse_timestamp("2024-01-01T00:00:00Z") == expected
    assert parse_timestamp("2024-01-01T01:00:00+01:00") == expected
    assert parse_timestamp("2024/01/01 00:00:00") == expected
    assert parse_timestamp("01/01/2024 00:00:00") == expected
    with pytest.raises(ValueError):
        parse_timestamp("yesterday")


def test_parse_semicolon_file_with_comma_decimals_and_units() -> None:
    text = "\ufeffDate;CO2 (ppm);Temperature (°F);Humidity;Pressure (kPa)\n2024-01-01T00:00:00Z;415;68;0,5;101,3\n"

    report = parse_csv(text)

    assert report.errors == 0 and report.warnings == 0
    [record] = report.records
    assert record.co2 == 415
    assert record.temperature == pytest.approx(20.0)
    assert record.humidity == pytest.approx(50.0)
    assert record.pressure == pytest.approx(1013.0)


def test_percent_hint_keeps_small_humidity() -> None:
    text = "date,co2,temperature,humidity %,pressure\n2024-01-01T00:00:00Z,400,20,0.5,1000\n"

    [record] = parse_csv(text).records

    assert record.humidity == pytest.approx(0.5)


def test_pressure_without_hint_below_twenty_is_kpa() -> None:
    text = "date,co2,temperature,humidity,pressure\n2024-01-01T00:00:00Z,400,20,45,10.1\n"

    [record] = parse_csv(text).records

    assert record.pressure == pytest.approx(101.0)


def test_positional_fallback_for_unknown_headers() -> None:
    text = "a,b,c,d,e\n1704067200,450,21,40,1012\n"

    [record] = parse_csv(text).records

    assert record.co2 == 450
    assert record.pressure == pytest.approx(1012.0)


def test_bad_rows_are_counted_and_logged(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="storage.csv_codec")
    text = "\n".join(
        [
            "date,co2,temperature,humidity,pressure",
            "2024-01-01T00:00:00Z,400,20,45,1000",
            ",400,20,45,1000",
            "not-a-date,400,20,45,1000",
            "2024-01-01T00:10:00Z,abc,20,45,1000",
            "2024-01-01T00:15:00Z,400,20,,1000",
            "",
            "2024-01-01T00:20:00Z,410,21,46,1001",
        ]
    )

    report = parse_csv(text, source="upload.csv")

    assert len(report.records) == 2
    assert report.errors == 2
    assert report.warnings == 2
    assert [(issue.row_number, issue.severity, issue.reason) for issue in report.issues] == [
        (3, IssueSeverity.error, "missing date"),
        (4, IssueSeverity.error, "invalid date"),
        (5, IssueSeverity.warning, "invalid co2"),
        (6, IssueSeverity.warning, "missing humidity"),
    ]
    skipped = [record for record in caplog.records if record.getMessage().startswith("Skipping row")]
    assert len(skipped) == 4
    assert skipped[0].row_number == 3
    assert skipped[0].source == "upload.csv"


def test_empty_text_yields_empty_report() -> None:
    report = parse_csv("")

    assert report.records == []
    assert report.errors == 0


def test_plain_french_headers_match_canonical_columns() -> None:
    french = resolve_columns("Date,Dioxyde de carbone,Température,Humidité,Pression".split(","))

    assert french == resolve_columns(HEADER.split(","))


def test_unbalanced_quote_only_spoils_its_own_row() -> None:
    lines = ["date,co2,temperature,humidity,pressure", '"2024-01-01T00:00:00.000Z,400,20,45,1000']
    lines += [f"2024-01-01T00:0{minute}:00Z,40{minute},20,45,1000" for minute in range(1, 6)]

    report = parse_csv("\n".join(lines))

    assert len(report.records) == 5
    assert report.errors == 1
    assert report.issues[0].row_number == 2


def test_unbalanced_quote_in_large_file_does_not_raise() -> None:
    lines = ["date,co2,temperature,humidity,pressure", '"1704067200,400,20,45,1000']
    lines += [f"{1704067260 + index * 60},400,20,45,1000" for index in range(6000)]

    report = parse_csv("\n".join(lines))

    assert len(report.records) == 6000
    assert report.errors == 1


def test_oversized_field_is_counted_as_row_error() -> None:
    text = "\n".join(
        [
            "date,co2,temperature,humidity,pressure",
            "2024-01-01T00:00:00Z," + "9" * 200_000 + ",20,45,1000",
            "2024-01-01T00:05:00Z,410,21,46,1001",
        ]
    )

    report = parse_csv(text)

    assert len(report.records) == 1
    assert [(issue.row_number, issue.reason) for issue in report.issues] == [(2, "unreadable row")]


def test_fractional_co2_is_rejected_as_warning() -> None:
    text = "date,co2,temperature,humidity,pressure\n2024-01-01T00:00:00Z,412.7,20,45,1000\n2024-01-01T00:05:00Z,413.0,20,45,1000\n"

    report = parse_csv(text)

    assert [record.co2 for record in report.records] == [413]
    assert report.warnings == 1
    assert report.issues[0].reason == "invalid co2"
