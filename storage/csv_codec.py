"""CSV serialization of measurement records.

The canonical format is what the history file and every export use::

    date,co2,temperature,humidity,pressure
    2024-01-01T00:00:00.000Z,412,21.50,40.00,1013.20

Parsing is deliberately lenient so that exports from the vendor's mobile app
(comma, semicolon or tab separated, English or French headers, unit suffixes)
can be imported as well.
"""

from __future__ import annotations

import csv
import logging
import math
import os
import re
import tempfile
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from models.records import MeasurementRecord

logger = logging.getLogger(__name__)

HEADER = "date,co2,temperature,humidity,pressure"
FIELDS = ("date", "co2", "temperature", "humidity", "pressure")

_DELIMITERS = (",", ";", "\t")

# Matched as prefixes of the normalized header token.  Fields are tried in
# FIELDS order, so "timestamp" resolves to date before anything else sees it.
_SYNONYMS: Dict[str, tuple[str, ...]] = {
    "date": ("date", "datetime", "timestamp", "time", "heure", "horodatage", "iso", "epoch"),
    "co2": ("co2", "carbondioxide", "dioxydedecarbone", "dioxydecarbone", "carbone", "ppm"),
    "temperature": ("temperature", "temp", "degc", "degf"),
    "humidity": ("humidity", "relativehumidity", "humidite", "hum", "rh"),
    "pressure": (
        "pressure",
        "atmosphericpressure",
        "barometricpressure",
        "pression",
        "baro",
        "press",
        "hpa",
        "kpa",
    ),
}

_FALLBACK_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
)

# Interpreted in the machine's local timezone, as the vendor app writes them.
_LOCAL_DATE_FORMATS = (
    "%d/%m/%Y %H:%M",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
)

_EPOCH_MILLIS_THRESHOLD = 100_000_000_000


class IssueSeverity(str, Enum):
    error = "error"
    warning = "warning"


@dataclass(frozen=True)
class RowIssue:
    row_number: int
    severity: IssueSeverity
    reason: str


@dataclass
class ParseReport:
    records: List[MeasurementRecord] = field(default_factory=list)
    errors: int = 0
    warnings: int = 0
    issues: List[RowIssue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Export


def _format_timestamp(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    utc = timestamp.astimezone(timezone.utc)
    return f"{utc.strftime('%Y-%m-%dT%H:%M:%S')}.{utc.microsecond // 1000:03d}Z"


def format_records(records: Iterable[MeasurementRecord]) -> str:
    ordered = sorted(records, key=lambda record: record.timestamp)
    rows = [HEADER]
    for record in ordered:
        rows.append(
            f"{_format_timestamp(record.timestamp)},{record.co2},"
            f"{record.temperature:.2f},{record.humidity:.2f},{record.pressure:.2f}"
        )
    return "\n".join(rows)


def export_records(records: Iterable[MeasurementRecord], destination: Path) -> Path:
    """Write records to ``destination`` atomically and return the path."""
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    payload = format_records(records).encode("utf-8")

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return destination


# ---------------------------------------------------------------------------
# Import


def _strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def normalize_header(value: str) -> str:
    """Case-fold, drop accents and keep only ASCII letters and digits."""
    folded = _strip_diacritics(value.strip()).casefold()
    return re.sub(r"[^0-9a-z]", "", folded)


def detect_delimiter(line: str) -> Optional[str]:
    counts = {delimiter: line.count(delimiter) for delimiter in _DELIMITERS}
    best = max(_DELIMITERS, key=lambda delimiter: counts[delimiter])
    return best if counts[best] else None


def resolve_columns(headers: Sequence[str]) -> Dict[str, int]:
    columns: Dict[str, int] = {}
    for index, raw in enumerate(headers):
        token = normalize_header(raw)
        if not token:
            continue
        for name in FIELDS:
            if name in columns:
                continue
            if any(token.startswith(synonym) for synonym in _SYNONYMS[name]):
                columns[name] = index
                break
    return columns


def unit_hint(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    text = re.sub(r"\s+", "", _strip_diacritics(header).casefold())
    if "kpa" in text:
        return "kpa"
    if "hpa" in text:
        return "hpa"
    if "(pa)" in text or "[pa]" in text or text.endswith("pa"):
        return "pa"
    if "°f" in text or "degf" in text or "fahrenheit" in text or "(f)" in text:
        return "f"
    if "°c" in text or "degc" in text or "celsius" in text or "(c)" in text:
        return "c"
    if "%" in text or "percent" in text or "pct" in text:
        return "%"
    return None


def parse_timestamp(value: str) -> datetime:
    """Parse a date cell into an aware UTC datetime.

    Tried in order: epoch seconds (milliseconds above 1e11), ISO-8601, the
    fixed UTC fallback patterns, then day/month/year patterns in local time.
    """
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    try:
        number = float(candidate)
    except ValueError:
        number = None
    if number is not None:
        if not math.isfinite(number):
            raise ValueError(f"Invalid epoch value {candidate!r}")
        seconds = number / 1000.0 if abs(number) > _EPOCH_MILLIS_THRESHOLD else number
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"Epoch value out of range: {candidate!r}") from exc

    iso_candidate = candidate[:-1] + "+00:00" if candidate.endswith("Z") else candidate
    try:
        parsed = datetime.fromisoformat(iso_candidate)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    for pattern in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(candidate, pattern).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    for pattern in _LOCAL_DATE_FORMATS:
        try:
            local = datetime.strptime(candidate, pattern).astimezone()
        except ValueError:
            continue
        return local.astimezone(timezone.utc)

    raise ValueError(f"Unrecognized timestamp format: {candidate!r}")


def parse_number(value: str) -> float:
    candidate = re.sub(r"\s+", "", value).replace(",", ".")
    if not candidate:
        raise ValueError("Value is empty.")
    number = float(candidate)
    if not math.isfinite(number):
        raise ValueError(f"Value is not finite: {value!r}")
    return number


def normalize_temperature(value: float, hint: Optional[str]) -> float:
    if hint == "f":
        return (value - 32.0) * 5.0 / 9.0
    return value


def normalize_humidity(value: float, hint: Optional[str]) -> float:
    if hint != "%" and 0.0 <= value <= 1.0:
        return value * 100.0
    return value


def normalize_pressure(value: float, hint: Optional[str]) -> float:
    if hint == "kpa":
        return value * 10.0
    if hint == "pa":
        return value / 100.0
    if hint == "hpa":
        return value
    if value < 20.0:
        return value * 10.0
    return value


def _split_line(line: str, delimiter: str) -> List[str]:
    # One physical line per row; an unbalanced quote must not swallow the rows after it.
    return next(csv.reader([line], delimiter=delimiter), [])


def _cell(row: Sequence[str], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    return row[index].strip()


def parse_csv(text: str, source: Optional[str] = None) -> ParseReport:
    """Parse CSV text into records, counting rejected rows instead of raising."""
    report = ParseReport()

    lines = text.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return report

    header_line = lines[0].lstrip("\ufeff")
    data_lines = lines[1:]
    delimiter = detect_delimiter(header_line)
    if delimiter is None and data_lines:
        delimiter = detect_delimiter(data_lines[0])
    delimiter = delimiter or ","

    try:
        header_cells = _split_line(header_line, delimiter)
    except csv.Error:
        header_cells = header_line.split(delimiter)
    headers = [cell.strip() for cell in header_cells]
    columns = resolve_columns(headers)
    if len(columns) < len(FIELDS) and len(headers) == len(FIELDS):
        columns = {name: index for index, name in enumerate(FIELDS)}

    def header_for(name: str) -> Optional[str]:
        index = columns.get(name)
        return headers[index] if index is not None else None

    temperature_hint = unit_hint(header_for("temperature"))
    humidity_hint = unit_hint(header_for("humidity"))
    pressure_hint = unit_hint(header_for("pressure"))

    def reject(row_number: int, severity: IssueSeverity, reason: str) -> None:
        if severity is IssueSeverity.error:
            report.errors += 1
        else:
            report.warnings += 1
        report.issues.append(RowIssue(row_number=row_number, severity=severity, reason=reason))
        logger.warning(
            "Skipping row: %s",
            reason,
            extra={
                "source": source,
                "row_number": row_number,
                "reason": reason,
                "status": severity.value,
            },
        )

    for row_number, line in enumerate(data_lines, start=2):
        if not line.strip():
            continue
        try:
            row = _split_line(line, delimiter)
        except csv.Error:
            reject(row_number, IssueSeverity.error, "unreadable row")
            continue
        if not any(cell.strip() for cell in row):
            continue

        date_raw = _cell(row, columns.get("date"))
        if not date_raw:
            reject(row_number, IssueSeverity.error, "missing date")
            continue
        try:
            timestamp = parse_timestamp(date_raw)
        except ValueError:
            reject(row_number, IssueSeverity.error, "invalid date")
            continue

        values: Dict[str, float] = {}
        for name in FIELDS[1:]:
            raw = _cell(row, columns.get(name))
            if not raw:
                reject(row_number, IssueSeverity.warning, f"missing {name}")
                break
            try:
                number = parse_number(raw)
            except ValueError:
                reject(row_number, IssueSeverity.warning, f"invalid {name}")
                break
            # CO2 is a whole ppm count
            if name == "co2" and not number.is_integer():
                reject(row_number, IssueSeverity.warning, "invalid co2")
                break
            values[name] = number
        else:
            report.records.append(
                MeasurementRecord(
                    timestamp=timestamp,
                    co2=int(values["co2"]),
                    temperature=normalize_temperature(values["temperature"], temperature_hint),
                    humidity=normalize_humidity(values["humidity"], humidity_hint),
                    pressure=normalize_pressure(values["pressure"], pressure_hint),
                )
            )

    return report
