"""Binary payload decoding for the sensor's notification channels.

All multi-byte integers on the wire are little-endian.  Entry layout shared by
the current reading and the history chunks::

    [0..2) u16 CO2 ppm
    [2..4) i16 temperature * 20
    [4..6) u16 pressure * 10
    [6]    u8 humidity %        (history 8-byte entries: [6..8) u16 humidity * 100)
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from models.records import MeasurementRecord

logger = logging.getLogger(__name__)

CURRENT_READING_MIN_LENGTH = 7
CURRENT_READING_SECONDS_LENGTH = 13
CURRENT_READING_MINUTES_LENGTH = 11

HISTORY_HEADER_LENGTH = 4
NARROW_STRIDE = 7
WIDE_STRIDE = 8

CMD_HISTORY_V2 = 0x61
CMD_SET_INTERVAL = 0x90
METRIC_CO2 = 0x04
ALLOWED_INTERVAL_MINUTES = (1, 2, 5, 10)

# Older firmware reports the interval in minutes; no supported interval in
# seconds is that short.
_MINUTES_INTERVAL_CEILING = 30

_ENTRY = struct.Struct("<HhH")
_U16 = struct.Struct("<H")
_HEADER = struct.Struct("<BHB")
_REQUEST = struct.Struct("<BBH")


@dataclass(frozen=True)
class HistoryPacket:
    """One history notification split into header fields and entry bytes."""

    metric: int
    start_index: int
    declared_count: int
    payload: bytes


def _scaled_fields(data: bytes, offset: int) -> tuple[int, float, float]:
    co2, temperature_raw, pressure_raw = _ENTRY.unpack_from(data, offset)
    return co2, temperature_raw / 20.0, pressure_raw / 10.0


def decode_current_reading(
    data: bytes, now: Optional[datetime] = None
) -> Optional[MeasurementRecord]:
    """Decode the current-reading characteristic.

    Returns ``None`` for frames shorter than seven bytes.  The reading's
    timestamp is backdated by its age when the frame carries one: seconds in
    bytes 11-12 on current firmware, ``age * interval`` minutes in bytes 9-10 on
    legacy firmware.
    """
    if len(data) < CURRENT_READING_MIN_LENGTH:
        return None

    reference = now or datetime.now(timezone.utc)
    co2, temperature, pressure = _scaled_fields(data, 0)
    humidity = float(data[6])

    timestamp = reference
    if len(data) >= CURRENT_READING_SECONDS_LENGTH:
        (age_seconds,) = _U16.unpack_from(data, 11)
        timestamp = reference - timedelta(seconds=age_seconds)
    elif len(data) >= CURRENT_READING_MINUTES_LENGTH:
        interval_minutes = data[9]
        age_minutes = data[10]
        timestamp = reference - timedelta(minutes=age_minutes * interval_minutes)

    return MeasurementRecord(
        timestamp=timestamp,
        co2=co2,
        temperature=temperature,
        humidity=humidity,
        pressure=pressure,
    )


def infer_stride(length: int) -> Optional[int]:
    if length % NARROW_STRIDE == 0:
        return NARROW_STRIDE
    if length % WIDE_STRIDE == 0:
        return WIDE_STRIDE
    return None


def decode_history_chunk(
    data: bytes, chunk_start: datetime, interval_seconds: int
) -> List[MeasurementRecord]:
    """Decode consecutive history entries starting at ``chunk_start``."""
    stride = infer_stride(len(data))
    if stride is None:
        logger.info(
            "Ignoring history chunk with unknown entry width",
            extra={"record_count": 0, "payload": data},
        )
        return []

    records: List[MeasurementRecord] = []
    for index in range(len(data) // stride):
        offset = index * stride
        co2, temperature, pressure = _scaled_fields(data, offset)
        if stride == NARROW_STRIDE:
            humidity = float(data[offset + 6])
        else:
            (humidity_raw,) = _U16.unpack_from(data, offset + 6)
            humidity = humidity_raw / 100.0
        records.append(
            MeasurementRecord(
                timestamp=chunk_start + timedelta(seconds=index * interval_seconds),
                co2=co2,
                temperature=temperature,
                humidity=humidity,
                pressure=pressure,
            )
        )
    return records


def parse_history_packet(data: bytes) -> Optional[HistoryPacket]:
    if len(data) < HISTORY_HEADER_LENGTH:
        return None
    metric, start_index, declared_count = _HEADER.unpack_from(data, 0)
    return HistoryPacket(
        metric=metric,
        start_index=start_index,
        declared_count=declared_count,
        payload=bytes(data[HISTORY_HEADER_LENGTH:]),
    )


def decode_u16(data: bytes) -> Optional[int]:
    """Decode a metadata characteristic value (total count, interval, age)."""
    if len(data) < _U16.size:
        return None
    (value,) = _U16.unpack_from(data, 0)
    return value


def normalize_interval(value: int) -> int:
    if 0 < value <= _MINUTES_INTERVAL_CEILING:
        return value * 60
    return value


def encode_history_request(start_index: int = 1, metric: int = METRIC_CO2) -> bytes:
    if not 1 <= start_index <= 0xFFFF:
        raise ValueError(f"History start index {start_index} is out of range.")
    return _REQUEST.pack(CMD_HISTORY_V2, metric, start_index)


def encode_set_interval(minutes: int) -> bytes:
    if minutes not in ALLOWED_INTERVAL_MINUTES:
        allowed = ", ".join(str(value) for value in ALLOWED_INTERVAL_MINUTES)
        raise ValueError(f"Measurement interval must be one of {allowed} minutes.")
    return bytes((CMD_SET_INTERVAL, minutes))
