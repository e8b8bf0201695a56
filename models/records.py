"""Domain models shared across services."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from uuid import UUID, uuid4


def floor_to_second(timestamp: datetime) -> datetime:
    """Drop sub-second precision, normalizing to UTC."""

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(second_key(timestamp), tz=timezone.utc)


def second_key(timestamp: datetime) -> int:
    """Whole-second epoch key used to deduplicate readings."""

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return math.floor(timestamp.timestamp())


@dataclass(frozen=True, slots=True)
class MeasurementRecord:
    """A single environmental sample from the sensor.

    ``record_id`` is an opaque identity and takes no part in equality, so two
    records carrying the same reading compare equal.
    """

    timestamp: datetime
    co2: int
    temperature: float
    humidity: float
    pressure: float
    record_id: UUID = field(default_factory=uuid4, compare=False)

    @property
    def key(self) -> int:
        return second_key(self.timestamp)

    def with_timestamp(self, timestamp: datetime) -> "MeasurementRecord":
        return replace(self, timestamp=timestamp, record_id=uuid4())

    def normalized(self) -> "MeasurementRecord":
        """Return a replacement whose timestamp is floored to the second."""
        return self.with_timestamp(floor_to_second(self.timestamp))
