"""Channel identifiers and the transport interface the sync core consumes.

Discovery, connection and reconnection belong to the transport; the core only
asks it to read or write a named channel and is told about values through
``SyncService.on_notification``.
"""

from __future__ import annotations

from enum import Enum
from typing import AbstractSet, Protocol


class Channel(str, Enum):
    """GATT characteristics exposed by the sensor."""

    current_reading = "f0cd3001-95da-4f4b-9ac8-aa55d312af0c"
    total_readings = "f0cd2001-95da-4f4b-9ac8-aa55d312af0c"
    interval = "f0cd2002-95da-4f4b-9ac8-aa55d312af0c"
    seconds_since_update = "f0cd2004-95da-4f4b-9ac8-aa55d312af0c"
    history = "f0cd2005-95da-4f4b-9ac8-aa55d312af0c"
    command = "f0cd1402-95da-4f4b-9ac8-aa55d312af0c"
    firmware_revision = "00002a26-0000-1000-8000-00805f9b34fb"
    battery_level = "00002a19-0000-1000-8000-00805f9b34fb"


METADATA_CHANNELS = (
    Channel.total_readings,
    Channel.interval,
    Channel.seconds_since_update,
)

# A backfill needs somewhere to send the request and somewhere to hear back.
HISTORY_CHANNELS = frozenset({Channel.command, Channel.history})


class Transport(Protocol):
    def available_channels(self) -> AbstractSet[Channel]:
        """Channels discovered on the connected device (empty when disconnected)."""
        ...

    def request_read(self, channel: Channel) -> None:
        """Ask for a value; it arrives later as a notification."""
        ...

    def write(self, channel: Channel, data: bytes) -> None:
        ...
