"""Firmware revision and battery level reads.

Each read is tracked by an ``InfoRequest`` carrying a token and the channels
whose responses are still outstanding; a response for a channel nobody asked
about is ignored instead of completing someone else's request.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import FrozenSet, Optional
from uuid import UUID, uuid4

from services.transport import Channel

INFO_CHANNELS = frozenset({Channel.firmware_revision, Channel.battery_level})


@dataclass(frozen=True)
class DeviceInfo:
    firmware: Optional[str] = None
    battery_pct: Optional[int] = None
    interval_seconds: Optional[int] = None


@dataclass(frozen=True)
class InfoRequest:
    pending: FrozenSet[Channel]
    info: DeviceInfo = field(default_factory=DeviceInfo)
    token: UUID = field(default_factory=uuid4)

    @property
    def done(self) -> bool:
        return not self.pending


def decode_firmware(data: bytes) -> Optional[str]:
    text = data.decode("utf-8", errors="replace").strip("\x00 ").strip()
    return text or None


def decode_battery(data: bytes) -> Optional[int]:
    if not data:
        return None
    return data[0]


class DeviceInfoReader:
    """Accumulates standard characteristic reads into one ``DeviceInfo``."""

    def __init__(self) -> None:
        self._request: Optional[InfoRequest] = None

    @property
    def pending(self) -> Optional[InfoRequest]:
        return self._request

    def start(self, available: FrozenSet[Channel], interval_seconds: Optional[int]) -> InfoRequest:
        """Begin a read of whichever info channels the device exposes.

        A request for a device exposing neither channel is complete immediately.
        """
        wanted = frozenset(INFO_CHANNELS & set(available))
        request = InfoRequest(pending=wanted, info=DeviceInfo(interval_seconds=interval_seconds))
        self._request = None if request.done else request
        return request

    def resolve(self, channel: Channel, data: bytes) -> Optional[InfoRequest]:
        """Apply a response; return the request once every channel has answered."""
        request = self._request
        if request is None or channel not in request.pending:
            return None

        if channel is Channel.firmware_revision:
            info = replace(request.info, firmware=decode_firmware(data))
        else:
            info = replace(request.info, battery_pct=decode_battery(data))
        request = replace(request, pending=request.pending - {channel}, info=info)

        if request.done:
            self._request = None
            return request
        self._request = request
        return None

    def abandon(self) -> Optional[InfoRequest]:
        """Drop the outstanding request, returning whatever was read so far."""
        request, self._request = self._request, None
        return request
