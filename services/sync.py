"""Sync orchestration between a device transport and the history store."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from threading import RLock
from typing import Callable, Optional

from datastore.history_store import HistoryStore
from models.records import MeasurementRecord
from services.decoder import decode_current_reading, decode_u16, encode_set_interval
from services.device_info import DeviceInfo, DeviceInfoReader, INFO_CHANNELS
from services.history_fetch import (
    ChunkArrived,
    FetchOutcome,
    FetchStatus,
    HistoryFetchCoordinator,
    MetadataArrived,
    MetadataKind,
    Tick,
    Transition,
)
from services.importer import ImportReport, export_history, import_file
from services.transport import HISTORY_CHANNELS, METADATA_CHANNELS, Channel, Transport
from settings import get_settings

logger = logging.getLogger(__name__)

DeviceIdProvider = Callable[[], Optional[str]]

_METADATA_KINDS = {
    Channel.total_readings: MetadataKind.total_readings,
    Channel.interval: MetadataKind.interval,
    Channel.seconds_since_update: MetadataKind.last_reading_age,
}


class SyncStatus(str, Enum):
    started = "started"
    not_connected = "not_connected"
    fetch_in_progress = "fetch_in_progress"


class SyncService:
    """Serializes every device event and user action on one re-entrant lock.

    Transport callbacks, scheduler ticks and imports may arrive from different
    threads; all of them go through ``_context`` so the fetch guard and the
    store's merge see a single writer.
    """

    def __init__(
        self,
        transport: Transport,
        store: HistoryStore,
        coordinator: Optional[HistoryFetchCoordinator] = None,
        device_id_provider: Optional[DeviceIdProvider] = None,
        on_fetch_finished: Optional[Callable[[FetchOutcome], None]] = None,
        on_device_info: Optional[Callable[[DeviceInfo], None]] = None,
        clock: Callable[[], datetime] = partial(datetime.now, timezone.utc),
    ) -> None:
        self.transport = transport
        self.store = store
        self.coordinator = coordinator or HistoryFetchCoordinator(
            timeout=timedelta(seconds=get_settings().fetch_timeout_seconds)
        )
        self.device_id_provider = device_id_provider or (lambda: None)
        self.on_fetch_finished = on_fetch_finished
        self.on_device_info = on_device_info
        self.clock = clock
        self.current_record: Optional[MeasurementRecord] = None
        self._info_reader = DeviceInfoReader()
        self._fetch_batch: list[MeasurementRecord] = []
        self._context = RLock()

    # -- scheduler entry point ------------------------------------------

    def sync_once(self) -> SyncStatus:
        """Run one sync cycle; suitable as a scheduler's zero-argument action.

        Reads the current value and the metadata triplet.  The backfill itself
        starts from ``on_notification`` once the metadata has arrived.
        """
        with self._context:
            self._apply(self.coordinator.handle(Tick(), now=self.clock()))

            available = set(self.transport.available_channels())
            if not available:
                logger.info("Sync skipped: device not connected", extra={"status": "not_connected"})
                return SyncStatus.not_connected
            if self.coordinator.state.is_fetching:
                return SyncStatus.fetch_in_progress

            if Channel.current_reading in available:
                self.transport.request_read(Channel.current_reading)
            for channel in METADATA_CHANNELS:
                if channel in available:
                    self.transport.request_read(channel)
            return SyncStatus.started

    # -- transport callbacks --------------------------------------------

    def on_notification(self, channel: Channel, payload: bytes) -> None:
        with self._context:
            if channel is Channel.current_reading:
                self._handle_current(payload)
            elif channel in _METADATA_KINDS:
                self._handle_metadata(channel, payload)
            elif channel is Channel.history:
                self._apply(self.coordinator.handle(ChunkArrived(bytes(payload)), now=self.clock()))
            elif channel in INFO_CHANNELS:
                self._handle_info(channel, payload)
            else:
                logger.debug("Ignoring notification", extra={"channel": channel.name})

    def on_disconnect(self) -> None:
        """Forget session metadata; a reconnect re-reads it and may fetch again."""
        with self._context:
            self.coordinator.reset()
            self._fetch_batch = []
            abandoned = self._info_reader.abandon()
            if abandoned is not None and self.on_device_info:
                self.on_device_info(abandoned.info)

    # -- user actions ----------------------------------------------------

    def set_measurement_interval(self, minutes: int) -> None:
        command = encode_set_interval(minutes)
        with self._context:
            if Channel.command not in self.transport.available_channels():
                raise RuntimeError("Device command channel is not available.")
            self.transport.write(Channel.command, command)

    def request_device_info(self) -> bool:
        """Start reading firmware and battery; returns False if nothing to read."""
        with self._context:
            available = frozenset(self.transport.available_channels())
            request = self._info_reader.start(available, self.coordinator.state.interval_seconds)
            if request.done:
                if self.on_device_info:
                    self.on_device_info(request.info)
                return False
            for channel in sorted(request.pending, key=lambda item: item.value):
                self.transport.request_read(channel)
            return True

    def import_csv(self, path: Path, device_id: Optional[str] = None) -> ImportReport:
        with self._context:
            target = device_id if device_id is not None else self.device_id_provider()
            return import_file(self.store, path, device_id=target)

    def export_history(
        self,
        destination: Path,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        device_id: Optional[str] = None,
    ) -> Path:
        with self._context:
            return export_history(self.store, destination, start=start, end=end, device_id=device_id)

    # -- internals -------------------------------------------------------

    def _ready(self) -> bool:
        return HISTORY_CHANNELS <= set(self.transport.available_channels())

    def _handle_current(self, payload: bytes) -> None:
        record = decode_current_reading(payload, now=self.clock())
        if record is None:
            logger.info(
                "Discarding short current-reading frame",
                extra={"channel": Channel.current_reading.name, "payload": payload},
            )
            return
        self.current_record = record
        self.store.insert([record], device_id=self.device_id_provider())

    def _handle_metadata(self, channel: Channel, payload: bytes) -> None:
        value = decode_u16(payload)
        if value is None:
            logger.info(
                "Discarding short metadata value",
                extra={"channel": channel.name, "payload": payload},
            )
            return
        event = MetadataArrived(_METADATA_KINDS[channel], value)
        self._apply(self.coordinator.handle(event, ready=self._ready(), now=self.clock()))

    def _handle_info(self, channel: Channel, payload: bytes) -> None:
        finished = self._info_reader.resolve(channel, payload)
        if finished is not None and self.on_device_info:
            self.on_device_info(finished.info)

    def _apply(self, result: Transition) -> None:
        if result.status is FetchStatus.requested:
            self._fetch_batch = []
        if result.command is not None:
            self.transport.write(Channel.command, result.command)
        if result.records:
            self._fetch_batch.extend(result.records)
            self.store.insert(result.records, device_id=self.device_id_provider())
        if result.outcome is not None:
            self._finish_fetch(result.outcome)

    def _finish_fetch(self, outcome: FetchOutcome) -> None:
        batch, self._fetch_batch = self._fetch_batch, []
        if batch and self.store.log_directory:
            try:
                self.store.save_log(batch)
            except OSError:
                logger.exception("Failed to write sync log", extra={"record_count": len(batch)})
        if self.on_fetch_finished:
            self.on_fetch_finished(outcome)
