from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from itertools import count
from pathlib import Path
from threading import RLock
from typing import Dict, Iterable, List, Optional, Set, Tuple

from models.records import MeasurementRecord
from settings import get_settings
from storage.csv_codec import export_records, parse_csv

logger = logging.getLogger(__name__)

LOG_FILE_PREFIX = "sensor_log_"


def _dedup_by_second(records: Iterable[MeasurementRecord]) -> List[MeasurementRecord]:
    """Keep the last record seen for every second, sorted ascending."""
    by_key: Dict[int, MeasurementRecord] = {}
    for record in records:
        by_key[record.key] = record
    return sorted(by_key.values(), key=lambda record: record.timestamp)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _in_range(record: MeasurementRecord, start: datetime, end: datetime) -> bool:
    return start <= record.timestamp <= end


class HistoryStore:
    """Deduplicated measurement history, partitioned by logical device.

    ``records`` is the union of everything ever inserted, one record per
    second, last write wins.  ``records_by_device`` holds the same readings
    grouped by the device they were attributed to.  Every mutation rewrites
    the canonical CSV file in full; a failed write is logged and the
    in-memory state stays authoritative.
    """

    def __init__(
        self,
        history_path: Optional[Path] = None,
        log_directory: Optional[Path] = None,
    ) -> None:
        self.history_path = history_path
        self.log_directory = log_directory
        self._records: List[MeasurementRecord] = []
        self._by_device: Dict[str, List[MeasurementRecord]] = {}
        # Readings supplied without a device; these survive device-scoped deletes.
        self._unattributed: Dict[int, MeasurementRecord] = {}
        # (device or None, second) -> write sequence, so a delete can fall back
        # to the newest surviving source for that second.
        self._written: Dict[Tuple[Optional[str], int], int] = {}
        self._writes = count(1)
        self._lock = RLock()
        if log_directory:
            log_directory.mkdir(parents=True, exist_ok=True)
        if history_path:
            history_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    # -- queries ---------------------------------------------------------

    @property
    def records(self) -> List[MeasurementRecord]:
        with self._lock:
            return list(self._records)

    @property
    def records_by_device(self) -> Dict[str, List[MeasurementRecord]]:
        with self._lock:
            return {device: list(items) for device, items in self._by_device.items()}

    @property
    def device_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._by_device)

    @property
    def latest_record(self) -> Optional[MeasurementRecord]:
        with self._lock:
            return self._records[-1] if self._records else None

    def records_for(self, device_id: Optional[str]) -> List[MeasurementRecord]:
        with self._lock:
            if device_id is None:
                return list(self._records)
            return list(self._by_device.get(device_id, []))

    def records_in_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        device_id: Optional[str] = None,
    ) -> List[MeasurementRecord]:
        lower = _as_utc(start) if start else datetime.min.replace(tzinfo=timezone.utc)
        upper = _as_utc(end) if end else datetime.max.replace(tzinfo=timezone.utc)
        return [record for record in self.records_for(device_id) if _in_range(record, lower, upper)]

    # -- mutations -------------------------------------------------------

    def insert(
        self, records: Iterable[MeasurementRecord], device_id: Optional[str] = None
    ) -> None:
        incoming = [record.normalized() for record in records]
        if not incoming:
            return

        with self._lock:
            positions = {record.key: index for index, record in enumerate(self._records)}
            for record in incoming:
                index = positions.get(record.key)
                if index is not None:
                    self._records[index] = record
                else:
                    positions[record.key] = len(self._records)
                    self._records.append(record)
            self._records.sort(key=lambda record: record.timestamp)

            sequence = next(self._writes)
            for record in incoming:
                self._written[(device_id, record.key)] = sequence
            if device_id is None:
                self._unattributed.update((record.key, record) for record in incoming)
            else:
                partition = self._by_device.get(device_id, []) + incoming
                self._by_device[device_id] = _dedup_by_second(partition)

            logger.debug(
                "Inserted records",
                extra={"device_id": device_id, "record_count": len(incoming)},
            )
            self._persist()

    def delete_records(
        self, start: datetime, end: datetime, device_id: Optional[str] = None
    ) -> int:
        """Delete readings within the closed range ``[start, end]``.

        Returns how many records left the global set.
        """
        start, end = _as_utc(start), _as_utc(end)
        if start > end:
            raise ValueError("Range start must not be after range end.")

        with self._lock:
            before = len(self._records)
            if device_id is None:
                for device, items in self._by_device.items():
                    self._by_device[device] = [r for r in items if not _in_range(r, start, end)]
                self._unattributed = {
                    key: record for key, record in self._unattributed.items()
                    if not _in_range(record, start, end)
                }
                lower, upper = start.timestamp(), end.timestamp()
                self._written = {
                    source: sequence for source, sequence in self._written.items()
                    if not lower <= source[1] <= upper
                }
                self._records = [r for r in self._records if not _in_range(r, start, end)]
            else:
                items = self._by_device.get(device_id, [])
                removed = {r.key for r in items if _in_range(r, start, end)}
                if device_id in self._by_device:
                    self._by_device[device_id] = [
                        r for r in items if not _in_range(r, start, end)
                    ]
                for key in removed:
                    self._written.pop((device_id, key), None)
                self._reconcile(removed)

            deleted = before - len(self._records)
            logger.info(
                "Deleted records in range",
                extra={"device_id": device_id, "record_count": deleted},
            )
            self._persist()
            return deleted

    def remove_all(self, device_id: str) -> int:
        """Drop one device's partition; returns how many global records went with it."""
        with self._lock:
            items = self._by_device.pop(device_id, None)
            if items is None:
                raise KeyError(f"No history recorded for device {device_id!r}.")
            before = len(self._records)
            keys = {record.key for record in items}
            for key in keys:
                self._written.pop((device_id, key), None)
            self._reconcile(keys)
            deleted = before - len(self._records)
            logger.info(
                "Removed device history",
                extra={"device_id": device_id, "record_count": deleted},
            )
            self._persist()
            return deleted

    def delete_all_records(self) -> None:
        with self._lock:
            self._records = []
            self._by_device = {}
            self._unattributed = {}
            self._written = {}
            if self.history_path:
                self.history_path.unlink(missing_ok=True)
            if self.log_directory and self.log_directory.exists():
                for path in self.log_directory.iterdir():
                    if path.is_file():
                        path.unlink(missing_ok=True)
            logger.info("Deleted all history", extra={"path": self.history_path})

    def save_log(self, records: Iterable[MeasurementRecord]) -> Path:
        """Write a standalone CSV for one sync or import batch."""
        batch = list(records)
        if not batch:
            raise ValueError("No records to log.")
        if not self.log_directory:
            raise ValueError("History store has no log directory configured.")
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.log_directory / f"{LOG_FILE_PREFIX}{stamp}.csv"
        return export_records(batch, path)

    # -- internals -------------------------------------------------------

    def _reconcile(self, keys: Set[int]) -> None:
        """Recompute the global record for each of ``keys`` from the sources left.

        The most recently written surviving source wins; a second no source
        holds any more leaves the global set.
        """
        if not keys:
            return
        sources: List[Tuple[Optional[str], Dict[int, MeasurementRecord]]] = [
            (None, self._unattributed)
        ]
        for device, items in self._by_device.items():
            sources.append((device, {record.key: record for record in items}))

        survivors: Dict[int, MeasurementRecord] = {}
        for key in keys:
            best: Optional[Tuple[int, MeasurementRecord]] = None
            for source, lookup in sources:
                record = lookup.get(key)
                if record is None:
                    continue
                sequence = self._written.get((source, key), 0)
                if best is None or sequence >= best[0]:
                    best = (sequence, record)
            if best is not None:
                survivors[key] = best[1]

        self._records = [
            survivors.get(record.key, record)
            for record in self._records
            if record.key not in keys or record.key in survivors
        ]

    def _persist(self) -> None:
        if not self.history_path:
            return
        try:
            export_records(self._records, self.history_path)
        except OSError:
            logger.exception(
                "Failed to persist history; in-memory records remain authoritative",
                extra={"path": self.history_path, "record_count": len(self._records)},
            )

    def _load_from_disk(self) -> None:
        if not self.history_path or not self.history_path.exists():
            return

        try:
            text = self.history_path.read_text(encoding="utf-8")
        except OSError:
            logger.exception("Could not read history file", extra={"path": self.history_path})
            return

        report = parse_csv(text, source=self.history_path.name)
        self._records = _dedup_by_second(record.normalized() for record in report.records)
        self._unattributed = {record.key: record for record in self._records}
        logger.info(
            "Loaded history",
            extra={
                "path": self.history_path,
                "record_count": len(self._records),
                "error_count": report.errors,
                "warning_count": report.warnings,
            },
        )


@lru_cache
def build_default_store(
    history_path: Optional[str] = None,
    log_directory: Optional[str] = None,
) -> HistoryStore:
    settings = get_settings()
    history = settings.history_path if history_path is None else history_path
    logs = settings.log_directory if log_directory is None else log_directory
    return HistoryStore(
        history_path=Path(history) if history else None,
        log_directory=Path(logs) if logs else None,
    )
