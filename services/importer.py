"""CSV import and export against the history store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from datastore.history_store import HistoryStore
from storage.csv_codec import RowIssue, export_records, parse_csv

logger = logging.getLogger(__name__)


@dataclass
class ImportReport:
    """Outcome of importing one CSV document."""

    imported: int
    errors: int
    warnings: int
    issues: List[RowIssue] = field(default_factory=list)
    log_path: Optional[Path] = None


def import_text(
    store: HistoryStore,
    text: str,
    device_id: Optional[str] = None,
    source: Optional[str] = None,
    keep_log: bool = True,
) -> ImportReport:
    report = parse_csv(text, source=source)
    store.insert(report.records, device_id=device_id)

    log_path: Optional[Path] = None
    if keep_log and report.records and store.log_directory:
        try:
            log_path = store.save_log(report.records)
        except OSError:
            logger.exception("Failed to write import log", extra={"source": source})

    logger.info(
        "Import finished",
        extra={
            "source": source,
            "device_id": device_id,
            "record_count": len(report.records),
            "error_count": report.errors,
            "warning_count": report.warnings,
        },
    )
    return ImportReport(
        imported=len(report.records),
        errors=report.errors,
        warnings=report.warnings,
        issues=list(report.issues),
        log_path=log_path,
    )


def import_file(
    store: HistoryStore, path: Path, device_id: Optional[str] = None
) -> ImportReport:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{path.name} is not valid UTF-8 text.") from exc
    return import_text(store, text, device_id=device_id, source=path.name)


def export_history(
    store: HistoryStore,
    destination: Path,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    device_id: Optional[str] = None,
) -> Path:
    records = store.records_in_range(start, end, device_id=device_id)
    path = export_records(records, destination)
    logger.info(
        "Exported history",
        extra={"path": path, "device_id": device_id, "record_count": len(records)},
    )
    return path
