"""HTTP route definitions for the service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import PlainTextResponse

from app.schemas import (
    DeleteResponse,
    DevicesResponse,
    ImportResponse,
    RecordOut,
    RecordsResponse,
)
from datastore.history_store import HistoryStore, build_default_store
from services.importer import import_text
from storage.csv_codec import format_records

router = APIRouter()


def get_store() -> HistoryStore:
    return build_default_store()


def _utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _check_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and _utc(start) > _utc(end):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Range start must not be after range end.",
        )


@router.get(
    "/records",
    response_model=RecordsResponse,
    summary="List stored measurements, optionally for one device and date range.",
)
async def list_records(
    device_id: Optional[str] = Query(None, description="Logical device identifier."),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    store: HistoryStore = Depends(get_store),
) -> RecordsResponse:
    _check_range(start, end)
    records = store.records_in_range(start, end, device_id=device_id)
    return RecordsResponse(
        device_id=device_id,
        count=len(records),
        records=[RecordOut.from_record(record) for record in records],
    )


@router.get(
    "/devices",
    response_model=DevicesResponse,
    summary="List devices with attributed history.",
)
async def list_devices(store: HistoryStore = Depends(get_store)) -> DevicesResponse:
    return DevicesResponse(devices=store.device_ids)


@router.post(
    "/imports",
    response_model=ImportResponse,
    summary="Import a CSV export into the history.",
)
async def import_csv(
    file: UploadFile = File(..., description="CSV file containing measurements."),
    device_id: Optional[str] = Query(None, description="Attribute rows to this device."),
    store: HistoryStore = Depends(get_store),
) -> ImportResponse:
    try:
        contents = await file.read()
    finally:
        await file.close()
    if not contents:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty.",
        )
    try:
        text = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is not valid UTF-8.",
        ) from exc

    report = import_text(store, text, device_id=device_id, source=file.filename)
    return ImportResponse.from_report(report)


@router.get(
    "/export",
    response_class=PlainTextResponse,
    summary="Export measurements in the canonical CSV format.",
)
async def export_csv(
    device_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    store: HistoryStore = Depends(get_store),
) -> PlainTextResponse:
    _check_range(start, end)
    records = store.records_in_range(start, end, device_id=device_id)
    return PlainTextResponse(
        format_records(records),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="history.csv"'},
    )


@router.delete(
    "/records",
    response_model=DeleteResponse,
    summary="Delete measurements within a closed date range.",
)
async def delete_records(
    start: datetime = Query(...),
    end: datetime = Query(...),
    device_id: Optional[str] = Query(None),
    store: HistoryStore = Depends(get_store),
) -> DeleteResponse:
    try:
        deleted = store.delete_records(_utc(start), _utc(end), device_id=device_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return DeleteResponse(deleted=deleted)


@router.delete(
    "/devices/{device_id}/records",
    response_model=DeleteResponse,
    summary="Drop every measurement attributed to one device.",
)
async def delete_device_records(
    device_id: str,
    store: HistoryStore = Depends(get_store),
) -> DeleteResponse:
    try:
        deleted = store.remove_all(device_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc
    return DeleteResponse(deleted=deleted)


@router.delete(
    "/history",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete the whole history and every sync log.",
)
async def delete_history(store: HistoryStore = Depends(get_store)) -> None:
    store.delete_all_records()


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
