"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from models.records import MeasurementRecord
from services.importer import ImportReport


class RecordOut(BaseModel):
    """One stored measurement."""

    timestamp: datetime
    co2: int = Field(..., description="Carbon dioxide concentration in ppm.")
    temperature: float = Field(..., description="Degrees Celsius.")
    humidity: float = Field(..., description="Relative humidity in percent.")
    pressure: float = Field(..., description="Pressure in hectopascals.")

    @classmethod
    def from_record(cls, record: MeasurementRecord) -> "RecordOut":
        return cls(
            timestamp=record.timestamp,
            co2=record.co2,
            temperature=record.temperature,
            humidity=record.humidity,
            pressure=record.pressure,
        )


class RecordsResponse(BaseModel):
    device_id: Optional[str] = None
    count: int = Field(..., ge=0)
    records: List[RecordOut] = Field(default_factory=list)


class RowIssueOut(BaseModel):
    """A row skipped during import."""

    row_number: int = Field(..., ge=1)
    severity: str
    reason: str


class ImportResponse(BaseModel):
    imported: int = Field(..., ge=0)
    errors: int = Field(..., ge=0)
    warnings: int = Field(..., ge=0)
    issues: List[RowIssueOut] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: ImportReport) -> "ImportResponse":
        return cls(
            imported=report.imported,
            errors=report.errors,
            warnings=report.warnings,
            issues=[
                RowIssueOut(
                    row_number=issue.row_number,
                    severity=issue.severity.value,
                    reason=issue.reason,
                )
                for issue in report.issues
            ],
        )


class DeleteResponse(BaseModel):
    deleted: int = Field(..., ge=0, description="Records removed from the global history.")


class DevicesResponse(BaseModel):
    devices: List[str] = Field(default_factory=list)
