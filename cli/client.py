from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig


def _range_params(
    start: Optional[datetime],
    end: Optional[datetime],
    device_id: Optional[str],
) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if start is not None:
        params["start"] = start.isoformat()
    if end is not None:
        params["end"] = end.isoformat()
    if device_id:
        params["device_id"] = device_id
    return params


class ApiClient:
    """Minimal HTTP client for the history service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def import_file(self, path: Path, device_id: Optional[str] = None) -> Dict[str, Any]:
        if not path.exists():
            raise typer.BadParameter(f"File {path} does not exist.")
        if not path.is_file():
            raise typer.BadParameter(f"Path {path} is not a file.")

        params = {"device_id": device_id} if device_id else None
        try:
            with path.open("rb") as handle:
                response = self._client.post(
                    "/imports",
                    params=params,
                    files={"file": (path.name, handle, "text/csv")},
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def export(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        device_id: Optional[str] = None,
    ) -> str:
        try:
            response = self._client.get("/export", params=_range_params(start, end, device_id))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.text

    def list_records(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        device_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = self._client.get("/records", params=_range_params(start, end, device_id))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def delete_range(
        self, start: datetime, end: datetime, device_id: Optional[str] = None
    ) -> int:
        try:
            response = self._client.delete("/records", params=_range_params(start, end, device_id))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return int(response.json().get("deleted", 0))

    def remove_device(self, device_id: str) -> int:
        try:
            response = self._client.delete(f"/devices/{device_id}/records")
            if response.status_code == 404:
                raise typer.BadParameter(f"Device {device_id} has no history.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return int(response.json().get("deleted", 0))

    def purge(self) -> None:
        try:
            response = self._client.delete("/history")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
        except ValueError:
            detail = exc.response.text.strip()
        else:
            detail = data.get("detail") if isinstance(data, dict) else data
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
