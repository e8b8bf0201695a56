from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
import typer
from typer.testing import CliRunner

from cli.app import app
from cli.client import ApiClient
from cli.config import load_config


class StubClient:
    def __init__(self, config) -> None:
        self.config = config
        self.imported: Optional[tuple[Path, Optional[str]]] = None
        self.deleted_ranges: List[tuple[datetime, datetime, Optional[str]]] = []
        self.removed_devices: List[str] = []
        self.purged = False
        self.closed = False
        self.import_payload: Dict[str, Any] = {
            "imported": 2,
            "errors": 1,
            "warnings": 0,
            "issues": [{"row_number": 4, "severity": "error", "reason": "invalid date"}],
        }
        self.records_payload: Dict[str, Any] = {
            "device_id": None,
            "count": 2,
            "records": [
                {
                    "timestamp": "2024-01-01T00:00:00Z",
                    "co2": 400,
                    "temperature": 20.0,
                    "humidity": 45.0,
                    "pressure": 1000.0,
                },
                {
                    "timestamp": "2024-01-01T00:05:00Z",
                    "co2": 410,
                    "temperature": 21.0,
                    "humidity": 46.0,
                    "pressure": 1001.0,
                },
            ],
        }

    def import_file(self, path: Path, device_id: Optional[str] = None) -> Dict[str, Any]:
        self.imported = (path, device_id)
        return self.import_payload

    def export(self, start=None, end=None, device_id=None) -> str:
        return "date,co2,temperature,humidity,pressure\n2024-01-01T00:00:00.000Z,400,20.00,45.00,1000.00"

    def list_records(self, start=None, end=None, device_id=None) -> Dict[str, Any]:
        return self.records_payload

    def delete_range(self, start: datetime, end: datetime, device_id: Optional[str] = None) -> int:
        self.deleted_ranges.append((start, end, device_id))
        return 3

    def remove_device(self, device_id: str) -> int:
        self.removed_devices.append(device_id)
        return 5

    def purge(self) -> None:
        self.purged = True

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def stub(monkeypatch) -> StubClient:
    client = StubClient(config=None)

    def factory(config):
        client.config = config
        return client

    monkeypatch.setattr("cli.app.ApiClient", factory)
    return client


def test_import_command(stub: StubClient, runner: CliRunner, tmp_path) -> None:
    csv_path = tmp_path / "data.csv"
    csv_path.write_text("date,co2,temperature,humidity,pressure\n")

    result = runner.invoke(app, ["import", str(csv_path), "--device", "kitchen"])

    assert result.exit_code == 0
    assert "Imported 2 records." in result.stdout
    assert "row 4 [error]: invalid date" in result.stdout
    assert stub.imported == (csv_path, "kitchen")
    assert stub.closed is True


def test_export_to_file(stub: StubClient, runner: CliRunner, tmp_path) -> None:
    output = tmp_path / "export.csv"

    result = runner.invoke(app, ["export", "--output", str(output)])

    assert result.exit_code == 0
    assert output.read_text(encoding="utf-8").startswith("date,co2")


def test_export_to_stdout(stub: StubClient, runner: CliRunner) -> None:
    result = runner.invoke(app, ["export"])

    assert result.exit_code == 0
    assert "2024-01-01T00:00:00.000Z,400" in result.stdout


def test_records_command_limits_rows(stub: StubClient, runner: CliRunner) -> None:
    result = runner.invoke(app, ["records", "--limit", "1"])

    assert result.exit_code == 0
    assert "count: 2" in result.stdout
    assert "co2=410" in result.stdout
    assert "co2=400" not in result.stdout
    assert "1 earlier records not shown" in result.stdout


def test_delete_command(stub: StubClient, runner: CliRunner) -> None:
    result = runner.invoke(
        app,
        ["delete", "--start", "2024-01-01T00:00:00", "--end", "2024-01-02T00:00:00", "-d", "kitchen"],
    )

    assert result.exit_code == 0
    assert "Deleted 3 records." in result.stdout
    assert stub.deleted_ranges == [
        (datetime(2024, 1, 1), datetime(2024, 1, 2), "kitchen"),
    ]


def test_delete_rejects_inverted_range(stub: StubClient, runner: CliRunner) -> None:
    result = runner.invoke(
        app,
        ["delete", "--start", "2024-01-02", "--end", "2024-01-01"],
    )

    assert result.exit_code != 0
    assert stub.deleted_ranges == []


def test_forget_device_command(stub: StubClient, runner: CliRunner) -> None:
    result = runner.invoke(app, ["forget-device", "kitchen"])

    assert result.exit_code == 0
    assert stub.removed_devices == ["kitchen"]


def test_purge_requires_confirmation(stub: StubClient, runner: CliRunner) -> None:
    declined = runner.invoke(app, ["purge"], input="n\n")
    assert declined.exit_code != 0
    assert stub.purged is False

    accepted = runner.invoke(app, ["purge", "--yes"])
    assert accepted.exit_code == 0
    assert stub.purged is True


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://sensors.local:9000/")
    monkeypatch.setenv("CLI_TIMEOUT", "nope")

    config = load_config()

    assert config.base_url == "http://sensors.local:9000"
    assert config.timeout == 30.0


def test_http_errors_exit_with_detail(capsys) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"detail": "Uploaded file is empty."})

    client = ApiClient(load_config(base_url="http://testserver"))
    client._client = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(typer.Exit) as excinfo:
            client.purge()
    finally:
        client.close()

    assert excinfo.value.exit_code == 1
    assert "Uploaded file is empty." in capsys.readouterr().err
