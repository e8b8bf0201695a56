from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_import, render_records


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for interacting with the sensor history service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def _check_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and start > end:
        raise typer.BadParameter("--start must not be after --end.")


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="HTTP timeout in seconds (defaults to CLI_TIMEOUT env or 30).",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("import")
def import_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Path to CSV file."),
    device_id: Optional[str] = typer.Option(
        None, "--device", "-d", help="Attribute imported rows to this device."
    ),
) -> None:
    """Import a CSV export into the stored history."""
    state = _get_state(ctx)
    typer.echo(f"Importing {file} into {state.config.base_url} ...")
    payload = state.client.import_file(file, device_id=device_id)
    typer.secho(f"Imported {payload.get('imported', 0)} records.", fg=typer.colors.GREEN)
    typer.echo()
    render_import(payload)


@app.command("export")
def export_command(
    ctx: typer.Context,
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", dir_okay=False, help="Write CSV here instead of stdout."
    ),
    start: Optional[datetime] = typer.Option(None, "--start", help="Earliest timestamp (inclusive)."),
    end: Optional[datetime] = typer.Option(None, "--end", help="Latest timestamp (inclusive)."),
    device_id: Optional[str] = typer.Option(None, "--device", "-d"),
) -> None:
    """Export history in the canonical CSV format."""
    _check_range(start, end)
    state = _get_state(ctx)
    body = state.client.export(start=start, end=end, device_id=device_id)
    if output is None:
        typer.echo(body)
        return
    output.write_text(body, encoding="utf-8")
    typer.secho(f"Wrote {output}", fg=typer.colors.GREEN)


@app.command("records")
def records_command(
    ctx: typer.Context,
    start: Optional[datetime] = typer.Option(None, "--start"),
    end: Optional[datetime] = typer.Option(None, "--end"),
    device_id: Optional[str] = typer.Option(None, "--device", "-d"),
    limit: int = typer.Option(20, "--limit", "-n", min=0, help="Rows to display; 0 shows all."),
) -> None:
    """Show stored measurements."""
    _check_range(start, end)
    state = _get_state(ctx)
    payload = state.client.list_records(start=start, end=end, device_id=device_id)
    render_records(payload, limit=limit)


@app.command("delete")
def delete_command(
    ctx: typer.Context,
    start: datetime = typer.Option(..., "--start", help="First timestamp to delete (inclusive)."),
    end: datetime = typer.Option(..., "--end", help="Last timestamp to delete (inclusive)."),
    device_id: Optional[str] = typer.Option(
        None, "--device", "-d", help="Only delete from this device's history."
    ),
) -> None:
    """Delete measurements within a date range."""
    _check_range(start, end)
    state = _get_state(ctx)
    deleted = state.client.delete_range(start, end, device_id=device_id)
    typer.secho(f"Deleted {deleted} records.", fg=typer.colors.GREEN)


@app.command("forget-device")
def forget_device_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device whose history should be dropped."),
) -> None:
    """Drop every measurement attributed to one device."""
    state = _get_state(ctx)
    deleted = state.client.remove_device(device_id)
    typer.secho(f"Deleted {deleted} records.", fg=typer.colors.GREEN)


@app.command("purge")
def purge_command(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete the whole history and every sync log."""
    if not yes:
        typer.confirm("Delete all stored history?", abort=True)
    state = _get_state(ctx)
    state.client.purge()
    typer.secho("History deleted.", fg=typer.colors.GREEN)
