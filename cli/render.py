from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_import(payload: Dict[str, Any]) -> None:
    echo_heading("Import Result")
    echo_key_values(
        [
            ("imported", payload.get("imported")),
            ("errors", payload.get("errors")),
            ("warnings", payload.get("warnings")),
        ]
    )

    issues = payload.get("issues") or []
    typer.echo()
    echo_heading("Skipped Rows")
    if issues:
        for issue in issues:
            typer.echo(
                f"  - row {issue.get('row_number')} [{issue.get('severity')}]: {issue.get('reason')}"
            )
    else:
        typer.echo("No rows skipped.")


def render_records(payload: Dict[str, Any], limit: int = 20) -> None:
    records = payload.get("records") or []
    heading = "Records"
    if payload.get("device_id"):
        heading = f"Records for {payload['device_id']}"
    echo_heading(heading)
    typer.echo(f"count: {payload.get('count', len(records))}")
    if not records:
        typer.echo("No records stored.")
        return

    # newest last, so show the tail
    shown = records[-limit:] if limit > 0 else records
    for record in shown:
        typer.echo(
            "  {timestamp}  co2={co2}  t={temperature}  rh={humidity}  p={pressure}".format(
                **record
            )
        )
    if len(shown) < len(records):
        typer.echo(f"  ... {len(records) - len(shown)} earlier records not shown")
