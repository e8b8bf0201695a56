"""Command-line client for the sensor history service; the Typer app lives in ``cli.app``."""
