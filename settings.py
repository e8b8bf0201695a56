from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_HISTORY_PATH_ENV = "SENSOR_HISTORY_PATH"
_LOG_DIR_ENV = "SENSOR_LOG_DIR"
_FETCH_TIMEOUT_ENV = "HISTORY_FETCH_TIMEOUT_SECONDS"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    history_path: Optional[str]
    log_directory: Optional[str]
    fetch_timeout_seconds: float
    log_level: str


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_timeout(default: float) -> float:
    value = os.getenv(_FETCH_TIMEOUT_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        history_path=_read_optional_env(_HISTORY_PATH_ENV, "./tmp/history_full.csv"),
        log_directory=_read_optional_env(_LOG_DIR_ENV, "./tmp/csv_logs"),
        fetch_timeout_seconds=_read_timeout(120.0),
        log_level=_read_log_level("INFO"),
    )
