from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_CONFIG_PATH_ENV = "SENSOR_LOGGER_CONFIG_PATH"
_DATA_DIR_ENV = "SENSOR_LOGGER_DATA_DIR"
_AUDIT_LOG_PATH_ENV = "SENSOR_LOGGER_AUDIT_LOG_PATH"
_PROBE_MODE_ENV = "SENSOR_LOGGER_PROBE_MODE"
_DS18_MAX_ENV = "SENSOR_LOGGER_DS18_MAX"
_TIMEZONE_ENV = "SENSOR_LOGGER_TIMEZONE"
_VERBOSE_MAX_BYTES_ENV = "SENSOR_LOGGER_VERBOSE_MAX_BYTES"
_LOG_LEVEL_ENV = "LOG_LEVEL"

PROBE_MODE_SERIAL = "serial"
PROBE_MODE_INDEX = "index"
PROBE_MODES = (PROBE_MODE_SERIAL, PROBE_MODE_INDEX)

DS18_MAX_DEFAULT = 16
DS18_MAX_LIMIT = 64


@dataclass(frozen=True)
class Settings:
    config_path: str
    data_dir: str
    audit_log_path: str
    probe_mode: str
    ds18_max: int
    timezone: str
    verbose_max_bytes: int
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int, maximum: Optional[int] = None) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    if parsed <= 0:
        return default
    if maximum is not None and parsed > maximum:
        return default
    return parsed


def _read_probe_mode(default: str) -> str:
    candidate = _read_str_env(_PROBE_MODE_ENV, default).lower()
    return candidate if candidate in PROBE_MODES else default


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
    data_dir = _read_str_env(_DATA_DIR_ENV, "./data")
    audit_log_path = _read_optional_env(_AUDIT_LOG_PATH_ENV, None)
    if audit_log_path is None:
        audit_log_path = os.path.join(data_dir, "log.json")
    return Settings(
        config_path=_read_str_env(_CONFIG_PATH_ENV, "./config.json"),
        data_dir=data_dir,
        audit_log_path=audit_log_path,
        probe_mode=_read_probe_mode(PROBE_MODE_SERIAL),
        ds18_max=_read_int_env(_DS18_MAX_ENV, DS18_MAX_DEFAULT, maximum=DS18_MAX_LIMIT),
        timezone=_read_str_env(_TIMEZONE_ENV, "UTC"),
        verbose_max_bytes=_read_int_env(_VERBOSE_MAX_BYTES_ENV, 100_000),
        log_level=_read_log_level("INFO"),
    )
