from __future__ import annotations

from pathlib import Path
from typing import Iterable

from datastore.audit_log import build_default_audit_log
from datastore.key_store import build_default_key_store
from services.ingestion import build_default_coordinator
from settings import get_settings


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


CACHES = (get_settings, build_default_key_store, build_default_audit_log, build_default_coordinator)


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    config_path = tmp_path / "keys.json"
    audit_path = tmp_path / "audit" / "log.json"

    monkeypatch.setenv("SENSOR_LOGGER_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("SENSOR_LOGGER_DATA_DIR", str(tmp_path / "csv"))
    monkeypatch.setenv("SENSOR_LOGGER_AUDIT_LOG_PATH", str(audit_path))
    monkeypatch.setenv("SENSOR_LOGGER_PROBE_MODE", "INDEX")
    monkeypatch.setenv("SENSOR_LOGGER_DS18_MAX", "8")
    monkeypatch.setenv("SENSOR_LOGGER_VERBOSE_MAX_BYTES", "512")
    _clear_caches(CACHES)

    try:
        key_store = build_default_key_store()
        audit_log = build_default_audit_log()
        coordinator = build_default_coordinator()

        assert key_store.config_path == config_path
        assert key_store.data_dir_default == str(tmp_path / "csv")
        assert audit_log.persistence_path == audit_path
        assert audit_log.verbose_max_bytes == 512
        assert coordinator.mapper.mode == "index"
        assert coordinator.mapper.ds18_max == 8
        assert coordinator.audit_log is audit_log
    finally:
        _clear_caches(CACHES)


def test_invalid_values_fall_back_to_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("SENSOR_LOGGER_DATA_DIR", str(tmp_path / "csv"))
    monkeypatch.setenv("SENSOR_LOGGER_PROBE_MODE", "by-colour")
    monkeypatch.setenv("SENSOR_LOGGER_DS18_MAX", "65")
    monkeypatch.setenv("SENSOR_LOGGER_VERBOSE_MAX_BYTES", "-1")
    monkeypatch.setenv("SENSOR_LOGGER_TIMEZONE", "  ")
    monkeypatch.delenv("SENSOR_LOGGER_AUDIT_LOG_PATH", raising=False)
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.probe_mode == "serial"
        assert settings.ds18_max == 16
        assert settings.verbose_max_bytes == 100_000
        assert settings.timezone == "UTC"
        assert Path(settings.audit_log_path) == tmp_path / "csv" / "log.json"
    finally:
        get_settings.cache_clear()
