"""Flatten a decoded push payload into CSV columns and cell values."""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models.records import MappedReading
from settings import DS18_MAX_DEFAULT, PROBE_MODE_INDEX, PROBE_MODE_SERIAL, PROBE_MODES

logger = logging.getLogger(__name__)

AGGREGATE_FIELDS = ("temp", "hum", "pres")
AGGREGATE_STATS = ("min", "max", "avg")
INDEX_PROBE_STATS = ("sn", "t", "min", "max", "avg")

BASE_COLUMNS: Tuple[str, ...] = ("ts", "ts_str") + tuple(
    f"{name}_{stat}" for name in AGGREGATE_FIELDS for stat in AGGREGATE_STATS
)

_INDEX_KEYS = ("i", "idx", "index")


def normalize_value(value: Any) -> str:
    """Render a decoded JSON scalar as a CSV cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return format(Decimal(repr(value)), "f")
    if isinstance(value, str):
        return value.strip()
    return ""


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() in {"UTC", "Z"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("Unknown timezone %r, falling back to UTC", name, extra={"reason": "bad_timezone"})
        return timezone.utc


def serial_probe_columns(serial: str) -> List[str]:
    return [f"ds_{serial}_{stat}" for stat in AGGREGATE_STATS]


def index_probe_columns(index: int) -> List[str]:
    return [f"ds{index}_{stat}" for stat in INDEX_PROBE_STATS]


class PayloadMapper:
    """Maps one push document onto the column layout of a destination file.

    ``mode`` selects how DS18B20 probes are laid out: ``serial`` keys the
    columns on the probe serial number and only emits columns for probes
    present in the payload, ``index`` reserves a fixed block of
    ``ds<i>_*`` columns for ``i`` in ``1..ds18_max``.
    """

    def __init__(
        self,
        mode: str = PROBE_MODE_SERIAL,
        ds18_max: int = DS18_MAX_DEFAULT,
        tz: Optional[tzinfo] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if mode not in PROBE_MODES:
            raise ValueError(f"Unknown probe mode {mode!r}; expected one of {', '.join(PROBE_MODES)}.")
        if ds18_max <= 0:
            raise ValueError("ds18_max must be positive.")
        self.mode = mode
        self.ds18_max = ds18_max
        self.tz = tz or timezone.utc
        self._clock = clock

    def map(self, document: Dict[str, Any]) -> MappedReading:
        ts = self._event_timestamp(document.get("ts"))
        try:
            moment = datetime.fromtimestamp(ts, tz=self.tz)
        except (OverflowError, OSError, ValueError):
            ts = int(self._clock())
            moment = datetime.fromtimestamp(ts, tz=self.tz)

        ts_str = document.get("ts_str")
        values: Dict[str, str] = {
            "ts": str(ts),
            "ts_str": normalize_value(ts_str) if ts_str is not None else moment.isoformat(),
        }
        for name in AGGREGATE_FIELDS:
            for stat, cell in zip(AGGREGATE_STATS, self._nested_stats(document, name)):
                values[f"{name}_{stat}"] = cell

        columns = list(BASE_COLUMNS)
        if self.mode == PROBE_MODE_INDEX:
            self._map_indexed_probes(document.get("ds"), columns, values)
        else:
            self._map_serial_probes(document.get("ds"), columns, values)

        return MappedReading(timestamp=moment, columns=columns, values=values)

    def _event_timestamp(self, raw: Any) -> int:
        ts: Optional[int] = None
        if isinstance(raw, int) and not isinstance(raw, bool):
            ts = raw
        elif isinstance(raw, str) and raw.isascii() and raw.isdigit():
            ts = int(raw)
        if ts is None or ts <= 0:
            return int(self._clock())
        return ts

    @staticmethod
    def _nested_stats(document: Dict[str, Any], key: str) -> Tuple[str, str, str]:
        block = document.get(key)
        if not isinstance(block, dict):
            return ("", "", "")
        return tuple(normalize_value(block.get(stat)) for stat in AGGREGATE_STATS)  # type: ignore[return-value]

    def _map_serial_probes(self, probes: Any, columns: List[str], values: Dict[str, str]) -> None:
        by_serial: Dict[str, Dict[str, Any]] = {}
        if isinstance(probes, list):
            for probe in probes:
                if not isinstance(probe, dict):
                    continue
                serial = probe.get("sn")
                if not isinstance(serial, str) or serial == "":
                    continue
                # dict keeps first-seen order while the last entry wins
                by_serial[serial] = probe

        for serial, probe in by_serial.items():
            probe_columns = serial_probe_columns(serial)
            columns.extend(probe_columns)
            for column, stat in zip(probe_columns, AGGREGATE_STATS):
                values[column] = normalize_value(probe.get(stat))

    def _map_indexed_probes(self, probes: Any, columns: List[str], values: Dict[str, str]) -> None:
        for index in range(1, self.ds18_max + 1):
            columns.extend(index_probe_columns(index))

        if not isinstance(probes, list):
            return
        for position, probe in enumerate(probes, start=1):
            if not isinstance(probe, dict):
                continue
            index = self._probe_index(probe, position)
            if index is None or index <= 0:
                continue
            if index > self.ds18_max:
                logger.debug("Dropping probe index %s beyond ds18_max=%s", index, self.ds18_max)
                continue
            for column, stat in zip(index_probe_columns(index), INDEX_PROBE_STATS):
                values[column] = normalize_value(probe.get(stat))

    @staticmethod
    def _probe_index(probe: Dict[str, Any], position: int) -> Optional[int]:
        for key in _INDEX_KEYS:
            if key not in probe:
                continue
            raw = probe[key]
            if isinstance(raw, int) and not isinstance(raw, bool):
                return raw
            if isinstance(raw, str):
                candidate = raw.strip()
                if candidate.lstrip("-").isdigit():
                    return int(candidate)
            return None
        return position
