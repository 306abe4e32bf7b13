"""Pydantic schemas for the HTTP API layer and the JSON files it maintains."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

SENSOR_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,32}")
_SENSOR_LIST_SPLIT = re.compile(r"[,\s;]+")


class ErrorCode(str, Enum):
    """Machine-readable ``error`` values returned to devices."""

    unauthorized = "unauthorized"
    forbidden = "forbidden"
    invalid_sensor_id = "missing_or_invalid_sensor_id"
    sensor_not_allowed = "sensor_not_allowed"
    invalid_json = "invalid_json"
    rate_limited = "rate_limited"
    cannot_create_data_dir = "cannot_create_data_dir"
    cannot_open_lock = "cannot_open_lock"
    cannot_lock = "cannot_lock"
    bad_header = "bad_header"
    csv_rewrite_failed = "csv_rewrite_failed"
    cannot_open_csv = "cannot_open_csv"
    internal_error = "internal_error"


class IngestOutcome(BaseModel):
    """Result of one push, serialised as the response body."""

    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    sensor_id: Optional[str] = Field(default=None, alias="sensorID")
    file: Optional[str] = None
    error: Optional[str] = None
    retry_after: Optional[int] = Field(default=None, ge=0)
    missing: Optional[str] = None
    status_code: int = Field(default=200, exclude=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AuditEntry(BaseModel):
    """One line of the server audit log."""

    model_config = ConfigDict(populate_by_name=True)

    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}$")
    type: str
    api_key_id: Union[str, Literal[False]] = Field(default=False, alias="apiKeyId")
    details: str = ""
    verbose: Optional[str] = None


class ApiKeyRecord(BaseModel):
    """An API key as stored in the key configuration file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    hash: str = ""
    allowed_sensor_ids: List[str] = Field(default_factory=list, alias="allowedSensorIDs")
    can_push_data: bool = Field(default=False, alias="canPushData")
    max_update_rate: int = Field(default=0, alias="maxUpdateRate")
    csv_dir: Optional[str] = Field(default=None, alias="csvDir")

    @field_validator("allowed_sensor_ids", mode="before")
    @classmethod
    def _parse_sensor_list(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            value = _SENSOR_LIST_SPLIT.split(value)
        if not isinstance(value, list):
            return []
        sensors: List[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            candidate = item.strip()
            if SENSOR_ID_PATTERN.fullmatch(candidate) and candidate not in sensors:
                sensors.append(candidate)
        return sensors

    @field_validator("max_update_rate", mode="before")
    @classmethod
    def _clamp_rate(cls, value: Any) -> int:
        try:
            rate = int(value)
        except (TypeError, ValueError):
            return 0
        return rate if rate > 0 else 0
