"""Write path for pushed sensor readings."""

from __future__ import annotations

import json
import logging
import time
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from app.schemas import SENSOR_ID_PATTERN, ErrorCode, IngestOutcome
from datastore.audit_log import AuditLog, build_default_audit_log
from models.records import MappedReading, Principal
from services.errors import IngestionError, StorageError
from services.payload import PayloadMapper, resolve_timezone
from services.schema import SchemaDecision, resolve_schema
from settings import get_settings
from storage.csv_store import CsvStore, build_default_store

logger = logging.getLogger(__name__)

ACTION = "push"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Unsupported JSON constant {name}")


class IngestionCoordinator:
    """Validates a push, resolves its destination file and appends the row.

    Every call returns an :class:`IngestOutcome` and writes one audit entry;
    nothing raised inside the write path escapes :meth:`ingest`.
    """

    def __init__(
        self,
        store: CsvStore,
        audit_log: AuditLog,
        mapper: PayloadMapper,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.audit_log = audit_log
        self.mapper = mapper
        self._clock = clock

    def ingest(
        self,
        principal: Principal,
        sensor_id: Optional[str],
        raw_body: Union[bytes, str, None],
    ) -> IngestOutcome:
        """Store one reading for ``sensor_id`` on behalf of ``principal``."""
        try:
            return self._ingest(principal, sensor_id, raw_body)
        except IngestionError as exc:
            verbose = exc.extra.pop("verbose", None)
            logger.warning(
                "Push rejected",
                extra={
                    "api_key_id": principal.id,
                    "sensor_id": sensor_id,
                    "error_code": exc.code,
                    "retry_after": exc.extra.get("retry_after"),
                },
            )
            self._audit(exc.audit_type, principal.id, exc.detail, verbose=verbose)
            return IngestOutcome(ok=False, error=exc.code, status_code=exc.status_code, **exc.extra)
        except StorageError as exc:
            logger.error(
                "Push failed while writing CSV: %s",
                exc.detail,
                extra={"api_key_id": principal.id, "sensor_id": sensor_id, "error_code": exc.code},
            )
            audit_type = (
                "error-push-storage" if exc.code == ErrorCode.cannot_create_data_dir.value else "error-push-write"
            )
            self._audit(audit_type, principal.id, f"{exc.code}: {exc.detail}")
            return IngestOutcome(ok=False, error=exc.code, status_code=500)
        except Exception as exc:  # pragma: no cover - defensive catch-all
            logger.exception(
                "Unexpected failure while storing push",
                extra={"api_key_id": principal.id, "sensor_id": sensor_id},
            )
            self._audit("error-push-write", principal.id, f"{ErrorCode.internal_error.value}: {exc}")
            return IngestOutcome(ok=False, error=ErrorCode.internal_error.value, status_code=500)

    def _ingest(
        self,
        principal: Principal,
        raw_sensor_id: Optional[str],
        raw_body: Union[bytes, str, None],
    ) -> IngestOutcome:
        if not principal.can_push:
            raise IngestionError(
                ErrorCode.forbidden.value,
                403,
                f"Missing permission canPushData for action={ACTION}",
                extra={"missing": "canPushData"},
                audit_type="error-forbidden",
            )

        sensor_id = (raw_sensor_id or "").strip()
        if not SENSOR_ID_PATTERN.fullmatch(sensor_id):
            raise IngestionError(
                ErrorCode.invalid_sensor_id.value,
                400,
                ErrorCode.invalid_sensor_id.value,
                audit_type="error-push-invalid-sensorID",
            )

        if sensor_id not in principal.allowed_sensor_ids:
            raise IngestionError(
                ErrorCode.sensor_not_allowed.value,
                403,
                f"sensorID not allowed: {sensor_id} action={ACTION}",
                extra={"sensor_id": sensor_id},
                audit_type="error-sensor-not-allowed",
            )

        document = self._decode(raw_body)
        reading = self.mapper.map(document)

        directory = Path(principal.storage_dir)
        self.store.ensure_directory(directory)
        path = self.store.destination_path(directory, reading.timestamp.strftime("%Y-%m"), sensor_id)

        self._check_rate_limit(principal, sensor_id, path)

        with self.store.exclusive_lock(path):
            self._write(path, reading)

        logger.info(
            "Stored reading",
            extra={"api_key_id": principal.id, "sensor_id": sensor_id, "file_name": path.name},
        )
        self._audit("success-push", principal.id, f"sensorID={sensor_id} file={path.name}")
        return IngestOutcome(ok=True, sensor_id=sensor_id, file=path.name)

    def _decode(self, raw_body: Union[bytes, str, None]) -> Dict[str, Any]:
        document: Any = None
        if raw_body:
            try:
                document = json.loads(raw_body, parse_constant=_reject_constant)
            except (ValueError, RecursionError):
                document = None
        if isinstance(document, dict):
            return document

        if isinstance(raw_body, bytes):
            verbose = raw_body.decode("utf-8", errors="replace")
        else:
            verbose = raw_body or ""
        raise IngestionError(
            ErrorCode.invalid_json.value,
            400,
            ErrorCode.invalid_json.value,
            extra={"verbose": verbose},
            audit_type="error-push-invalid-json",
        )

    def _check_rate_limit(self, principal: Principal, sensor_id: str, path: Path) -> None:
        max_rate = max(principal.max_update_rate, 0)
        if max_rate == 0:
            return
        last_modified = self.store.last_modified(path)
        if last_modified is None:
            return
        delta = int(self._clock()) - int(last_modified)
        if delta < max_rate:
            retry_after = max_rate - delta
            raise IngestionError(
                ErrorCode.rate_limited.value,
                429,
                f"rate_limited sensorID={sensor_id} retry_after={retry_after}",
                extra={"retry_after": retry_after},
                audit_type="error-push-rate-limited",
            )

    def _write(self, path: Path, reading: MappedReading) -> None:
        existing_header = self.store.read_header(path)
        duplicate_header = bool(existing_header) and self.store.has_duplicate_header(path, existing_header)
        resolution = resolve_schema(existing_header, reading.columns, duplicate_header)

        logger.debug(
            "Resolved CSV schema",
            extra={
                "file_name": path.name,
                "decision": resolution.decision.value,
                "missing_columns": ",".join(resolution.missing_columns) or None,
            },
        )

        if resolution.decision is SchemaDecision.rewrite_required:
            self.store.rewrite(path, existing_header, resolution.missing_columns)
        elif resolution.decision is SchemaDecision.create_new:
            self.store.create(path, resolution.header)

        row = [reading.values.get(column, "") for column in resolution.header]
        self.store.append_row(path, row)

    def _audit(self, entry_type: str, api_key_id: str, details: str, verbose: Optional[str] = None) -> None:
        self.audit_log.record(entry_type, api_key_id, details, verbose=verbose)


@lru_cache
def build_default_coordinator() -> IngestionCoordinator:
    """Factory that wires the coordinator from environment settings."""
    settings = get_settings()
    mapper = PayloadMapper(
        mode=settings.probe_mode,
        ds18_max=settings.ds18_max,
        tz=resolve_timezone(settings.timezone),
    )
    return IngestionCoordinator(
        store=build_default_store(),
        audit_log=build_default_audit_log(),
        mapper=mapper,
    )
