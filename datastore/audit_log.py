from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Callable, Iterator, List, Optional, Union

from pydantic import ValidationError

from app.schemas import AuditEntry
from services.payload import resolve_timezone
from settings import get_settings

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d_%H-%M-%S"


class AuditLog:
    """JSON-array audit log with serialised read-modify-write.

    Without a ``persistence_path`` entries are kept in memory only.
    """

    def __init__(
        self,
        persistence_path: Optional[Path] = None,
        tz: Optional[tzinfo] = None,
        verbose_max_bytes: int = 100_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.persistence_path = persistence_path
        self.tz = tz or timezone.utc
        self.verbose_max_bytes = verbose_max_bytes
        self._clock = clock
        self._entries: List[AuditEntry] = []
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)

    def add(
        self,
        entry_type: str,
        api_key_id: Union[str, bool, None],
        details: str,
        verbose: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            date=datetime.fromtimestamp(self._clock(), tz=self.tz).strftime(DATE_FORMAT),
            type=entry_type,
            api_key_id=str(api_key_id) if api_key_id else False,
            details=details,
        )
        if verbose is not None:
            raw = verbose.encode("utf-8")
            if len(raw) > self.verbose_max_bytes:
                entry.details += " (verbose_truncated)"
                verbose = raw[: self.verbose_max_bytes].decode("utf-8", errors="ignore")
            entry.verbose = verbose

        with self._lock:
            if not self.persistence_path:
                self._entries.append(entry)
                return entry.model_copy(deep=True)
            with self._file_lock():
                entries = self._load_from_disk()
                entries.append(entry)
                self._persist(entries)
        return entry.model_copy(deep=True)

    def record(
        self,
        entry_type: str,
        api_key_id: Union[str, bool, None],
        details: str,
        verbose: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Like ``add`` but logs and returns ``None`` when the log file cannot be written."""

        try:
            return self.add(entry_type, api_key_id, details, verbose=verbose)
        except OSError:
            logger.exception(
                "Could not write audit entry",
                extra={"api_key_id": api_key_id or "-", "reason": entry_type},
            )
            return None

    def entries(self) -> List[AuditEntry]:
        """Return deep copies of all stored entries, oldest first."""

        with self._lock:
            if not self.persistence_path:
                return [entry.model_copy(deep=True) for entry in self._entries]
            return self._load_from_disk()

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        assert self.persistence_path is not None
        lock_path = self.persistence_path.with_name(self.persistence_path.name + ".lock")
        with lock_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _persist(self, entries: List[AuditEntry]) -> None:
        assert self.persistence_path is not None
        payload = [entry.model_dump(mode="json", by_alias=True, exclude_none=True) for entry in entries]
        tmp_path = self.persistence_path.with_name(self.persistence_path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.persistence_path)

    def _load_from_disk(self) -> List[AuditEntry]:
        if not self.persistence_path or not self.persistence_path.exists():
            return []

        try:
            raw = self.persistence_path.read_text(encoding="utf-8") or "[]"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.warning("Audit log unreadable, starting a new one", extra={"reason": "corrupt_log"})
            data = []

        entries: List[AuditEntry] = []
        for item in data if isinstance(data, list) else []:
            try:
                entries.append(AuditEntry.model_validate(item))
            except ValidationError:
                continue
        return entries


@lru_cache
def build_default_audit_log(path: Optional[str] = None) -> AuditLog:
    settings = get_settings()
    log_path = settings.audit_log_path if path is None else path
    return AuditLog(
        persistence_path=Path(log_path) if log_path else None,
        tz=resolve_timezone(settings.timezone),
        verbose_max_bytes=settings.verbose_max_bytes,
    )
