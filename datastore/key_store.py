from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import bcrypt
from pydantic import ValidationError

from app.schemas import ApiKeyRecord
from models.records import Principal
from settings import get_settings

logger = logging.getLogger(__name__)

# PHP's password_hash() writes $2y$, which is the same algorithm as $2b$
_PHP_BCRYPT_PREFIX = "$2y$"


def hash_api_key(plain: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_api_key(plain: str, hashed: str) -> bool:
    if hashed.startswith(_PHP_BCRYPT_PREFIX):
        hashed = "$2b$" + hashed[len(_PHP_BCRYPT_PREFIX):]
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        return False


class KeyStore:
    """Resolves presented API keys to principals.

    Keys are read once from a JSON file of the form
    ``{"dataDirDefault": ..., "apikeys": [...]}``; each entry stores only
    the bcrypt hash of its key, as written by PHP's ``password_hash``.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        data_dir_default: str = "./data",
        records: Optional[Iterable[ApiKeyRecord]] = None,
    ) -> None:
        self.config_path = config_path
        self.data_dir_default = data_dir_default
        self._records: Dict[str, ApiKeyRecord] = {}
        if config_path:
            self._load_from_disk()
        for record in records or ():
            self._records[record.id] = record

    def authenticate(self, plain_key: Optional[str]) -> Optional[Principal]:
        candidate = (plain_key or "").strip()
        if not candidate:
            return None
        for record in self._records.values():
            if record.hash and verify_api_key(candidate, record.hash):
                return self._to_principal(record)
        return None

    def _to_principal(self, record: ApiKeyRecord) -> Principal:
        return Principal(
            id=record.id,
            allowed_sensor_ids=tuple(record.allowed_sensor_ids),
            can_push=record.can_push_data,
            max_update_rate=record.max_update_rate,
            storage_dir=record.csv_dir or self.data_dir_default,
        )

    def _load_from_disk(self) -> None:
        if not self.config_path or not self.config_path.exists():
            logger.warning("API key config not found, no keys loaded", extra={"reason": "missing_config"})
            return

        try:
            data: Any = json.loads(self.config_path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError):
            logger.error("API key config unreadable, no keys loaded", extra={"reason": "corrupt_config"})
            return
        if not isinstance(data, dict):
            return

        default_dir = data.get("dataDirDefault")
        if isinstance(default_dir, str) and default_dir:
            self.data_dir_default = default_dir

        keys = data.get("apikeys")
        for payload in keys if isinstance(keys, list) else []:
            try:
                record = ApiKeyRecord.model_validate(payload)
            except ValidationError:
                logger.warning("Skipping malformed API key entry", extra={"reason": "bad_key_entry"})
                continue
            self._records[record.id] = record


@lru_cache
def build_default_key_store(path: Optional[str] = None) -> KeyStore:
    settings = get_settings()
    config_path = settings.config_path if path is None else path
    return KeyStore(config_path=Path(config_path), data_dir_default=settings.data_dir)
