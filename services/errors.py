"""Exceptions raised inside the ingestion path.

Both carry a machine-readable ``code`` that ends up verbatim in the
``error`` field of the response payload.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """A push request that cannot be accepted."""

    def __init__(
        self,
        code: str,
        status_code: int,
        detail: str = "",
        extra: Optional[Dict[str, Any]] = None,
        audit_type: str = "error-push",
    ) -> None:
        super().__init__(detail or code)
        self.code = code
        self.status_code = status_code
        self.detail = detail or code
        self.extra: Dict[str, Any] = dict(extra or {})
        self.audit_type = audit_type


class StorageError(Exception):
    """A filesystem operation on a destination file failed."""

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail
