"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Tuple


@dataclass(frozen=True, slots=True)
class Principal:
    """An authenticated API key and the scope it grants."""

    id: str
    allowed_sensor_ids: Tuple[str, ...] = ()
    can_push: bool = False
    max_update_rate: int = 0
    storage_dir: str = "./data"


@dataclass(slots=True)
class MappedReading:
    """One push event flattened into CSV columns and cell values."""

    timestamp: datetime
    columns: List[str] = field(default_factory=list)
    values: Dict[str, str] = field(default_factory=dict)
