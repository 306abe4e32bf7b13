"""Decide how an incoming row's columns fit an existing CSV header."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Sequence


class SchemaDecision(str, Enum):
    create_new = "create-new"
    append_only = "append-only"
    rewrite_required = "rewrite-required"


@dataclass
class SchemaResolution:
    decision: SchemaDecision
    header: List[str]
    missing_columns: List[str] = field(default_factory=list)


def missing_columns(existing_header: Sequence[str], required: Sequence[str]) -> List[str]:
    """Required columns absent from the header, in required order."""
    present = set(existing_header)
    missing: List[str] = []
    for column in required:
        if column in present:
            continue
        present.add(column)
        missing.append(column)
    return missing


def resolve_schema(
    existing_header: Sequence[str],
    required: Sequence[str],
    duplicate_header: bool = False,
) -> SchemaResolution:
    """Pick create, append or rewrite for one write.

    The header only ever grows: missing columns are appended after the
    existing ones. A header row repeated inside the body forces a rewrite
    even when nothing is missing, so the file heals on its next write.
    """
    if not existing_header:
        return SchemaResolution(
            decision=SchemaDecision.create_new,
            header=list(dict.fromkeys(required)),
        )

    missing = missing_columns(existing_header, required)
    if missing or duplicate_header:
        return SchemaResolution(
            decision=SchemaDecision.rewrite_required,
            header=list(existing_header) + missing,
            missing_columns=missing,
        )
    return SchemaResolution(decision=SchemaDecision.append_only, header=list(existing_header))
