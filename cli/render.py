from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_outcome(payload: Dict[str, Any]) -> None:
    echo_heading("Push Result")
    if payload.get("ok"):
        echo_key_values(
            [
                ("sensorID", payload.get("sensorID")),
                ("file", payload.get("file")),
            ]
        )
        return

    pairs = [("error", payload.get("error"))]
    for key in ("sensorID", "retry_after", "missing"):
        if payload.get(key) is not None:
            pairs.append((key, payload.get(key)))
    echo_key_values(pairs)
