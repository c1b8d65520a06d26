from __future__ import annotations

import os
from typing import Any

import typer
from rich import print

from meteorlog.config import read_config_file, write_config_file
from meteorlog.db import DEFAULT_DB_PATH
from meteorlog.errors import MeteorlogError
from meteorlog.store import ObservationStore


def store_from_path(db_path: str | None) -> ObservationStore:
    return ObservationStore(db_path or os.environ.get("METEORLOG_DB") or DEFAULT_DB_PATH)


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any]) -> None:
    try:
        write_config_file(data)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def fail(exc: Exception) -> typer.Exit:
    if isinstance(exc, MeteorlogError):
        label = exc.__class__.__name__
    else:
        label = "Invalid input"
    print(f"[red]{label}: {exc}[/red]")
    return typer.Exit(code=1)


def format_location(location: Any) -> str:
    if location is None or location.latitude is None or location.longitude is None:
        return "-"
    text = f"{location.latitude:.5f},{location.longitude:.5f}"
    if location.accuracy is not None:
        text += f" (±{location.accuracy:g}m)"
    return text
