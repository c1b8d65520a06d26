from __future__ import annotations

import datetime as dt
import os
import sqlite3
from uuid import uuid4


def new_device_id() -> str:
    return str(uuid4())


def load_device_id(conn: sqlite3.Connection) -> str | None:
    row = conn.execute("SELECT device_id FROM device LIMIT 1").fetchone()
    return str(row["device_id"]) if row else None


def ensure_device_id(conn: sqlite3.Connection, *, device_id: str | None = None) -> str:
    """Return the install's device identifier, creating it on first use.

    METEORLOG_DEVICE_ID overrides the stored value without rewriting it.
    """
    env_device_id = os.getenv("METEORLOG_DEVICE_ID", "").strip()
    if env_device_id:
        return env_device_id
    existing = load_device_id(conn)
    if existing:
        return existing
    value = (device_id or "").strip() or new_device_id()
    now = dt.datetime.now(dt.UTC).isoformat()
    conn.execute(
        "INSERT INTO device(device_id, created_at) VALUES (?, ?)",
        (value, now),
    )
    conn.commit()
    return value
