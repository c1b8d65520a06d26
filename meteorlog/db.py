from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".meteorlog.sqlite"
DEFAULT_REMOTE_DB_PATH = Path.home() / ".meteorlog-remote.sqlite"


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS device (
            device_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY,
            remote_id TEXT,
            device_id TEXT NOT NULL,
            user_id TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            observation_count INTEGER NOT NULL DEFAULT 0,
            notes TEXT NOT NULL DEFAULT '',
            location_latitude REAL,
            location_longitude REAL,
            location_accuracy REAL,
            location_privacy TEXT NOT NULL DEFAULT 'full',
            is_practice INTEGER NOT NULL DEFAULT 0,
            practice_total_observations INTEGER,
            practice_avg_accuracy REAL,
            sync_status TEXT NOT NULL DEFAULT 'unsynced',
            last_synced_at TEXT,
            revision INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_sync_status ON sessions(sync_status);
        CREATE INDEX IF NOT EXISTS idx_sessions_remote_id ON sessions(remote_id);
        CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON sessions(start_time DESC);

        CREATE TABLE IF NOT EXISTS observations (
            id INTEGER PRIMARY KEY,
            remote_id TEXT,
            session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            timestamp TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            intensity INTEGER NOT NULL,
            location_latitude REAL,
            location_longitude REAL,
            location_accuracy REAL,
            actual_duration_ms INTEGER,
            actual_intensity INTEGER,
            duration_accuracy REAL,
            intensity_accuracy REAL,
            overall_accuracy REAL,
            sync_status TEXT NOT NULL DEFAULT 'unsynced',
            last_synced_at TEXT,
            revision INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_observations_session_ts ON observations(session_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_observations_sync_status ON observations(sync_status);
        CREATE INDEX IF NOT EXISTS idx_observations_remote_id ON observations(remote_id);
        """
    )
    _ensure_column(conn, "sessions", "revision", "INTEGER NOT NULL DEFAULT 0")
    _ensure_column(conn, "observations", "revision", "INTEGER NOT NULL DEFAULT 0")
    conn.commit()


def initialize_remote_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS auth_tokens (
            token TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS remote_sessions (
            id TEXT PRIMARY KEY,
            device_id TEXT NOT NULL,
            user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            observation_count INTEGER NOT NULL DEFAULT 0,
            notes TEXT NOT NULL DEFAULT '',
            location_latitude REAL,
            location_longitude REAL,
            location_accuracy REAL,
            location_privacy TEXT NOT NULL DEFAULT 'full',
            is_practice INTEGER NOT NULL DEFAULT 0,
            practice_total_observations INTEGER,
            practice_avg_accuracy REAL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_remote_sessions_device ON remote_sessions(device_id, user_id);
        CREATE INDEX IF NOT EXISTS idx_remote_sessions_user ON remote_sessions(user_id);

        CREATE TABLE IF NOT EXISTS remote_observations (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES remote_sessions(id) ON DELETE CASCADE,
            timestamp TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            intensity INTEGER NOT NULL,
            location_latitude REAL,
            location_longitude REAL,
            location_accuracy REAL,
            actual_duration_ms INTEGER,
            actual_intensity INTEGER,
            duration_accuracy REAL,
            intensity_accuracy REAL,
            overall_accuracy REAL,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_remote_observations_session ON remote_observations(session_id, timestamp);
        """
    )
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
