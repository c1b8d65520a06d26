from __future__ import annotations

import datetime as dt
import secrets
import sqlite3
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .. import db
from ..errors import NotFoundError
from ..types import LOCATION_PRIVACY_LEVELS, PRACTICE_OBSERVATION_FIELDS, PRIVACY_FULL

SESSION_COLUMNS = (
    "start_time",
    "end_time",
    "duration_ms",
    "observation_count",
    "notes",
    "location_latitude",
    "location_longitude",
    "location_accuracy",
    "location_privacy",
    "is_practice",
    "practice_total_observations",
    "practice_avg_accuracy",
)
OBSERVATION_COLUMNS = (
    "timestamp",
    "duration_ms",
    "intensity",
    "location_latitude",
    "location_longitude",
    "location_accuracy",
    *PRACTICE_OBSERVATION_FIELDS,
)


def _new_remote_id() -> str:
    return uuid.uuid4().hex


def _location_columns(value: Any) -> dict[str, Any]:
    if value is None:
        return {"location_latitude": None, "location_longitude": None, "location_accuracy": None}
    if not isinstance(value, Mapping):
        raise ValueError("invalid location")
    return {
        "location_latitude": _optional_float(value.get("latitude")),
        "location_longitude": _optional_float(value.get("longitude")),
        "location_accuracy": _optional_float(value.get("accuracy")),
    }


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


def _location_dict(row: Mapping[str, Any]) -> dict[str, Any] | None:
    if row["location_latitude"] is None and row["location_longitude"] is None:
        return None
    return {
        "latitude": row["location_latitude"],
        "longitude": row["location_longitude"],
        "accuracy": row["location_accuracy"],
    }


def _session_columns(payload: Mapping[str, Any]) -> dict[str, Any]:
    start_time = payload.get("start_time")
    if not isinstance(start_time, str) or not start_time:
        raise ValueError("missing_start_time")
    privacy = payload.get("location_privacy") or PRIVACY_FULL
    if privacy not in LOCATION_PRIVACY_LEVELS:
        raise ValueError("invalid_location_privacy")
    columns = {
        "start_time": start_time,
        "end_time": payload.get("end_time"),
        "duration_ms": int(payload.get("duration_ms") or 0),
        "observation_count": int(payload.get("observation_count") or 0),
        "notes": str(payload.get("notes") or ""),
        "location_privacy": privacy,
        "is_practice": 1 if payload.get("is_practice") else 0,
        "practice_total_observations": _optional_int(payload.get("practice_total_observations")),
        "practice_avg_accuracy": _optional_float(payload.get("practice_avg_accuracy")),
    }
    columns.update(_location_columns(payload.get("location")))
    return columns


def _observation_columns(item: Mapping[str, Any]) -> dict[str, Any]:
    timestamp = item.get("timestamp")
    if not isinstance(timestamp, str) or not timestamp:
        raise ValueError("missing_observation_timestamp")
    intensity = int(item.get("intensity") or 0)
    if not 0 <= intensity <= 100:
        raise ValueError("invalid_intensity")
    columns: dict[str, Any] = {
        "timestamp": timestamp,
        "duration_ms": int(item.get("duration_ms") or 0),
        "intensity": intensity,
        "actual_duration_ms": _optional_int(item.get("actual_duration_ms")),
        "actual_intensity": _optional_int(item.get("actual_intensity")),
        "duration_accuracy": _optional_float(item.get("duration_accuracy")),
        "intensity_accuracy": _optional_float(item.get("intensity_accuracy")),
        "overall_accuracy": _optional_float(item.get("overall_accuracy")),
    }
    columns.update(_location_columns(item.get("location")))
    return columns


class RemoteStore:
    """Account-side session store backing the reference sync server.

    Ownership: an authenticated caller owns rows carrying its ``user_id``;
    an anonymous caller owns rows of its ``device_id`` that have no user yet.
    """

    def __init__(self, db_path: Path | str = db.DEFAULT_REMOTE_DB_PATH, *, check_same_thread: bool = True):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_remote_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _now_iso() -> str:
        return dt.datetime.now(dt.UTC).isoformat()

    # Accounts

    def create_user(self, email: str) -> str:
        email = email.strip().lower()
        if not email:
            raise ValueError("email is required")
        user_id = _new_remote_id()
        try:
            self.conn.execute(
                "INSERT INTO users(id, email, created_at) VALUES (?, ?, ?)",
                (user_id, email, self._now_iso()),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"user already exists: {email}") from exc
        self.conn.commit()
        return user_id

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return dict(row) if row else None

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT id, email, created_at FROM users WHERE email = ?",
            (email.strip().lower(),),
        ).fetchone()
        return dict(row) if row else None

    def issue_token(self, user_id: str) -> str:
        if self.get_user(user_id) is None:
            raise NotFoundError(f"user not found: {user_id}")
        token = secrets.token_urlsafe(32)
        self.conn.execute(
            "INSERT INTO auth_tokens(token, user_id, created_at) VALUES (?, ?, ?)",
            (token, user_id, self._now_iso()),
        )
        self.conn.commit()
        return token

    def user_for_token(self, token: str | None) -> dict[str, Any] | None:
        if not token:
            return None
        row = self.conn.execute(
            """
            SELECT users.id, users.email
            FROM auth_tokens
            JOIN users ON users.id = auth_tokens.user_id
            WHERE auth_tokens.token = ?
            """,
            (token,),
        ).fetchone()
        return dict(row) if row else None

    # Sessions

    def upsert_session(
        self, payload: Mapping[str, Any], *, user_id: str | None = None
    ) -> dict[str, Any]:
        device_id = payload.get("device_id")
        if not isinstance(device_id, str) or not device_id:
            raise ValueError("missing_device_id")
        observations = payload.get("observations") or []
        if not isinstance(observations, list):
            raise ValueError("invalid_observations")
        columns = _session_columns(payload)
        now = self._now_iso()
        remote_session_id = payload.get("remote_session_id")
        try:
            if remote_session_id:
                row = self._session_row(str(remote_session_id))
                if row is None or not self._may_write(row, user_id=user_id, device_id=device_id):
                    raise NotFoundError(f"session not found: {remote_session_id}")
                assignments = ", ".join(f"{name} = ?" for name in columns)
                self.conn.execute(
                    f"""
                    UPDATE remote_sessions
                    SET {assignments}, user_id = COALESCE(user_id, ?), updated_at = ?
                    WHERE id = ?
                    """,
                    (*columns.values(), user_id, now, row["id"]),
                )
                session_id = str(row["id"])
                is_new = False
            else:
                session_id = _new_remote_id()
                names = ["id", "device_id", "user_id", *columns, "created_at", "updated_at"]
                placeholders = ", ".join("?" for _ in names)
                self.conn.execute(
                    f"INSERT INTO remote_sessions({', '.join(names)}) VALUES ({placeholders})",
                    (session_id, device_id, user_id, *columns.values(), now, now),
                )
                is_new = True
            mapping = [
                self._upsert_observation(session_id, item, now)
                for item in observations
                if isinstance(item, Mapping)
            ]
        except BaseException:
            self.conn.rollback()
            raise
        self.conn.commit()
        return {
            "session": {
                "local_id": payload.get("local_session_id"),
                "remote_id": session_id,
                "is_new": is_new,
            },
            "observations": mapping,
        }

    def _upsert_observation(
        self, session_id: str, item: Mapping[str, Any], now: str
    ) -> dict[str, Any]:
        columns = _observation_columns(item)
        remote_id = item.get("remote_id")
        if remote_id:
            row = self.conn.execute(
                "SELECT id FROM remote_observations WHERE id = ? AND session_id = ?",
                (str(remote_id), session_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"observation not found: {remote_id}")
            assignments = ", ".join(f"{name} = ?" for name in columns)
            self.conn.execute(
                f"UPDATE remote_observations SET {assignments} WHERE id = ?",
                (*columns.values(), str(remote_id)),
            )
            observation_id = str(remote_id)
        else:
            observation_id = _new_remote_id()
            names = ["id", "session_id", *columns, "created_at"]
            placeholders = ", ".join("?" for _ in names)
            self.conn.execute(
                f"INSERT INTO remote_observations({', '.join(names)}) VALUES ({placeholders})",
                (observation_id, session_id, *columns.values(), now),
            )
        return {"local_id": item.get("local_id"), "remote_id": observation_id}

    def list_sessions(
        self,
        *,
        user_id: str | None = None,
        device_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if user_id:
            where, params = "user_id = ?", [user_id]
        elif device_id:
            where, params = "device_id = ? AND user_id IS NULL", [device_id]
        else:
            raise ValueError("missing_device_id")
        # SQLite treats a negative LIMIT as unbounded.
        params.extend([int(limit) if limit is not None else -1, max(0, int(offset))])
        rows = self.conn.execute(
            f"""
            SELECT * FROM remote_sessions
            WHERE {where}
            ORDER BY start_time DESC, created_at DESC
            LIMIT ? OFFSET ?
            """,
            params,
        ).fetchall()
        return [self._session_dict(row) for row in rows]

    def get_session_detail(
        self,
        remote_id: str,
        *,
        user_id: str | None = None,
        device_id: str | None = None,
    ) -> dict[str, Any]:
        row = self._session_row(remote_id)
        if row is None or not self._may_read(row, user_id=user_id, device_id=device_id):
            raise NotFoundError(f"session not found: {remote_id}")
        observations = self.conn.execute(
            """
            SELECT * FROM remote_observations
            WHERE session_id = ?
            ORDER BY timestamp ASC, created_at ASC
            """,
            (remote_id,),
        ).fetchall()
        detail = self._session_dict(row)
        detail["observations"] = [self._observation_dict(obs) for obs in observations]
        return detail

    def migrate_device_sessions(self, user_id: str, device_id: str) -> int:
        if not user_id:
            raise ValueError("missing_user_id")
        if not device_id:
            raise ValueError("missing_device_id")
        cur = self.conn.execute(
            """
            UPDATE remote_sessions
            SET user_id = ?, updated_at = ?
            WHERE device_id = ? AND user_id IS NULL
            """,
            (user_id, self._now_iso(), device_id),
        )
        self.conn.commit()
        return int(cur.rowcount or 0)

    def _session_row(self, remote_id: str) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT * FROM remote_sessions WHERE id = ?", (remote_id,)
        ).fetchone()

    @staticmethod
    def _may_read(row: sqlite3.Row, *, user_id: str | None, device_id: str | None) -> bool:
        if user_id:
            return row["user_id"] == user_id
        return bool(device_id) and row["user_id"] is None and row["device_id"] == device_id

    @staticmethod
    def _may_write(row: sqlite3.Row, *, user_id: str | None, device_id: str) -> bool:
        if row["user_id"] is None:
            return row["device_id"] == device_id
        return row["user_id"] == user_id

    @staticmethod
    def _session_dict(row: sqlite3.Row) -> dict[str, Any]:
        data = {
            "id": row["id"],
            "device_id": row["device_id"],
            "user_id": row["user_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
        for name in SESSION_COLUMNS:
            if not name.startswith("location_") or name == "location_privacy":
                data[name] = row[name]
        data["is_practice"] = bool(row["is_practice"])
        data["location"] = _location_dict(row)
        return data

    @staticmethod
    def _observation_dict(row: sqlite3.Row) -> dict[str, Any]:
        data = {"id": row["id"], "session_id": row["session_id"], "created_at": row["created_at"]}
        for name in OBSERVATION_COLUMNS:
            if not name.startswith("location_"):
                data[name] = row[name]
        data["location"] = _location_dict(row)
        return data
