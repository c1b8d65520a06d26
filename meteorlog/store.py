from __future__ import annotations

import contextlib
import datetime as dt
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from . import db
from .errors import NotFoundError
from .identity import ensure_device_id
from .types import (
    LOCATION_PRIVACY_LEVELS,
    PENDING_SYNC_STATUSES,
    PRACTICE_OBSERVATION_FIELDS,
    PRIVACY_FULL,
    SYNC_MODIFIED,
    SYNC_STATUSES,
    SYNC_SYNCED,
    SYNC_UNSYNCED,
    Location,
    Observation,
    Session,
)

SESSION_CONTENT_FIELDS = frozenset(
    {
        "start_time",
        "end_time",
        "duration_ms",
        "observation_count",
        "notes",
        "location",
        "location_privacy",
        "is_practice",
        "practice_total_observations",
        "practice_avg_accuracy",
        "user_id",
    }
)
OBSERVATION_CONTENT_FIELDS = frozenset(
    {"timestamp", "duration_ms", "intensity", "location", *PRACTICE_OBSERVATION_FIELDS}
)
SYNC_FIELDS = frozenset({"sync_status", "last_synced_at"})


class ObservationStore:
    """Local record store for sessions and their observations.

    Tracks per-record sync state. Any content update of a ``synced`` record
    flips it to ``modified`` unless the patch sets ``sync_status`` itself.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)
        self.device_id = ensure_device_id(self.conn)
        self._in_atomic = False

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _now_iso() -> str:
        return dt.datetime.now(dt.UTC).isoformat()

    def _commit(self) -> None:
        if not self._in_atomic:
            self.conn.commit()

    @contextlib.contextmanager
    def _atomic(self) -> Iterator[None]:
        if self._in_atomic:
            yield
            return
        self._in_atomic = True
        try:
            yield
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()
        finally:
            self._in_atomic = False

    def import_remote_session(
        self,
        session_fields: Mapping[str, Any],
        observation_fields: Iterable[Mapping[str, Any]] = (),
    ) -> int:
        """Create a pulled session and its observations in one transaction.

        Observations whose remote id already exists locally are skipped.
        """
        with self._atomic():
            local_session_id = self.create_session(**session_fields)
            for fields in observation_fields:
                remote_id = fields.get("remote_id")
                if remote_id and self.find_observation_by_remote_id(remote_id) is not None:
                    continue
                self.create_observation(local_session_id, **fields)
        return local_session_id

    # Sessions

    def create_session(
        self,
        *,
        start_time: str | None = None,
        end_time: str | None = None,
        duration_ms: int = 0,
        observation_count: int = 0,
        notes: str = "",
        location: Location | Mapping[str, Any] | None = None,
        location_privacy: str = PRIVACY_FULL,
        is_practice: bool = False,
        practice_total_observations: int | None = None,
        practice_avg_accuracy: float | None = None,
        device_id: str | None = None,
        user_id: str | None = None,
        remote_id: str | None = None,
        sync_status: str = SYNC_UNSYNCED,
        last_synced_at: str | None = None,
    ) -> int:
        _validate_privacy(location_privacy)
        _validate_sync_status(sync_status, remote_id)
        if int(duration_ms) < 0:
            raise ValueError("duration_ms must be >= 0")
        loc = Location.from_value(location)
        now = self._now_iso()
        cur = self.conn.execute(
            """
            INSERT INTO sessions(
                remote_id, device_id, user_id, start_time, end_time, duration_ms,
                observation_count, notes, location_latitude, location_longitude,
                location_accuracy, location_privacy, is_practice,
                practice_total_observations, practice_avg_accuracy, sync_status,
                last_synced_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                remote_id,
                device_id or self.device_id,
                user_id,
                start_time or now,
                end_time,
                int(duration_ms),
                int(observation_count),
                notes or "",
                loc.latitude if loc else None,
                loc.longitude if loc else None,
                loc.accuracy if loc else None,
                location_privacy,
                1 if is_practice else 0,
                practice_total_observations,
                practice_avg_accuracy,
                sync_status,
                last_synced_at,
                now,
                now,
            ),
        )
        self._commit()
        lastrowid = cur.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to create session")
        return int(lastrowid)

    def get_session(self, local_id: int) -> Session:
        return _session_from_row(self._session_row(local_id))

    def list_sessions(self, *, limit: int | None = None) -> list[Session]:
        sql = "SELECT * FROM sessions ORDER BY start_time DESC, id DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        rows = self.conn.execute(sql, params).fetchall()
        return [_session_from_row(row) for row in rows]

    def update_session(self, local_id: int, patch: Mapping[str, Any]) -> Session:
        row = self._session_row(local_id)
        _check_patch_keys(patch, SESSION_CONTENT_FIELDS, kind="session")
        columns: dict[str, Any] = {}
        for key, value in patch.items():
            if key == "location":
                columns.update(_location_columns(value))
            elif key == "location_privacy":
                _validate_privacy(value)
                columns[key] = value
            elif key == "is_practice":
                columns[key] = 1 if value else 0
            elif key == "notes":
                columns[key] = value or ""
            else:
                columns[key] = value
        self._apply_sync_guard(row, patch, columns)
        if SESSION_CONTENT_FIELDS.intersection(patch):
            columns["revision"] = int(row["revision"]) + 1
        columns["updated_at"] = self._now_iso()
        self._update_row("sessions", local_id, columns)
        return self.get_session(local_id)

    def list_unsynced_sessions(self) -> list[Session]:
        rows = self.conn.execute(
            "SELECT * FROM sessions WHERE sync_status IN (?, ?) ORDER BY id",
            PENDING_SYNC_STATUSES,
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    def find_session_by_remote_id(self, remote_id: str) -> Session | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE remote_id = ? ORDER BY id LIMIT 1",
            (remote_id,),
        ).fetchone()
        return _session_from_row(row) if row else None

    def mark_session_synced(
        self,
        local_id: int,
        remote_id: str | None,
        *,
        expected_revision: int | None = None,
    ) -> bool:
        """Bind ``remote_id`` (first time only) and flip the session to ``synced``.

        Returns False when ``expected_revision`` no longer matches: the remote
        identity is still bound but the session is left ``modified``.
        """
        row = self._session_row(local_id)
        return self._mark_synced("sessions", row, remote_id, expected_revision)

    # Observations

    def create_observation(
        self,
        session_id: int,
        *,
        duration_ms: int,
        intensity: int,
        timestamp: str | None = None,
        location: Location | Mapping[str, Any] | None = None,
        actual_duration_ms: int | None = None,
        actual_intensity: int | None = None,
        duration_accuracy: float | None = None,
        intensity_accuracy: float | None = None,
        overall_accuracy: float | None = None,
        remote_id: str | None = None,
        sync_status: str = SYNC_UNSYNCED,
        last_synced_at: str | None = None,
    ) -> int:
        """Insert an observation under ``session_id``.

        The parent session's sync status is left alone. Only sessions that are
        unsynced or modified are pushed, so a caller adding to a session that is
        already synced must also call ``update_session`` on it, as ``observe``
        does when it bumps ``observation_count``; otherwise the new observation
        stays local.
        """
        self._session_row(session_id)
        _validate_sync_status(sync_status, remote_id)
        _validate_intensity(intensity)
        if int(duration_ms) < 0:
            raise ValueError("duration_ms must be >= 0")
        practice = {
            "actual_duration_ms": actual_duration_ms,
            "actual_intensity": actual_intensity,
            "duration_accuracy": duration_accuracy,
            "intensity_accuracy": intensity_accuracy,
            "overall_accuracy": overall_accuracy,
        }
        _validate_practice_fields(practice)
        loc = Location.from_value(location)
        now = self._now_iso()
        cur = self.conn.execute(
            """
            INSERT INTO observations(
                remote_id, session_id, timestamp, duration_ms, intensity,
                location_latitude, location_longitude, location_accuracy,
                actual_duration_ms, actual_intensity, duration_accuracy,
                intensity_accuracy, overall_accuracy, sync_status, last_synced_at,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                remote_id,
                session_id,
                timestamp or now,
                int(duration_ms),
                int(intensity),
                loc.latitude if loc else None,
                loc.longitude if loc else None,
                loc.accuracy if loc else None,
                actual_duration_ms,
                actual_intensity,
                duration_accuracy,
                intensity_accuracy,
                overall_accuracy,
                sync_status,
                last_synced_at,
                now,
            ),
        )
        self._commit()
        lastrowid = cur.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to create observation")
        return int(lastrowid)

    def get_observation(self, local_id: int) -> Observation:
        return _observation_from_row(self._observation_row(local_id))

    def update_observation(self, local_id: int, patch: Mapping[str, Any]) -> Observation:
        row = self._observation_row(local_id)
        _check_patch_keys(patch, OBSERVATION_CONTENT_FIELDS, kind="observation")
        columns: dict[str, Any] = {}
        for key, value in patch.items():
            if key == "location":
                columns.update(_location_columns(value))
            elif key == "intensity":
                _validate_intensity(value)
                columns[key] = int(value)
            else:
                columns[key] = value
        merged_practice = {
            name: patch[name] if name in patch else row[name]
            for name in PRACTICE_OBSERVATION_FIELDS
        }
        _validate_practice_fields(merged_practice)
        self._apply_sync_guard(row, patch, columns)
        if OBSERVATION_CONTENT_FIELDS.intersection(patch):
            columns["revision"] = int(row["revision"]) + 1
        self._update_row("observations", local_id, columns)
        return self.get_observation(local_id)

    def list_unsynced_observations(self) -> list[Observation]:
        rows = self.conn.execute(
            "SELECT * FROM observations WHERE sync_status IN (?, ?) ORDER BY id",
            PENDING_SYNC_STATUSES,
        ).fetchall()
        return [_observation_from_row(row) for row in rows]

    def list_observations_for_session(self, session_local_id: int) -> list[Observation]:
        rows = self.conn.execute(
            "SELECT * FROM observations WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
            (session_local_id,),
        ).fetchall()
        return [_observation_from_row(row) for row in rows]

    def find_observation_by_remote_id(self, remote_id: str) -> Observation | None:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE remote_id = ? ORDER BY id LIMIT 1",
            (remote_id,),
        ).fetchone()
        return _observation_from_row(row) if row else None

    def mark_observation_synced(
        self,
        local_id: int,
        remote_id: str | None,
        *,
        expected_revision: int | None = None,
    ) -> bool:
        row = self._observation_row(local_id)
        return self._mark_synced("observations", row, remote_id, expected_revision)

    # Status

    def count_by_sync_status(self, table: str) -> dict[str, int]:
        if table not in {"sessions", "observations"}:
            raise ValueError(f"Unsupported table for sync status: {table}")
        counts = {status: 0 for status in SYNC_STATUSES}
        rows = self.conn.execute(
            f"SELECT sync_status, COUNT(*) AS total FROM {table} GROUP BY sync_status"
        ).fetchall()
        for row in rows:
            counts[str(row["sync_status"])] = int(row["total"])
        return counts

    # Internals

    def _session_row(self, local_id: int) -> sqlite3.Row:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (local_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"session {local_id} not found")
        return row

    def _observation_row(self, local_id: int) -> sqlite3.Row:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE id = ?", (local_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"observation {local_id} not found")
        return row

    @staticmethod
    def _apply_sync_guard(
        row: sqlite3.Row, patch: Mapping[str, Any], columns: dict[str, Any]
    ) -> None:
        if "sync_status" in patch:
            _validate_sync_status(patch["sync_status"], row["remote_id"])
            return
        if row["sync_status"] == SYNC_SYNCED:
            columns["sync_status"] = SYNC_MODIFIED

    def _update_row(self, table: str, local_id: int, columns: dict[str, Any]) -> None:
        if not columns:
            return
        assignments = ", ".join(f"{name} = ?" for name in columns)
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*columns.values(), local_id),
        )
        self._commit()

    def _mark_synced(
        self,
        table: str,
        row: sqlite3.Row,
        remote_id: str | None,
        expected_revision: int | None,
    ) -> bool:
        if not remote_id and not row["remote_id"]:
            raise ValueError(f"{table} row {row['id']} has no remote_id to mark synced")
        if expected_revision is not None and int(row["revision"]) != int(expected_revision):
            # Edited while the push was in flight: keep the pending signal.
            self.conn.execute(
                f"UPDATE {table} SET remote_id = COALESCE(remote_id, ?), sync_status = ? WHERE id = ?",
                (remote_id, SYNC_MODIFIED, row["id"]),
            )
            self._commit()
            return False
        self.conn.execute(
            f"""
            UPDATE {table}
            SET remote_id = COALESCE(remote_id, ?), sync_status = ?, last_synced_at = ?
            WHERE id = ?
            """,
            (remote_id, SYNC_SYNCED, self._now_iso(), row["id"]),
        )
        self._commit()
        return True


def _check_patch_keys(patch: Mapping[str, Any], content_fields: frozenset[str], *, kind: str) -> None:
    if "remote_id" in patch:
        raise ValueError(f"{kind} remote_id can only be bound by marking it synced")
    unknown = set(patch) - content_fields - SYNC_FIELDS
    if unknown:
        raise ValueError(f"unknown {kind} fields: {', '.join(sorted(unknown))}")


def _validate_privacy(value: Any) -> None:
    if value not in LOCATION_PRIVACY_LEVELS:
        raise ValueError(f"invalid location privacy: {value!r}")


def _validate_sync_status(value: Any, remote_id: str | None) -> None:
    if value not in SYNC_STATUSES:
        raise ValueError(f"invalid sync status: {value!r}")
    if value == SYNC_SYNCED and not remote_id:
        raise ValueError("synced records must carry a remote_id")


def _validate_intensity(value: Any) -> None:
    if not 0 <= int(value) <= 100:
        raise ValueError("intensity must be between 0 and 100")


def _validate_practice_fields(values: Mapping[str, Any]) -> None:
    present = [name for name in PRACTICE_OBSERVATION_FIELDS if values.get(name) is not None]
    if present and len(present) != len(PRACTICE_OBSERVATION_FIELDS):
        raise ValueError("practice fields must be all set or all empty")


def _location_columns(value: Any) -> dict[str, Any]:
    loc = Location.from_value(value)
    return {
        "location_latitude": loc.latitude if loc else None,
        "location_longitude": loc.longitude if loc else None,
        "location_accuracy": loc.accuracy if loc else None,
    }


def _location_from_row(row: sqlite3.Row) -> Location | None:
    if row["location_latitude"] is None and row["location_longitude"] is None:
        return None
    return Location(
        latitude=row["location_latitude"],
        longitude=row["location_longitude"],
        accuracy=row["location_accuracy"],
    )


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=int(row["id"]),
        remote_id=row["remote_id"],
        device_id=str(row["device_id"]),
        user_id=row["user_id"],
        start_time=str(row["start_time"]),
        end_time=row["end_time"],
        duration_ms=int(row["duration_ms"] or 0),
        observation_count=int(row["observation_count"] or 0),
        notes=str(row["notes"] or ""),
        location=_location_from_row(row),
        location_privacy=str(row["location_privacy"]),
        is_practice=bool(row["is_practice"]),
        practice_total_observations=row["practice_total_observations"],
        practice_avg_accuracy=row["practice_avg_accuracy"],
        sync_status=str(row["sync_status"]),
        last_synced_at=row["last_synced_at"],
        revision=int(row["revision"] or 0),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _observation_from_row(row: sqlite3.Row) -> Observation:
    return Observation(
        id=int(row["id"]),
        remote_id=row["remote_id"],
        session_id=int(row["session_id"]),
        timestamp=str(row["timestamp"]),
        duration_ms=int(row["duration_ms"]),
        intensity=int(row["intensity"]),
        location=_location_from_row(row),
        actual_duration_ms=row["actual_duration_ms"],
        actual_intensity=row["actual_intensity"],
        duration_accuracy=row["duration_accuracy"],
        intensity_accuracy=row["intensity_accuracy"],
        overall_accuracy=row["overall_accuracy"],
        sync_status=str(row["sync_status"]),
        last_synced_at=row["last_synced_at"],
        revision=int(row["revision"] or 0),
        created_at=str(row["created_at"]),
    )
