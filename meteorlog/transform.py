from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from .types import (
    LOCATION_PRIVACY_LEVELS,
    PRACTICE_OBSERVATION_FIELDS,
    PRIVACY_FULL,
    PRIVACY_HIDDEN,
    PRIVACY_OBFUSCATED,
    SYNC_SYNCED,
    Location,
    LocationPayload,
    Observation,
    ObservationPayload,
    Session,
    SessionPayload,
)


def _round_hundredths(value: float) -> float:
    # Half-up, so -0.125 -> -0.12 and 0.125 -> 0.13.
    return math.floor(value * 100 + 0.5) / 100


def apply_location_privacy(
    location: Location | Mapping[str, Any] | None, privacy: str
) -> dict[str, float | None]:
    if privacy not in LOCATION_PRIVACY_LEVELS:
        raise ValueError(f"invalid location privacy: {privacy!r}")
    loc = Location.from_value(location)
    if loc is None or loc.latitude is None or loc.longitude is None:
        return {"latitude": None, "longitude": None}
    if privacy == PRIVACY_HIDDEN:
        return {"latitude": None, "longitude": None}
    if privacy == PRIVACY_OBFUSCATED:
        return {
            "latitude": _round_hundredths(loc.latitude),
            "longitude": _round_hundredths(loc.longitude),
        }
    return {"latitude": loc.latitude, "longitude": loc.longitude}


def _location_payload(location: Location | None, privacy: str) -> LocationPayload | None:
    if location is None:
        return None
    coords = apply_location_privacy(location, privacy)
    accuracy = location.accuracy if coords["latitude"] is not None else None
    return {
        "latitude": coords["latitude"],
        "longitude": coords["longitude"],
        "accuracy": accuracy,
    }


def _observation_payload(observation: Observation, privacy: str) -> ObservationPayload:
    return {
        "local_id": observation.id,
        "remote_id": observation.remote_id,
        "timestamp": observation.timestamp,
        "duration_ms": observation.duration_ms,
        "intensity": observation.intensity,
        "location": _location_payload(observation.location, privacy),
        "actual_duration_ms": observation.actual_duration_ms,
        "actual_intensity": observation.actual_intensity,
        "duration_accuracy": observation.duration_accuracy,
        "intensity_accuracy": observation.intensity_accuracy,
        "overall_accuracy": observation.overall_accuracy,
    }


def to_remote_payload(
    session: Session,
    observations: Sequence[Observation],
    device_id: str,
    privacy: str | None = None,
) -> SessionPayload:
    """Build the upsert body for one session and all of its observations.

    ``privacy`` defaults to the session's own level and is applied to the
    session location and every observation location.
    """
    level = privacy or session.location_privacy or PRIVACY_FULL
    if level not in LOCATION_PRIVACY_LEVELS:
        raise ValueError(f"invalid location privacy: {level!r}")
    return {
        "local_session_id": session.id,
        "remote_session_id": session.remote_id,
        "device_id": device_id,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "duration_ms": session.duration_ms,
        "observation_count": session.observation_count or len(observations),
        "notes": session.notes or "",
        "location": _location_payload(session.location, level),
        "location_privacy": level,
        "is_practice": session.is_practice,
        "practice_total_observations": session.practice_total_observations,
        "practice_avg_accuracy": session.practice_avg_accuracy,
        "observations": [_observation_payload(obs, level) for obs in observations],
    }


def _location_from_remote(value: Any) -> Location | None:
    if not isinstance(value, Mapping):
        return None
    loc = Location.from_value(dict(value))
    if loc is None or (loc.latitude is None and loc.longitude is None):
        return None
    return loc


def session_from_remote_row(
    row: Mapping[str, Any],
    *,
    user_id: str | None = None,
    synced_at: str | None = None,
) -> dict[str, Any]:
    """Map a remote session row to ``ObservationStore.create_session`` keyword arguments.

    Pulled rows were privacy-filtered when they were pushed; they are trusted as-is.
    """
    remote_id = str(row.get("id") or "").strip()
    if not remote_id:
        raise ValueError("remote session row has no id")
    return {
        "remote_id": remote_id,
        "device_id": row.get("device_id") or None,
        "user_id": user_id,
        "start_time": row.get("start_time"),
        "end_time": row.get("end_time"),
        "duration_ms": int(row.get("duration_ms") or 0),
        "observation_count": int(row.get("observation_count") or 0),
        "notes": row.get("notes") or "",
        "location": _location_from_remote(row.get("location")),
        "location_privacy": row.get("location_privacy") or PRIVACY_FULL,
        "is_practice": bool(row.get("is_practice")),
        "practice_total_observations": row.get("practice_total_observations"),
        "practice_avg_accuracy": row.get("practice_avg_accuracy"),
        "sync_status": SYNC_SYNCED,
        "last_synced_at": synced_at,
    }


def observation_from_remote_row(
    row: Mapping[str, Any],
    *,
    synced_at: str | None = None,
) -> dict[str, Any]:
    """Map a remote observation row to ``ObservationStore.create_observation`` keyword arguments."""
    remote_id = str(row.get("id") or "").strip()
    if not remote_id:
        raise ValueError("remote observation row has no id")
    fields: dict[str, Any] = {
        "remote_id": remote_id,
        "timestamp": row.get("timestamp"),
        "duration_ms": int(row.get("duration_ms") or 0),
        "intensity": int(row.get("intensity") or 0),
        "location": _location_from_remote(row.get("location")),
        "sync_status": SYNC_SYNCED,
        "last_synced_at": synced_at,
    }
    for name in PRACTICE_OBSERVATION_FIELDS:
        fields[name] = row.get(name)
    return fields
