from __future__ import annotations

import dataclasses
import datetime as dt
import json

import typer
from rich import print

from ..errors import MeteorlogError
from ..types import PRIVACY_FULL
from .common import fail, format_location


def _location(lat: float | None, lon: float | None, accuracy: float | None) -> dict | None:
    if lat is None and lon is None:
        return None
    if lat is None or lon is None:
        raise ValueError("both --lat and --lon are required for a location")
    return {"latitude": lat, "longitude": lon, "accuracy": accuracy}


def _accuracy(expected: float, actual: float) -> float:
    if actual == 0:
        return 100.0 if expected == 0 else 0.0
    return max(0.0, 100.0 - abs(expected - actual) / actual * 100.0)


def practice_scores(
    duration_ms: int, intensity: int, actual_duration_ms: int, actual_intensity: int
) -> dict[str, float | int]:
    """Score a practice observation against its ground truth (0-100 each)."""
    duration_accuracy = round(_accuracy(duration_ms, actual_duration_ms), 1)
    intensity_accuracy = round(_accuracy(intensity, actual_intensity), 1)
    return {
        "actual_duration_ms": actual_duration_ms,
        "actual_intensity": actual_intensity,
        "duration_accuracy": duration_accuracy,
        "intensity_accuracy": intensity_accuracy,
        "overall_accuracy": round((duration_accuracy + intensity_accuracy) / 2, 1),
    }


def session_start_cmd(
    *,
    store_from_path,
    load_config,
    db_path: str | None,
    notes: str,
    lat: float | None,
    lon: float | None,
    accuracy: float | None,
    privacy: str | None,
    practice: bool,
) -> None:
    """Start a new observation session."""

    privacy = privacy or load_config().location_privacy or PRIVACY_FULL
    store = store_from_path(db_path)
    try:
        session_id = store.create_session(
            notes=notes,
            location=_location(lat, lon, accuracy),
            location_privacy=privacy,
            is_practice=practice,
        )
    except (MeteorlogError, ValueError) as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    print(f"[green]Started session {session_id}[/green]")


def session_end_cmd(*, store_from_path, db_path: str | None, session_id: int) -> None:
    """Close a session and record its duration and observation count."""

    store = store_from_path(db_path)
    try:
        session = store.get_session(session_id)
        observations = store.list_observations_for_session(session_id)
        end = dt.datetime.now(dt.UTC)
        start = dt.datetime.fromisoformat(session.start_time)
        if start.tzinfo is None:
            start = start.replace(tzinfo=dt.UTC)
        patch: dict[str, object] = {
            "end_time": end.isoformat(),
            "duration_ms": max(0, int((end - start).total_seconds() * 1000)),
            "observation_count": len(observations),
        }
        practice = [obs for obs in observations if obs.is_practice]
        if session.is_practice and practice:
            patch["practice_total_observations"] = len(practice)
            patch["practice_avg_accuracy"] = round(
                sum(obs.overall_accuracy or 0.0 for obs in practice) / len(practice), 1
            )
        updated = store.update_session(session_id, patch)
    except (MeteorlogError, ValueError) as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    print(
        f"[green]Ended session {session_id}[/green] "
        f"({updated.observation_count} observations, {updated.duration_ms / 1000:.1f}s)"
    )


def session_note_cmd(*, store_from_path, db_path: str | None, session_id: int, text: str) -> None:
    """Replace a session's notes."""

    store = store_from_path(db_path)
    try:
        updated = store.update_session(session_id, {"notes": text})
    except (MeteorlogError, ValueError) as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    print(f"Session {session_id} notes updated ({updated.sync_status})")


def session_list_cmd(*, store_from_path, db_path: str | None, limit: int) -> None:
    """List recent sessions."""

    store = store_from_path(db_path)
    try:
        sessions = store.list_sessions(limit=limit)
    finally:
        store.close()
    if not sessions:
        print("No sessions recorded yet")
        return
    for session in sessions:
        remote = session.remote_id or "-"
        ended = session.end_time or "active"
        practice = " practice" if session.is_practice else ""
        print(
            f"[{session.id}] {session.start_time} -> {ended} | "
            f"obs={session.observation_count} | {session.sync_status} | remote={remote}{practice}"
        )


def session_show_cmd(*, store_from_path, db_path: str | None, session_id: int) -> None:
    """Print a session and its observations as JSON."""

    store = store_from_path(db_path)
    try:
        session = store.get_session(session_id)
        observations = store.list_observations_for_session(session_id)
    except MeteorlogError as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    data = dataclasses.asdict(session)
    data["observations"] = [dataclasses.asdict(obs) for obs in observations]
    print(json.dumps(data, indent=2))


def observe_cmd(
    *,
    store_from_path,
    db_path: str | None,
    session_id: int,
    duration_ms: int,
    intensity: int,
    lat: float | None,
    lon: float | None,
    accuracy: float | None,
    actual_duration_ms: int | None,
    actual_intensity: int | None,
) -> None:
    """Record one observation in a session."""

    if (actual_duration_ms is None) != (actual_intensity is None):
        print("[red]--actual-duration-ms and --actual-intensity must be given together[/red]")
        raise typer.Exit(code=1)
    practice: dict[str, float | int] = {}
    if actual_duration_ms is not None and actual_intensity is not None:
        practice = practice_scores(duration_ms, intensity, actual_duration_ms, actual_intensity)
    store = store_from_path(db_path)
    try:
        observation_id = store.create_observation(
            session_id,
            duration_ms=duration_ms,
            intensity=intensity,
            location=_location(lat, lon, accuracy),
            **practice,
        )
        count = len(store.list_observations_for_session(session_id))
        store.update_session(session_id, {"observation_count": count})
        location = store.get_observation(observation_id).location
    except (MeteorlogError, ValueError) as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    print(
        f"[green]Recorded observation {observation_id}[/green] "
        f"in session {session_id} at {format_location(location)}"
    )
