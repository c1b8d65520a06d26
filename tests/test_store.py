from __future__ import annotations

from pathlib import Path

import pytest

from meteorlog.errors import NotFoundError
from meteorlog.store import ObservationStore


def _store(tmp_path: Path) -> ObservationStore:
    return ObservationStore(tmp_path / "local.sqlite")


def test_create_session_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session(notes="first light")
        session = store.get_session(sid)
    finally:
        store.close()

    assert session.sync_status == "unsynced"
    assert session.remote_id is None
    assert session.location_privacy == "full"
    assert session.device_id == store.device_id
    assert session.revision == 0
    assert session.notes == "first light"


def test_update_synced_session_becomes_modified(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        assert store.mark_session_synced(sid, "remote-1") is True
        assert store.get_session(sid).sync_status == "synced"

        updated = store.update_session(sid, {"notes": "clouds rolled in"})
    finally:
        store.close()

    assert updated.sync_status == "modified"
    assert updated.remote_id == "remote-1"
    assert updated.revision == 1


def test_new_observation_leaves_synced_session_until_touched(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        store.mark_session_synced(sid, "remote-1")
        store.create_observation(sid, duration_ms=300, intensity=40)
        untouched = [s.id for s in store.list_unsynced_sessions()]

        store.update_session(sid, {"observation_count": 1})
        touched = [s.id for s in store.list_unsynced_sessions()]
        pending_obs = [o.session_id for o in store.list_unsynced_observations()]
    finally:
        store.close()

    assert untouched == []
    assert touched == [sid]
    assert pending_obs == [sid]


def test_update_synced_observation_becomes_modified(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        oid = store.create_observation(sid, duration_ms=400, intensity=60)
        store.mark_observation_synced(oid, "obs-1")

        updated = store.update_observation(oid, {"intensity": 75})
    finally:
        store.close()

    assert updated.sync_status == "modified"
    assert updated.intensity == 75


def test_explicit_sync_status_in_patch_is_kept(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        store.mark_session_synced(sid, "remote-1")
        updated = store.update_session(sid, {"notes": "x", "sync_status": "synced"})
    finally:
        store.close()

    assert updated.sync_status == "synced"


def test_unknown_records_raise_not_found(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        with pytest.raises(NotFoundError):
            store.update_session(999, {"notes": "missing"})
        with pytest.raises(NotFoundError):
            store.update_observation(999, {"intensity": 1})
        with pytest.raises(NotFoundError):
            store.create_observation(999, duration_ms=100, intensity=10)
        with pytest.raises(NotFoundError):
            store.get_session(999)
    finally:
        store.close()


def test_malformed_patches_are_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        with pytest.raises(ValueError, match="remote_id"):
            store.update_session(sid, {"remote_id": "sneaky"})
        with pytest.raises(ValueError, match="unknown session fields"):
            store.update_session(sid, {"colour": "red"})
        with pytest.raises(ValueError, match="remote_id"):
            store.update_session(sid, {"sync_status": "synced"})
        with pytest.raises(ValueError, match="privacy"):
            store.update_session(sid, {"location_privacy": "fuzzy"})
        assert store.get_session(sid).sync_status == "unsynced"
    finally:
        store.close()


def test_observation_validation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        with pytest.raises(ValueError, match="intensity"):
            store.create_observation(sid, duration_ms=100, intensity=101)
        with pytest.raises(ValueError):
            store.create_observation(sid, duration_ms=100, intensity=50, actual_duration_ms=120)
        with pytest.raises(ValueError):
            store.create_session(sync_status="synced")
        oid = store.create_observation(
            sid,
            duration_ms=100,
            intensity=50,
            actual_duration_ms=120,
            actual_intensity=40,
            duration_accuracy=83.3,
            intensity_accuracy=75.0,
            overall_accuracy=79.2,
        )
        assert store.get_observation(oid).is_practice is True
        with pytest.raises(ValueError):
            store.update_observation(oid, {"overall_accuracy": None})
    finally:
        store.close()


def test_remote_identity_is_bound_once(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        store.mark_session_synced(sid, "remote-1")
        store.update_session(sid, {"notes": "edit"})
        store.mark_session_synced(sid, "remote-2")
        session = store.get_session(sid)
    finally:
        store.close()

    assert session.remote_id == "remote-1"
    assert session.sync_status == "synced"
    assert session.last_synced_at is not None


def test_mark_synced_without_any_remote_id_fails(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        with pytest.raises(ValueError):
            store.mark_session_synced(sid, None)
    finally:
        store.close()


def test_stale_revision_keeps_record_modified(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        revision = store.get_session(sid).revision
        store.update_session(sid, {"notes": "edited during push"})

        assert store.mark_session_synced(sid, "remote-1", expected_revision=revision) is False
        session = store.get_session(sid)
    finally:
        store.close()

    assert session.remote_id == "remote-1"
    assert session.sync_status == "modified"
    assert session.last_synced_at is None


def test_unsynced_listings_and_ordering(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        first = store.create_session()
        second = store.create_session()
        third = store.create_session()
        store.mark_session_synced(second, "remote-2")
        store.mark_session_synced(third, "remote-3")
        store.update_session(third, {"notes": "changed"})

        pending = [s.id for s in store.list_unsynced_sessions()]

        late = store.create_observation(
            first, duration_ms=10, intensity=1, timestamp="2026-03-01T10:00:05+00:00"
        )
        early = store.create_observation(
            first, duration_ms=10, intensity=1, timestamp="2026-03-01T10:00:01+00:00"
        )
        store.mark_observation_synced(late, "obs-late")
        ordered = [o.id for o in store.list_observations_for_session(first)]
        unsynced_obs = [o.id for o in store.list_unsynced_observations()]
        counts = store.count_by_sync_status("sessions")
    finally:
        store.close()

    assert pending == [first, third]
    assert ordered == [early, late]
    assert unsynced_obs == [early]
    assert counts == {"unsynced": 1, "modified": 1, "synced": 1}


def test_find_by_remote_id(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        sid = store.create_session()
        oid = store.create_observation(sid, duration_ms=10, intensity=5)
        store.mark_session_synced(sid, "remote-s")
        store.mark_observation_synced(oid, "remote-o")

        assert store.find_session_by_remote_id("remote-s").id == sid
        assert store.find_observation_by_remote_id("remote-o").id == oid
        assert store.find_session_by_remote_id("nope") is None
        assert store.find_observation_by_remote_id("nope") is None
    finally:
        store.close()


def test_import_remote_session_is_atomic(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        with pytest.raises(ValueError):
            store.import_remote_session(
                {"remote_id": "remote-s", "sync_status": "synced", "start_time": "2026-03-01T10:00:00+00:00"},
                [
                    {"remote_id": "o1", "sync_status": "synced", "duration_ms": 10, "intensity": 5},
                    {"remote_id": "o2", "sync_status": "synced", "duration_ms": 10, "intensity": 500},
                ],
            )
        assert store.find_session_by_remote_id("remote-s") is None
        assert store.find_observation_by_remote_id("o1") is None
        assert store.list_sessions() == []
    finally:
        store.close()


def test_device_id_is_stable_and_overridable(tmp_path: Path, monkeypatch) -> None:
    store = _store(tmp_path)
    device_id = store.device_id
    store.close()

    reopened = _store(tmp_path)
    try:
        assert reopened.device_id == device_id
    finally:
        reopened.close()

    monkeypatch.setenv("METEORLOG_DEVICE_ID", "field-kit-7")
    overridden = _store(tmp_path)
    try:
        assert overridden.device_id == "field-kit-7"
    finally:
        overridden.close()
