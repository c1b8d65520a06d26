from __future__ import annotations

import asyncio
from pathlib import Path

from meteorlog.auth import AuthSession
from meteorlog.errors import RemoteUnavailableError
from meteorlog.remote.loopback import LoopbackEndpoint
from meteorlog.remote.store import RemoteStore
from meteorlog.store import ObservationStore
from meteorlog.sync.engine import SyncEngine
from meteorlog.sync.linking import AccountLinker
from meteorlog.types import SyncBatchResult


class FlakyMigrationEndpoint(LoopbackEndpoint):
    async def migrate_device_sessions(self, device_id: str) -> int:
        raise RemoteUnavailableError("device migration failed (503: maintenance)")


def _wire(tmp_path: Path, endpoint_cls=LoopbackEndpoint):
    remote = RemoteStore(tmp_path / "remote.sqlite")
    store = ObservationStore(tmp_path / "local.sqlite")
    auth = AuthSession()
    endpoint = endpoint_cls(remote, auth=auth, device_id=store.device_id)
    engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
    linker = AccountLinker(engine, endpoint, auth, device_id=store.device_id)
    return remote, store, auth, endpoint, engine, linker


def _record_session(store: ObservationStore, notes: str) -> int:
    sid = store.create_session(notes=notes)
    store.create_observation(sid, duration_ms=320, intensity=55)
    return sid


def test_login_migrates_anonymous_sessions(tmp_path: Path) -> None:
    remote, store, auth, endpoint, engine, linker = _wire(tmp_path)
    try:
        _record_session(store, "backyard")
        _record_session(store, "rooftop")
        pushed = asyncio.run(engine.sync_to_remote())
        assert pushed.synced == 2
        anonymous = asyncio.run(endpoint.list_sessions())
        assert [s["user_id"] for s in anonymous] == [None, None]

        user_id = remote.create_user("night-owl@example.com")
        auth.login(remote.issue_token(user_id), user_id=user_id, email="night-owl@example.com")
        result = asyncio.run(linker.on_authenticated())
        owned = asyncio.run(endpoint.list_sessions())
    finally:
        store.close()
        remote.close()

    assert result.ok
    assert result.migrated == 2
    assert result.download is not None
    assert (result.download.downloaded, result.download.skipped) == (0, 2)
    assert len(owned) == 2
    assert {s["user_id"] for s in owned} == {user_id}


def test_migration_with_nothing_to_move_returns_zero(tmp_path: Path) -> None:
    remote, store, auth, endpoint, engine, linker = _wire(tmp_path)
    try:
        user_id = remote.create_user("fresh@example.com")
        auth.login(remote.issue_token(user_id), user_id=user_id)
        first = asyncio.run(linker.on_authenticated())
        second = asyncio.run(linker.on_authenticated())
    finally:
        store.close()
        remote.close()

    assert first.migrated == 0
    assert second.migrated == 0
    assert first.errors == []


def test_linking_failures_are_reported_not_raised(tmp_path: Path, caplog) -> None:
    remote, store, auth, endpoint, engine, linker = _wire(tmp_path, FlakyMigrationEndpoint)
    try:
        user_id = remote.create_user("unlucky@example.com")
        other = remote.upsert_session(
            {
                "device_id": "phone",
                "start_time": "2026-04-01T20:00:00+00:00",
                "observations": [],
            },
            user_id=user_id,
        )
        auth.login(remote.issue_token(user_id), user_id=user_id)
        with caplog.at_level("ERROR", logger="meteorlog.sync.linking"):
            result = asyncio.run(linker.on_authenticated())
        pulled = store.find_session_by_remote_id(other["session"]["remote_id"])
    finally:
        store.close()
        remote.close()

    assert result.migrated is None
    assert result.ok is False
    assert result.errors[0].startswith("migration:")
    assert "503" in result.errors[0]
    assert result.download is not None and result.download.downloaded == 1
    assert pulled is not None
    assert "device migration failed" in caplog.text
    assert auth.is_authenticated()


def test_linking_requires_authentication(tmp_path: Path) -> None:
    remote, store, auth, endpoint, engine, linker = _wire(tmp_path, FlakyMigrationEndpoint)
    try:
        result = asyncio.run(linker.on_authenticated())
    finally:
        store.close()
        remote.close()

    assert result.migrated is None
    assert result.download is None
    assert result.errors == []


def test_after_push_links_new_device_rows(tmp_path: Path) -> None:
    remote, store, auth, endpoint, engine, linker = _wire(tmp_path)
    try:
        _record_session(store, "anonymous run")
        pushed = asyncio.run(engine.sync_to_remote())
        assert asyncio.run(linker.after_push(pushed)) is None

        user_id = remote.create_user("later@example.com")
        auth.login(remote.issue_token(user_id), user_id=user_id)
        assert asyncio.run(linker.after_push(SyncBatchResult())) is None
        migrated = asyncio.run(linker.after_push(pushed))
    finally:
        store.close()
        remote.close()

    assert migrated == 1


def test_after_push_swallows_migration_errors(tmp_path: Path) -> None:
    remote, store, auth, endpoint, engine, linker = _wire(tmp_path, FlakyMigrationEndpoint)
    try:
        auth.login("some-token", user_id="u")
        assert asyncio.run(linker.after_push(SyncBatchResult(synced=1))) is None
    finally:
        store.close()
        remote.close()
