from __future__ import annotations

import asyncio
import http.client
import json
import threading
from http.server import HTTPServer
from pathlib import Path

import pytest

from meteorlog.auth import AuthSession
from meteorlog.errors import NotFoundError, RemoteUnavailableError
from meteorlog.remote import api as api_module
from meteorlog.remote.api import build_remote_handler
from meteorlog.remote.store import RemoteStore
from meteorlog.store import ObservationStore
from meteorlog.sync.endpoint import HttpSyncEndpoint
from meteorlog.sync.engine import SyncEngine
from meteorlog.sync.linking import AccountLinker


def _start_server(db_path: Path) -> tuple[HTTPServer, int]:
    handler = build_remote_handler(db_path)
    server = HTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, int(server.server_address[1])


def _raw_request(
    port: int, method: str, path: str, body: bytes | None = None, headers: dict | None = None
) -> tuple[int, dict]:
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=2)
    try:
        conn.request(method, path, body=body, headers=headers or {})
        resp = conn.getresponse()
        return resp.status, json.loads(resp.read().decode("utf-8"))
    finally:
        conn.close()


def test_push_and_link_over_http(tmp_path: Path) -> None:
    remote_db = tmp_path / "remote.sqlite"
    server, port = _start_server(remote_db)
    store = ObservationStore(tmp_path / "local.sqlite")
    auth = AuthSession()
    try:
        sid = store.create_session(
            notes="perseids",
            location={"latitude": 44.43112, "longitude": 26.10334, "accuracy": 15.0},
            location_privacy="obfuscated",
        )
        oid = store.create_observation(sid, duration_ms=450, intensity=70)

        async def push():
            async with HttpSyncEndpoint(
                f"127.0.0.1:{port}", auth=auth, device_id=store.device_id
            ) as endpoint:
                engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
                result = await engine.sync_to_remote()
                listed = await endpoint.list_sessions()
                return result, listed

        result, listed = asyncio.run(push())
        session = store.get_session(sid)
        assert result.synced == 1
        assert session.sync_status == "synced"
        assert store.get_observation(oid).remote_id is not None
        assert [item["id"] for item in listed] == [session.remote_id]
        assert listed[0]["location"]["latitude"] == 44.43

        remote = RemoteStore(remote_db)
        try:
            user_id = remote.create_user("stargazer@example.com")
            token = remote.issue_token(user_id)
        finally:
            remote.close()
        auth.login(token, user_id=user_id)

        async def link():
            async with HttpSyncEndpoint(
                f"http://127.0.0.1:{port}/", auth=auth, device_id=store.device_id
            ) as endpoint:
                engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
                linker = AccountLinker(engine, endpoint, auth, device_id=store.device_id)
                link_result = await linker.on_authenticated()
                detail = await endpoint.get_session_detail(session.remote_id)
                return link_result, detail

        link_result, detail = asyncio.run(link())
    finally:
        store.close()
        server.shutdown()

    assert link_result.ok
    assert link_result.migrated == 1
    assert link_result.download.skipped == 1
    assert detail["user_id"] == user_id
    assert detail["observations"][0]["intensity"] == 70


def test_http_errors_map_to_sync_errors(tmp_path: Path) -> None:
    server, port = _start_server(tmp_path / "remote.sqlite")
    try:

        async def scenario():
            async with HttpSyncEndpoint(
                f"127.0.0.1:{port}", auth=AuthSession(), device_id="dev-x"
            ) as endpoint:
                with pytest.raises(NotFoundError):
                    await endpoint.get_session_detail("does-not-exist")
                with pytest.raises(RemoteUnavailableError, match="401"):
                    await endpoint.migrate_device_sessions("dev-x")
                return await endpoint.list_sessions()

        assert asyncio.run(scenario()) == []
    finally:
        server.shutdown()


def test_invalid_token_is_treated_as_anonymous(tmp_path: Path) -> None:
    server, port = _start_server(tmp_path / "remote.sqlite")
    try:
        status, payload = _raw_request(
            port,
            "GET",
            "/v1/sessions?device_id=dev-y",
            headers={"Authorization": "Bearer not-a-token"},
        )
        missing_status, missing = _raw_request(port, "GET", "/v1/sessions")
    finally:
        server.shutdown()

    assert status == 200
    assert payload == {"sessions": [], "count": 0}
    assert missing_status == 400
    assert missing == {"error": "missing_device_id"}


def test_bad_requests_are_rejected(tmp_path: Path, monkeypatch) -> None:
    server, port = _start_server(tmp_path / "remote.sqlite")
    try:
        bad_json = _raw_request(
            port,
            "POST",
            "/v1/sessions/sync",
            body=b"{nope",
            headers={"Content-Type": "application/json"},
        )
        bad_session = _raw_request(
            port,
            "POST",
            "/v1/sessions/sync",
            body=json.dumps({"device_id": "dev-z"}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        unknown = _raw_request(port, "GET", "/v1/elsewhere")
        monkeypatch.setattr(api_module, "MAX_BODY_BYTES", 16)
        too_large = _raw_request(
            port,
            "POST",
            "/v1/sessions/sync",
            body=json.dumps({"device_id": "dev-z", "notes": "x" * 64}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
    finally:
        server.shutdown()

    assert bad_json == (400, {"error": "invalid_json"})
    assert bad_session == (400, {"error": "missing_start_time"})
    assert unknown == (404, {"error": "not_found"})
    assert too_large == (413, {"error": "payload_too_large"})
