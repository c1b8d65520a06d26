from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from typer.testing import CliRunner

from meteorlog.auth import AuthSession
from meteorlog.cli import app
from meteorlog.errors import NotFoundError, RemoteUnavailableError
from meteorlog.sync import http_client
from meteorlog.sync.endpoint import HttpSyncEndpoint, parse_upsert_result


def _run_with_transport(handler, auth: AuthSession, call):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            endpoint = HttpSyncEndpoint(
                "http://sync.test", auth=auth, device_id="dev-1", client=client
            )
            return await call(endpoint)

    return asyncio.run(scenario())


def test_build_base_url_adds_scheme() -> None:
    assert http_client.build_base_url("localhost:8899/") == "http://localhost:8899"
    assert http_client.build_base_url("https://sync.example.com/") == "https://sync.example.com"
    assert http_client.build_base_url("   ") == ""


def test_non_json_error_body_degrades_to_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, content=b"<html>Bad Gateway</html>")

    with pytest.raises(RemoteUnavailableError) as excinfo:
        _run_with_transport(handler, AuthSession(), lambda ep: ep.list_sessions())

    assert "502" in str(excinfo.value)
    assert "non_json_response" in str(excinfo.value)


def test_non_object_json_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json=["oops"])

    with pytest.raises(RemoteUnavailableError, match="unexpected_json_type"):
        _run_with_transport(handler, AuthSession(), lambda ep: ep.list_sessions())


def test_json_404_is_not_found_but_html_404_is_unavailable() -> None:
    def json_404(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not_found"})

    def html_404(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, content=b"<h1>nginx</h1>")

    with pytest.raises(NotFoundError):
        _run_with_transport(json_404, AuthSession(), lambda ep: ep.get_session_detail("abc"))
    with pytest.raises(RemoteUnavailableError, match="endpoint not found"):
        _run_with_transport(html_404, AuthSession(), lambda ep: ep.get_session_detail("abc"))


def test_transport_errors_become_remote_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteUnavailableError, match="connection refused"):
        _run_with_transport(handler, AuthSession(), lambda ep: ep.list_sessions())


def test_identity_follows_authentication() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"sessions": [], "count": 0})

    _run_with_transport(handler, AuthSession(), lambda ep: ep.list_sessions(limit=5))
    _run_with_transport(
        handler, AuthSession(token="tok-1", user_id="u1"), lambda ep: ep.list_sessions()
    )

    anonymous, signed_in = seen
    assert anonymous.url.params["device_id"] == "dev-1"
    assert anonymous.url.params["limit"] == "5"
    assert "authorization" not in anonymous.headers
    assert "device_id" not in signed_in.url.params
    assert signed_in.headers["authorization"] == "Bearer tok-1"


def test_upsert_round_trip_and_detail_path_quoting() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "session": {"local_id": body["local_session_id"], "remote_id": "r-9", "is_new": True},
                    "observations": [
                        {"local_id": obs["local_id"], "remote_id": f"o-{obs['local_id']}"}
                        for obs in body["observations"]
                    ],
                },
            )
        return httpx.Response(200, json={"session": {"id": "a/b", "observations": []}})

    payload = {"local_session_id": 3, "remote_session_id": None, "observations": [{"local_id": 4}]}

    async def calls(ep: HttpSyncEndpoint):
        upserted = await ep.upsert_session(payload)
        detail = await ep.get_session_detail("a/b")
        return upserted, detail

    upserted, detail = _run_with_transport(handler, AuthSession(), calls)

    assert upserted.remote_session_id == "r-9"
    assert upserted.observation_ids == {4: "o-4"}
    assert upserted.is_new is True
    assert detail["id"] == "a/b"
    assert seen[1].url.raw_path.startswith(b"/v1/sessions/a%2Fb")


def test_parse_upsert_result_requires_session_id() -> None:
    with pytest.raises(RemoteUnavailableError):
        parse_upsert_result({"session": {}, "observations": []})
    with pytest.raises(RemoteUnavailableError):
        parse_upsert_result({"session": {"remote_id": "r"}, "observations": "nope"})


def test_invalid_url_becomes_remote_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.InvalidURL("Invalid port: 'eighty'")

    with pytest.raises(RemoteUnavailableError, match="Invalid port"):
        _run_with_transport(handler, AuthSession(), lambda ep: ep.list_sessions())


def test_sync_check_reports_unreachable_for_bad_api_base(monkeypatch) -> None:
    monkeypatch.setenv("METEORLOG_API_BASE", "http://127.0.0.1:eighty")
    result = CliRunner().invoke(app, ["sync", "check"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Remote unreachable" in result.stdout
