from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ..auth import AuthSession
from ..errors import NotFoundError, RemoteUnavailableError
from ..types import SessionPayload, UpsertResult
from .http_client import build_base_url, error_detail, request_json


class RemoteSyncEndpoint(Protocol):
    """Remote store operations consumed by the sync engine.

    Implementations are bound to one device id and one auth session; when the
    session is authenticated it takes precedence over the device id.
    """

    async def upsert_session(self, payload: SessionPayload) -> UpsertResult: ...

    async def list_sessions(
        self, *, limit: int | None = None, offset: int = 0
    ) -> list[dict[str, Any]]: ...

    async def get_session_detail(self, remote_session_id: str) -> dict[str, Any]: ...

    async def migrate_device_sessions(self, device_id: str) -> int: ...


def parse_upsert_result(payload: dict[str, Any]) -> UpsertResult:
    session = payload.get("session")
    if not isinstance(session, dict) or not session.get("remote_id"):
        raise RemoteUnavailableError("invalid sync response: missing session remote_id")
    mapping: dict[int, str] = {}
    observations = payload.get("observations") or []
    if not isinstance(observations, list):
        raise RemoteUnavailableError("invalid sync response: observations must be a list")
    for item in observations:
        if not isinstance(item, dict):
            continue
        local_id = item.get("local_id")
        remote_id = item.get("remote_id")
        if local_id is None or not remote_id:
            continue
        mapping[int(local_id)] = str(remote_id)
    return UpsertResult(
        remote_session_id=str(session["remote_id"]),
        observation_ids=mapping,
        is_new=bool(session.get("is_new")),
    )


class HttpSyncEndpoint:
    def __init__(
        self,
        base_url: str,
        *,
        auth: AuthSession,
        device_id: str,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = build_base_url(base_url)
        if not self.base_url:
            raise ValueError("base_url is required")
        self.auth = auth
        self.device_id = device_id
        self.timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpSyncEndpoint:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    def _identity_params(self) -> dict[str, Any]:
        if self.auth.is_authenticated():
            return {}
        return {"device_id": self.device_id}

    async def _call(
        self,
        op: str,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        status, payload = await request_json(
            self._http(),
            method,
            url,
            headers=self.auth.get_auth_headers(),
            body=body,
            params=params,
        )
        if status == 200 and payload is not None:
            return payload
        detail = error_detail(payload)
        if status == 404:
            if detail and not detail.startswith("non_json_response"):
                raise NotFoundError(f"{op} failed (404: {detail})")
            raise RemoteUnavailableError(f"{op} failed: endpoint not found at {url}")
        suffix = f" ({status}: {detail})" if detail else f" ({status})"
        raise RemoteUnavailableError(f"{op} failed{suffix}")

    async def upsert_session(self, payload: SessionPayload) -> UpsertResult:
        result = await self._call(
            "session sync", "POST", "/v1/sessions/sync", body=dict(payload)
        )
        return parse_upsert_result(result)

    async def list_sessions(
        self, *, limit: int | None = None, offset: int = 0
    ) -> list[dict[str, Any]]:
        params = self._identity_params()
        if limit is not None:
            params["limit"] = int(limit)
        if offset:
            params["offset"] = int(offset)
        result = await self._call("session list", "GET", "/v1/sessions", params=params)
        sessions = result.get("sessions")
        if not isinstance(sessions, list):
            raise RemoteUnavailableError("invalid session list response")
        return [item for item in sessions if isinstance(item, dict)]

    async def get_session_detail(self, remote_session_id: str) -> dict[str, Any]:
        result = await self._call(
            "session detail",
            "GET",
            f"/v1/sessions/{quote(remote_session_id, safe='')}",
            params=self._identity_params(),
        )
        session = result.get("session")
        if not isinstance(session, dict):
            raise RemoteUnavailableError("invalid session detail response")
        return session

    async def migrate_device_sessions(self, device_id: str) -> int:
        result = await self._call(
            "device migration",
            "POST",
            "/v1/sessions/migrate",
            body={"device_id": device_id},
        )
        return int(result.get("migrated_count") or 0)
