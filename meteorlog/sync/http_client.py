from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlparse

import httpx

from ..errors import RemoteUnavailableError


def build_base_url(address: str) -> str:
    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    # "localhost:8899" parses with scheme "localhost"; require an explicit "://".
    if "://" in trimmed and urlparse(trimmed).scheme:
        return trimmed
    return f"http://{trimmed}"


def error_detail(payload: dict[str, Any] | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    message = payload.get("message")
    if isinstance(error, str) and isinstance(message, str):
        return f"{error}:{message}"
    if isinstance(error, str):
        return error
    return None


def _decode_payload(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        snippet = raw[:240].decode("utf-8", errors="replace").strip()
        return {"error": f"non_json_response: {snippet}" if snippet else "non_json_response"}
    if isinstance(payload, dict):
        return payload
    return {"error": f"unexpected_json_type: {type(payload).__name__}"}


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> tuple[int, dict[str, Any] | None]:
    """Send one JSON request; transport failures become RemoteUnavailableError.

    Bodies that are not JSON objects never raise: they degrade to an
    ``{"error": ...}`` payload so callers can report the status code.
    """
    request_headers = {"Accept": "application/json"}
    body_bytes = None
    if body is not None:
        body_bytes = json.dumps(body, ensure_ascii=False).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
    if headers:
        request_headers.update(headers)
    try:
        resp = await client.request(
            method,
            url,
            headers=request_headers,
            content=body_bytes,
            params=params,
        )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        detail = str(exc).strip() or exc.__class__.__name__
        raise RemoteUnavailableError(f"{method} {url} failed: {detail}") from exc
    return int(resp.status_code), _decode_payload(resp.content)
