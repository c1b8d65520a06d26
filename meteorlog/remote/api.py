from __future__ import annotations

import contextlib
import json
import logging
import os
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

from ..db import DEFAULT_REMOTE_DB_PATH
from ..errors import NotFoundError
from .store import RemoteStore

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/v1/sessions"
SESSION_PREFIX = "/v1/sessions/"


def _safe_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


MAX_BODY_BYTES = _safe_int_env("METEORLOG_SERVER_MAX_BODY_BYTES", 1048576)
MAX_LIST_LIMIT = 500


def _read_body(handler: BaseHTTPRequestHandler) -> bytes:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0:
        return b""
    if length > MAX_BODY_BYTES:
        raise ValueError("payload_too_large")
    return handler.rfile.read(length)


def _parse_json_body(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _send_json(handler: BaseHTTPRequestHandler, payload: dict[str, Any], status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _bearer_token(handler: BaseHTTPRequestHandler) -> str | None:
    value = str(handler.headers.get("Authorization") or "")
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _query_int(params: dict[str, list[str]], name: str, default: int | None) -> int | None:
    raw = params.get(name, [None])[0]
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def build_remote_handler(db_path: Path | None = None):
    resolved_db = Path(db_path or os.environ.get("METEORLOG_SERVER_DB") or DEFAULT_REMOTE_DB_PATH)
    # Create the schema once so per-request connections never race on it.
    RemoteStore(resolved_db).close()

    class RemoteHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            if os.environ.get("METEORLOG_SERVER_LOGS") == "1":
                super().log_message(format, *args)

        def _store(self) -> RemoteStore:
            return RemoteStore(resolved_db)

        def _user_id(self, store: RemoteStore) -> str | None:
            # Unknown tokens fall back to anonymous access.
            user = store.user_for_token(_bearer_token(self))
            return str(user["id"]) if user else None

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            params = parse_qs(parsed.query)
            device_id = params.get("device_id", [None])[0] or None
            if parsed.path == SESSIONS_PATH:
                store = self._store()
                try:
                    user_id = self._user_id(store)
                    if not user_id and not device_id:
                        _send_json(self, {"error": "missing_device_id"}, status=400)
                        return
                    limit = _query_int(params, "limit", None)
                    if limit is not None:
                        limit = max(1, min(limit, MAX_LIST_LIMIT))
                    offset = max(0, _query_int(params, "offset", 0) or 0)
                    sessions = store.list_sessions(
                        user_id=user_id, device_id=device_id, limit=limit, offset=offset
                    )
                    _send_json(self, {"sessions": sessions, "count": len(sessions)})
                except Exception:
                    logger.exception("remote session list failed")
                    _send_json(self, {"error": "internal_error"}, status=500)
                finally:
                    store.close()
                return

            if parsed.path.startswith(SESSION_PREFIX):
                remote_id = unquote(parsed.path[len(SESSION_PREFIX) :])
                if not remote_id or "/" in remote_id:
                    _send_json(self, {"error": "not_found"}, status=404)
                    return
                store = self._store()
                try:
                    user_id = self._user_id(store)
                    detail = store.get_session_detail(
                        remote_id, user_id=user_id, device_id=device_id
                    )
                    _send_json(self, {"session": detail})
                except NotFoundError:
                    _send_json(self, {"error": "not_found"}, status=404)
                except Exception:
                    logger.exception("remote session detail failed")
                    _send_json(self, {"error": "internal_error"}, status=500)
                finally:
                    store.close()
                return

            _send_json(self, {"error": "not_found"}, status=404)

        def do_POST(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path not in ("/v1/sessions/sync", "/v1/sessions/migrate"):
                _send_json(self, {"error": "not_found"}, status=404)
                return
            try:
                raw = _read_body(self)
            except ValueError:
                _send_json(self, {"error": "payload_too_large"}, status=413)
                return
            data = _parse_json_body(raw)
            if data is None:
                _send_json(self, {"error": "invalid_json"}, status=400)
                return
            store = self._store()
            try:
                user_id = self._user_id(store)
                if parsed.path == "/v1/sessions/migrate":
                    self._migrate(store, user_id, data)
                    return
                try:
                    result = store.upsert_session(data, user_id=user_id)
                except NotFoundError:
                    _send_json(self, {"error": "not_found"}, status=404)
                except (TypeError, ValueError) as exc:
                    _send_json(self, {"error": str(exc) or "invalid_session"}, status=400)
                else:
                    _send_json(self, result)
            except Exception:
                logger.exception("remote session write failed")
                _send_json(self, {"error": "internal_error"}, status=500)
            finally:
                store.close()

        def _migrate(self, store: RemoteStore, user_id: str | None, data: dict[str, Any]) -> None:
            if not user_id:
                _send_json(self, {"error": "unauthorized"}, status=401)
                return
            device_id = data.get("device_id")
            if not isinstance(device_id, str) or not device_id:
                _send_json(self, {"error": "missing_device_id"}, status=400)
                return
            migrated = store.migrate_device_sessions(user_id, device_id)
            _send_json(self, {"migrated_count": migrated})

    return RemoteHandler


def run_remote_server(
    host: str,
    port: int,
    *,
    db_path: Path | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    handler = build_remote_handler(db_path)

    class Server(ThreadingHTTPServer):
        address_family = socket.AF_INET6 if ":" in host else socket.AF_INET
        daemon_threads = True

        def server_bind(self) -> None:
            if self.address_family == socket.AF_INET6:
                with contextlib.suppress(OSError):
                    self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    server = Server((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("remote sync server listening on %s:%s", host, server.server_address[1])
    stop = stop_event or threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        server.shutdown()
        server.server_close()
