from __future__ import annotations

import copy
from typing import Any

from ..auth import AuthSession
from ..errors import RemoteUnavailableError
from ..sync.endpoint import parse_upsert_result
from ..types import SessionPayload, UpsertResult
from .store import RemoteStore


class LoopbackEndpoint:
    """In-process ``RemoteSyncEndpoint`` backed directly by a ``RemoteStore``.

    Mirrors the HTTP API's identity rules: the bearer token is resolved on
    every call and an unknown token counts as anonymous.
    """

    def __init__(self, remote_store: RemoteStore, *, auth: AuthSession, device_id: str) -> None:
        self.remote_store = remote_store
        self.auth = auth
        self.device_id = device_id

    def _user_id(self) -> str | None:
        if not self.auth.is_authenticated():
            return None
        user = self.remote_store.user_for_token(self.auth.token)
        return str(user["id"]) if user else None

    async def upsert_session(self, payload: SessionPayload) -> UpsertResult:
        # Copy so the caller's payload cannot alias stored state.
        response = self.remote_store.upsert_session(
            copy.deepcopy(dict(payload)), user_id=self._user_id()
        )
        return parse_upsert_result(response)

    async def list_sessions(
        self, *, limit: int | None = None, offset: int = 0
    ) -> list[dict[str, Any]]:
        return self.remote_store.list_sessions(
            user_id=self._user_id(),
            device_id=self.device_id,
            limit=limit,
            offset=offset,
        )

    async def get_session_detail(self, remote_session_id: str) -> dict[str, Any]:
        return self.remote_store.get_session_detail(
            remote_session_id,
            user_id=self._user_id(),
            device_id=self.device_id,
        )

    async def migrate_device_sessions(self, device_id: str) -> int:
        user_id = self._user_id()
        if not user_id:
            raise RemoteUnavailableError("device migration failed (401: unauthorized)")
        return self.remote_store.migrate_device_sessions(user_id, device_id)
