from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from ..auth import AuthSession
from ..errors import (
    MeteorlogError,
    PerSessionSyncError,
    RemoteUnavailableError,
    SyncInProgressError,
)
from ..store import ObservationStore
from ..transform import (
    observation_from_remote_row,
    session_from_remote_row,
    to_remote_payload,
)
from ..types import (
    LOCATION_PRIVACY_LEVELS,
    SYNC_MODIFIED,
    SYNC_SYNCED,
    SYNC_UNSYNCED,
    DownloadResult,
    Observation,
    Session,
    SyncBatchResult,
    UpsertResult,
)
from .endpoint import RemoteSyncEndpoint

logger = logging.getLogger(__name__)


class SyncEngine:
    """Push local sessions to the remote store and pull account sessions down.

    The store is re-read for every decision; no sync state is cached between
    calls. Only one push may run at a time per engine.
    """

    def __init__(
        self,
        store: ObservationStore,
        endpoint: RemoteSyncEndpoint,
        auth: AuthSession,
        *,
        device_id: str,
    ) -> None:
        self.store = store
        self.endpoint = endpoint
        self.auth = auth
        self.device_id = device_id
        self._push_in_progress = False

    @property
    def push_in_progress(self) -> bool:
        return self._push_in_progress

    async def sync_to_remote(self, location_privacy: str | None = None) -> SyncBatchResult:
        if self._push_in_progress:
            raise SyncInProgressError()
        if location_privacy is not None and location_privacy not in LOCATION_PRIVACY_LEVELS:
            raise ValueError(f"invalid location privacy: {location_privacy!r}")
        self._push_in_progress = True
        result = SyncBatchResult()
        try:
            sessions = self.store.list_unsynced_sessions()
            logger.info("sync push: %d session(s) pending", len(sessions))
            for session in sessions:
                try:
                    await self._sync_session(session, location_privacy)
                except Exception as exc:
                    logger.warning("sync push failed for session %s: %s", session.id, exc)
                    result.failed += 1
                    result.errors.append(PerSessionSyncError.from_exception(session.id, exc))
                else:
                    result.synced += 1
            logger.info("sync push done: synced=%d failed=%d", result.synced, result.failed)
            return result
        finally:
            self._push_in_progress = False

    async def _sync_session(self, session: Session, location_privacy: str | None) -> None:
        observations = self.store.list_observations_for_session(session.id)
        is_first_sync = session.remote_id is None
        payload = to_remote_payload(session, observations, self.device_id, location_privacy)
        logger.debug(
            "sync push: session %s (%s, first=%s, observations=%d)",
            session.id,
            session.sync_status,
            is_first_sync,
            len(observations),
        )
        upserted = await self.endpoint.upsert_session(payload)
        _check_observation_ids(upserted, observations)

        if is_first_sync:
            self.store.mark_session_synced(
                session.id,
                upserted.remote_session_id,
                expected_revision=session.revision,
            )
            for obs in observations:
                self.store.mark_observation_synced(
                    obs.id,
                    upserted.observation_ids.get(obs.id),
                    expected_revision=obs.revision,
                )
            return

        # Remote identity is already bound; never rebind it from the response.
        self.store.mark_session_synced(session.id, None, expected_revision=session.revision)
        for obs in observations:
            if obs.sync_status == SYNC_SYNCED:
                continue
            new_remote_id = None if obs.remote_id else upserted.observation_ids.get(obs.id)
            self.store.mark_observation_synced(
                obs.id,
                new_remote_id,
                expected_revision=obs.revision,
            )

    async def download_remote_sessions(self) -> DownloadResult:
        result = DownloadResult()
        if not self.auth.is_authenticated():
            logger.info("sync pull skipped: not authenticated")
            return result
        try:
            remote_sessions = await self.endpoint.list_sessions()
        except Exception as exc:
            logger.warning("sync pull: listing remote sessions failed: %s", exc)
            result.errors.append(PerSessionSyncError.from_exception(None, exc))
            return result
        logger.info("sync pull: %d remote session(s)", len(remote_sessions))

        for remote_session in remote_sessions:
            remote_id = str(remote_session.get("id") or "")
            try:
                if not remote_id:
                    raise RemoteUnavailableError("remote session row without id")
                if self.store.find_session_by_remote_id(remote_id) is not None:
                    result.skipped += 1
                    continue
                local_id = await self._download_session(remote_id)
            except Exception as exc:
                logger.warning("sync pull failed for remote session %s: %s", remote_id, exc)
                result.errors.append(PerSessionSyncError.from_exception(remote_id or None, exc))
            else:
                if local_id is None:
                    result.skipped += 1
                else:
                    result.downloaded += 1
        logger.info(
            "sync pull done: downloaded=%d skipped=%d errors=%d",
            result.downloaded,
            result.skipped,
            len(result.errors),
        )
        return result

    async def _download_session(self, remote_id: str) -> int | None:
        detail = await self.endpoint.get_session_detail(remote_id)
        now = dt.datetime.now(dt.UTC).isoformat()
        # The detail fetch suspends; a concurrent pull may have created it meanwhile.
        existing = self.store.find_session_by_remote_id(remote_id)
        if existing is not None:
            return None
        session_fields = session_from_remote_row(
            detail, user_id=self.auth.user_id, synced_at=now
        )
        if not session_fields.get("device_id"):
            session_fields["device_id"] = self.device_id
        observation_fields = [
            observation_from_remote_row(remote_obs, synced_at=now)
            for remote_obs in detail.get("observations") or []
            if isinstance(remote_obs, dict)
        ]
        local_session_id = self.store.import_remote_session(session_fields, observation_fields)
        logger.debug("sync pull: remote session %s -> local %s", remote_id, local_session_id)
        return local_session_id

    def get_sync_status(self) -> dict[str, Any]:
        sessions = self.store.count_by_sync_status("sessions")
        observations = self.store.count_by_sync_status("observations")
        pending_sessions = sessions[SYNC_UNSYNCED] + sessions[SYNC_MODIFIED]
        pending_observations = observations[SYNC_UNSYNCED] + observations[SYNC_MODIFIED]
        return {
            "sessions": {
                SYNC_UNSYNCED: sessions[SYNC_UNSYNCED],
                SYNC_MODIFIED: sessions[SYNC_MODIFIED],
            },
            "observations": {
                SYNC_UNSYNCED: observations[SYNC_UNSYNCED],
                SYNC_MODIFIED: observations[SYNC_MODIFIED],
            },
            "total_unsynced": pending_sessions,
            "has_unsynced_data": pending_sessions > 0 or pending_observations > 0,
            "push_in_progress": self._push_in_progress,
            "authenticated": self.auth.is_authenticated(),
            "device_id": self.device_id,
        }

    async def test_connection(self) -> bool:
        try:
            await self.endpoint.list_sessions(limit=1)
        except MeteorlogError as exc:
            logger.warning("connection test failed: %s", exc)
            return False
        return True


def _check_observation_ids(upserted: UpsertResult, observations: list[Observation]) -> None:
    missing = [
        obs.id
        for obs in observations
        if obs.remote_id is None and obs.id not in upserted.observation_ids
    ]
    if missing:
        ids = ", ".join(str(item) for item in missing)
        raise RemoteUnavailableError(f"sync response missing remote ids for observations {ids}")
