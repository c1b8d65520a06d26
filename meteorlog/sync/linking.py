from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..auth import AuthSession
from ..types import DownloadResult, SyncBatchResult
from .endpoint import RemoteSyncEndpoint
from .engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    migrated: int | None = None
    download: DownloadResult | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "migrated": self.migrated,
            "download": self.download.to_dict() if self.download else None,
            "errors": list(self.errors),
        }


class AccountLinker:
    """Reconcile device history into an account right after authentication.

    Both steps are best-effort: failures are logged and reported in the
    result, never raised, so a login is never undone by sync trouble.
    """

    def __init__(
        self,
        engine: SyncEngine,
        endpoint: RemoteSyncEndpoint,
        auth: AuthSession,
        *,
        device_id: str,
    ) -> None:
        self.engine = engine
        self.endpoint = endpoint
        self.auth = auth
        self.device_id = device_id

    async def on_authenticated(self) -> LinkResult:
        result = LinkResult()
        if not self.auth.is_authenticated():
            logger.warning("account linking skipped: not authenticated")
            return result

        try:
            result.migrated = await self.endpoint.migrate_device_sessions(self.device_id)
            logger.info(
                "account linking: migrated %d device session(s) to user %s",
                result.migrated,
                self.auth.user_id or "?",
            )
        except Exception as exc:
            logger.exception("account linking: device migration failed", exc_info=exc)
            result.errors.append(f"migration: {str(exc).strip() or exc.__class__.__name__}")

        try:
            result.download = await self.engine.download_remote_sessions()
        except Exception as exc:
            logger.exception("account linking: session download failed", exc_info=exc)
            result.errors.append(f"download: {str(exc).strip() or exc.__class__.__name__}")
        else:
            for err in result.download.errors:
                result.errors.append(f"download {err.session_id}: {err.message}")
        return result

    async def after_push(self, push_result: SyncBatchResult) -> int | None:
        """Attach sessions this device just created anonymously to the account."""
        if not self.auth.is_authenticated() or push_result.synced <= 0:
            return None
        try:
            migrated = await self.endpoint.migrate_device_sessions(self.device_id)
        except Exception as exc:
            logger.exception("post-push device migration failed", exc_info=exc)
            return None
        if migrated:
            logger.info("post-push migration linked %d session(s)", migrated)
        return migrated
