from __future__ import annotations

from typing import Any


class MeteorlogError(Exception):
    """Base class for errors raised by the sync core."""


class NotFoundError(MeteorlogError):
    """A local or remote identity does not exist (or is not visible to the caller)."""


class SyncInProgressError(MeteorlogError):
    """A push was requested while another push on the same engine is still running."""

    def __init__(self, message: str = "sync already in progress") -> None:
        super().__init__(message)


class RemoteUnavailableError(MeteorlogError):
    """The remote endpoint could not be reached or answered with an error."""


class PerSessionSyncError(MeteorlogError):
    """Failure attributable to a single session during a batch.

    These are collected into batch results and never raised out of the batch loop.
    """

    def __init__(self, session_id: int | str | None, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.message = message

    @classmethod
    def from_exception(cls, session_id: int | str | None, exc: BaseException) -> PerSessionSyncError:
        detail = str(exc).strip() or exc.__class__.__name__
        err = cls(session_id, detail)
        err.__cause__ = exc
        return err

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "error": self.message}
