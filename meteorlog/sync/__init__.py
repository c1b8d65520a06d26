from __future__ import annotations

from .endpoint import HttpSyncEndpoint, RemoteSyncEndpoint
from .engine import SyncEngine
from .linking import AccountLinker, LinkResult

__all__ = [
    "AccountLinker",
    "HttpSyncEndpoint",
    "LinkResult",
    "RemoteSyncEndpoint",
    "SyncEngine",
]
