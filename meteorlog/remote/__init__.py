from __future__ import annotations

from .api import build_remote_handler, run_remote_server
from .loopback import LoopbackEndpoint
from .store import RemoteStore

__all__ = ["LoopbackEndpoint", "RemoteStore", "build_remote_handler", "run_remote_server"]
