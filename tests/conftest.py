from __future__ import annotations

from pathlib import Path

import pytest

ISOLATED_ENV = (
    "METEORLOG_API_BASE",
    "METEORLOG_AUTH_EMAIL",
    "METEORLOG_AUTH_TOKEN",
    "METEORLOG_AUTH_USER_ID",
    "METEORLOG_DEVICE_ID",
    "METEORLOG_LOCATION_PRIVACY",
    "METEORLOG_REQUEST_TIMEOUT_S",
    "METEORLOG_SERVER_DB",
    "METEORLOG_SERVER_HOST",
    "METEORLOG_SERVER_LOGS",
    "METEORLOG_SERVER_PORT",
)


@pytest.fixture(autouse=True)
def _isolate_meteorlog_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("METEORLOG_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("METEORLOG_DB", str(tmp_path / "meteorlog.sqlite"))
