import json
from pathlib import Path

import pytest

from meteorlog.auth import AuthSession
from meteorlog.config import (
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
    write_config_file,
)


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_load_config_tolerates_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    cfg = load_config(config_path)
    assert cfg.api_base == "http://127.0.0.1:8899"
    assert cfg.location_privacy is None


def test_config_path_env_override(tmp_path: Path, monkeypatch) -> None:
    custom = tmp_path / "custom.json"
    monkeypatch.setenv("METEORLOG_CONFIG", str(custom))
    assert get_config_path() == custom


def test_write_then_load_with_env_precedence(tmp_path: Path, monkeypatch) -> None:
    config_path = write_config_file(
        {"api_base": "https://sync.example.com", "server_port": 9000, "auth_token": "file-token"}
    )
    assert json.loads(config_path.read_text())["server_port"] == 9000

    monkeypatch.setenv("METEORLOG_AUTH_TOKEN", "env-token")
    monkeypatch.setenv("METEORLOG_REQUEST_TIMEOUT_S", "2.5")
    cfg = load_config()

    assert cfg.api_base == "https://sync.example.com"
    assert cfg.server_port == 9000
    assert cfg.auth_token == "env-token"
    assert cfg.request_timeout_s == 2.5
    assert get_env_overrides() == {"request_timeout_s": "2.5", "auth_token": "env-token"}


def test_auth_session_from_config_and_headers(tmp_path: Path) -> None:
    write_config_file({"auth_token": "tok", "auth_user_id": "u-1", "auth_email": "a@b.c"})
    auth = AuthSession.from_config(load_config())

    assert auth.is_authenticated()
    assert auth.get_auth_headers() == {"Authorization": "Bearer tok"}

    auth.logout()
    assert not auth.is_authenticated()
    assert auth.get_auth_headers() == {}
    assert auth.to_config_dict() == {"auth_token": None, "auth_user_id": None, "auth_email": None}
    with pytest.raises(ValueError):
        auth.login("")
