from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/meteorlog/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "api_base": "METEORLOG_API_BASE",
    "request_timeout_s": "METEORLOG_REQUEST_TIMEOUT_S",
    "location_privacy": "METEORLOG_LOCATION_PRIVACY",
    "auth_token": "METEORLOG_AUTH_TOKEN",
    "auth_user_id": "METEORLOG_AUTH_USER_ID",
    "auth_email": "METEORLOG_AUTH_EMAIL",
    "server_host": "METEORLOG_SERVER_HOST",
    "server_port": "METEORLOG_SERVER_PORT",
    "server_db": "METEORLOG_SERVER_DB",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("METEORLOG_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class MeteorlogConfig:
    api_base: str = "http://127.0.0.1:8899"
    request_timeout_s: float = 10.0
    location_privacy: str | None = None
    auth_token: str | None = None
    auth_user_id: str | None = None
    auth_email: str | None = None
    server_host: str = "127.0.0.1"
    server_port: int = 8899
    server_db: str = "~/.meteorlog-remote.sqlite"


def load_config(path: Path | None = None) -> MeteorlogConfig:
    cfg = MeteorlogConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


def _apply_dict(cfg: MeteorlogConfig, data: dict[str, Any]) -> MeteorlogConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        setattr(cfg, key, value)
    return cfg


def _apply_env(cfg: MeteorlogConfig) -> MeteorlogConfig:
    cfg.api_base = os.getenv("METEORLOG_API_BASE", cfg.api_base)
    cfg.request_timeout_s = float(
        os.getenv("METEORLOG_REQUEST_TIMEOUT_S", cfg.request_timeout_s)
    )
    cfg.location_privacy = os.getenv("METEORLOG_LOCATION_PRIVACY", cfg.location_privacy)
    cfg.auth_token = os.getenv("METEORLOG_AUTH_TOKEN", cfg.auth_token)
    cfg.auth_user_id = os.getenv("METEORLOG_AUTH_USER_ID", cfg.auth_user_id)
    cfg.auth_email = os.getenv("METEORLOG_AUTH_EMAIL", cfg.auth_email)
    cfg.server_host = os.getenv("METEORLOG_SERVER_HOST", cfg.server_host)
    cfg.server_port = int(os.getenv("METEORLOG_SERVER_PORT", cfg.server_port))
    cfg.server_db = os.getenv("METEORLOG_SERVER_DB", cfg.server_db)
    return cfg
