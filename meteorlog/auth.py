from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .config import MeteorlogConfig


@dataclass
class AuthSession:
    """Bearer-token state consumed by the sync engine and the account linker.

    Login itself happens elsewhere; this only carries the resulting token.
    """

    token: str | None = None
    user_id: str | None = None
    email: str | None = None

    @classmethod
    def from_config(cls, config: MeteorlogConfig) -> AuthSession:
        return cls(
            token=config.auth_token or None,
            user_id=config.auth_user_id or None,
            email=config.auth_email or None,
        )

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def get_auth_headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def login(self, token: str, *, user_id: str | None = None, email: str | None = None) -> None:
        if not token:
            raise ValueError("token is required")
        self.token = token
        self.user_id = user_id
        self.email = email

    def logout(self) -> None:
        self.token = None
        self.user_id = None
        self.email = None

    def to_config_dict(self) -> dict[str, Any]:
        return {
            "auth_token": self.token,
            "auth_user_id": self.user_id,
            "auth_email": self.email,
        }
