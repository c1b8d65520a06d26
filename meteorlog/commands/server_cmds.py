from __future__ import annotations

from pathlib import Path

from rich import print

from ..errors import MeteorlogError
from ..remote.store import RemoteStore
from .common import fail


def _server_db(load_config, db_path: str | None) -> Path:
    return Path(db_path or load_config().server_db).expanduser()


def server_serve_cmd(
    *,
    load_config,
    run_remote_server,
    host: str | None,
    port: int | None,
    db_path: str | None,
) -> None:
    """Run the reference remote sync server in the foreground."""

    config = load_config()
    resolved_host = host or config.server_host
    resolved_port = port or int(config.server_port)
    resolved_db = _server_db(load_config, db_path)
    print(f"Serving sync API on http://{resolved_host}:{resolved_port} (db {resolved_db})")
    try:
        run_remote_server(resolved_host, resolved_port, db_path=resolved_db)
    except KeyboardInterrupt:
        print("Stopped")


def server_add_user_cmd(*, load_config, db_path: str | None, email: str) -> None:
    """Create an account on the reference server and issue a token for it.

    An existing account keeps its id and gets an additional token.
    """

    store = RemoteStore(_server_db(load_config, db_path))
    try:
        existing = store.find_user_by_email(email)
        user_id = existing["id"] if existing else store.create_user(email)
        token = store.issue_token(user_id)
    except (MeteorlogError, ValueError) as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    verb = "Issued token for" if existing else "Created user"
    print(f"[green]{verb} {email}[/green]")
    print(f"- User id: {user_id}")
    print(f"- Token: {token}")
    print(f"Link a device with: meteorlog account link --token {token} --user-id {user_id}")
