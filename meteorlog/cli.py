from __future__ import annotations

import logging
from typing import Any

import typer
from rich import print

from . import __version__
from .commands.account_cmds import account_link_cmd, account_logout_cmd, account_whoami_cmd
from .commands.common import read_config_or_exit, store_from_path, write_config_or_exit
from .commands.server_cmds import server_add_user_cmd, server_serve_cmd
from .commands.session_cmds import (
    observe_cmd,
    session_end_cmd,
    session_list_cmd,
    session_note_cmd,
    session_show_cmd,
    session_start_cmd,
)
from .commands.sync_cmds import sync_check_cmd, sync_pull_cmd, sync_push_cmd, sync_status_cmd
from .config import load_config
from .remote.api import run_remote_server
from .store import ObservationStore
from .types import LOCATION_PRIVACY_LEVELS

app = typer.Typer(help="meteorlog: offline-first observation log with account sync")
session_app = typer.Typer(help="Record observation sessions")
sync_app = typer.Typer(help="Sync sessions with the remote store")
account_app = typer.Typer(help="Link this device to an account")
server_app = typer.Typer(help="Reference remote sync server")
app.add_typer(session_app, name="session")
app.add_typer(sync_app, name="sync")
app.add_typer(account_app, name="account")
app.add_typer(server_app, name="server")

DB_PATH_HELP = "Path to SQLite database"


def _store(db_path: str | None) -> ObservationStore:
    return store_from_path(db_path)


def _read_config_or_exit() -> dict[str, Any]:
    return read_config_or_exit()


def _write_config_or_exit(data: dict[str, Any]) -> None:
    write_config_or_exit(data)


def _check_privacy(value: str | None) -> str | None:
    if value is not None and value not in LOCATION_PRIVACY_LEVELS:
        raise typer.BadParameter(f"must be one of: {', '.join(LOCATION_PRIVACY_LEVELS)}")
    return value


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@app.command()
def init_db(db_path: str = typer.Option(None, help=DB_PATH_HELP)) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    store = _store(db_path)
    try:
        print(f"Initialized database at {store.db_path}")
        print(f"- Device: {store.device_id}")
    finally:
        store.close()


@session_app.command("start")
def session_start(
    notes: str = typer.Option("", help="Free-text notes"),
    lat: float = typer.Option(None, help="Latitude of the observation site"),
    lon: float = typer.Option(None, help="Longitude of the observation site"),
    accuracy: float = typer.Option(None, help="Location accuracy in metres"),
    privacy: str = typer.Option(
        None,
        callback=_check_privacy,
        help="Location privacy: full, obfuscated, hidden (default: config location_privacy)",
    ),
    practice: bool = typer.Option(False, help="Practice session with ground truth"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Start a new observation session."""
    session_start_cmd(
        store_from_path=_store,
        load_config=load_config,
        db_path=db_path,
        notes=notes,
        lat=lat,
        lon=lon,
        accuracy=accuracy,
        privacy=privacy,
        practice=practice,
    )


@session_app.command("end")
def session_end(
    session_id: int,
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Close a session and record its duration and observation count."""
    session_end_cmd(store_from_path=_store, db_path=db_path, session_id=session_id)


@session_app.command("note")
def session_note(
    session_id: int,
    text: str,
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Replace a session's notes."""
    session_note_cmd(store_from_path=_store, db_path=db_path, session_id=session_id, text=text)


@session_app.command("list")
def session_list(
    limit: int = typer.Option(20, help="Max sessions"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """List recent sessions."""
    session_list_cmd(store_from_path=_store, db_path=db_path, limit=limit)


@session_app.command("show")
def session_show(
    session_id: int,
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Print a session and its observations as JSON."""
    session_show_cmd(store_from_path=_store, db_path=db_path, session_id=session_id)


@app.command()
def observe(
    session_id: int,
    duration_ms: int = typer.Option(..., help="How long the event lasted"),
    intensity: int = typer.Option(..., help="Perceived intensity, 0-100"),
    lat: float = typer.Option(None, help="Latitude"),
    lon: float = typer.Option(None, help="Longitude"),
    accuracy: float = typer.Option(None, help="Location accuracy in metres"),
    actual_duration_ms: int = typer.Option(None, help="Ground-truth duration (practice)"),
    actual_intensity: int = typer.Option(None, help="Ground-truth intensity (practice)"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Record one observation in a session."""
    observe_cmd(
        store_from_path=_store,
        db_path=db_path,
        session_id=session_id,
        duration_ms=duration_ms,
        intensity=intensity,
        lat=lat,
        lon=lon,
        accuracy=accuracy,
        actual_duration_ms=actual_duration_ms,
        actual_intensity=actual_intensity,
    )


@sync_app.command("push")
def sync_push(
    privacy: str = typer.Option(
        None,
        callback=_check_privacy,
        help="Override every session's location privacy for this push",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the push result as JSON"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Push unsynced and modified sessions to the remote store."""
    sync_push_cmd(
        store_from_path=_store,
        load_config=load_config,
        db_path=db_path,
        privacy=privacy,
        as_json=as_json,
    )


@sync_app.command("pull")
def sync_pull(
    as_json: bool = typer.Option(False, "--json", help="Print the pull result as JSON"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Download account sessions that are not on this device yet."""
    sync_pull_cmd(
        store_from_path=_store, load_config=load_config, db_path=db_path, as_json=as_json
    )


@sync_app.command("status")
def sync_status(
    as_json: bool = typer.Option(False, "--json", help="Print raw status as JSON"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Show pending local changes and account state."""
    sync_status_cmd(
        store_from_path=_store, load_config=load_config, db_path=db_path, as_json=as_json
    )


@sync_app.command("check")
def sync_check(db_path: str = typer.Option(None, help=DB_PATH_HELP)) -> None:
    """Check that the remote store answers."""
    sync_check_cmd(store_from_path=_store, load_config=load_config, db_path=db_path)


@account_app.command("link")
def account_link(
    token: str = typer.Option(..., help="Bearer token issued for the account"),
    user_id: str = typer.Option(None, help="Account user id"),
    email: str = typer.Option(None, help="Account email"),
    skip_reconcile: bool = typer.Option(
        False, help="Only save the token; skip migration and pull-down"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the link result as JSON"),
    db_path: str = typer.Option(None, help=DB_PATH_HELP),
) -> None:
    """Save an account token, then attach this device's history to the account."""
    account_link_cmd(
        store_from_path=_store,
        load_config=load_config,
        read_config_or_exit=_read_config_or_exit,
        write_config_or_exit=_write_config_or_exit,
        db_path=db_path,
        token=token,
        user_id=user_id,
        email=email,
        skip_reconcile=skip_reconcile,
        as_json=as_json,
    )


@account_app.command("logout")
def account_logout() -> None:
    """Forget the saved account token."""
    account_logout_cmd(
        read_config_or_exit=_read_config_or_exit,
        write_config_or_exit=_write_config_or_exit,
    )


@account_app.command("whoami")
def account_whoami(db_path: str = typer.Option(None, help=DB_PATH_HELP)) -> None:
    """Show the current account and device identity."""
    account_whoami_cmd(store_from_path=_store, load_config=load_config, db_path=db_path)


@server_app.command("serve")
def server_serve(
    host: str = typer.Option(None, help="Bind host"),
    port: int = typer.Option(None, help="Bind port"),
    db_path: str = typer.Option(None, help="Path to the remote SQLite database"),
) -> None:
    """Run the reference remote sync server in the foreground."""
    server_serve_cmd(
        load_config=load_config,
        run_remote_server=run_remote_server,
        host=host,
        port=port,
        db_path=db_path,
    )


@server_app.command("add-user")
def server_add_user(
    email: str,
    db_path: str = typer.Option(None, help="Path to the remote SQLite database"),
) -> None:
    """Create an account on the reference server and issue a token for it."""
    server_add_user_cmd(load_config=load_config, db_path=db_path, email=email)


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()
