from __future__ import annotations

import asyncio
import json

from rich import print

from ..auth import AuthSession
from ..store import ObservationStore
from ..sync.engine import SyncEngine
from ..sync.linking import AccountLinker
from .common import fail
from .sync_cmds import build_endpoint


def account_link_cmd(
    *,
    store_from_path,
    load_config,
    read_config_or_exit,
    write_config_or_exit,
    db_path: str | None,
    token: str,
    user_id: str | None,
    email: str | None,
    skip_reconcile: bool,
    as_json: bool = False,
) -> None:
    """Save an account token, then attach this device's history to the account."""

    auth = AuthSession()
    try:
        auth.login(token, user_id=user_id, email=email)
    except ValueError as exc:
        raise fail(exc) from exc
    config_data = read_config_or_exit()
    config_data.update(auth.to_config_dict())
    write_config_or_exit(config_data)
    if not as_json:
        print(f"[green]Signed in as {email or user_id or 'account'}[/green]")
    if skip_reconcile:
        return

    config = load_config()
    store: ObservationStore = store_from_path(db_path)

    async def _run():
        async with build_endpoint(config, auth, store.device_id) as endpoint:
            engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
            linker = AccountLinker(engine, endpoint, auth, device_id=store.device_id)
            return await linker.on_authenticated()

    try:
        result = asyncio.run(_run())
    finally:
        store.close()
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return
    if result.migrated is not None:
        print(f"- Migrated {result.migrated} device session(s)")
    if result.download is not None:
        print(
            f"- Downloaded {result.download.downloaded} session(s), "
            f"skipped {result.download.skipped}"
        )
    for error in result.errors:
        print(f"[yellow]- {error}[/yellow]")
    if result.errors:
        print("[yellow]Sign-in kept; re-run `meteorlog sync pull` later to finish[/yellow]")


def account_logout_cmd(*, read_config_or_exit, write_config_or_exit) -> None:
    """Forget the saved account token."""

    config_data = read_config_or_exit()
    auth = AuthSession()
    auth.logout()
    config_data.update(auth.to_config_dict())
    write_config_or_exit(config_data)
    print("Signed out")


def account_whoami_cmd(*, store_from_path, load_config, db_path: str | None) -> None:
    """Show the current account and device identity."""

    auth = AuthSession.from_config(load_config())
    store: ObservationStore = store_from_path(db_path)
    try:
        device_id = store.device_id
    finally:
        store.close()
    print(f"- Device: {device_id}")
    if not auth.is_authenticated():
        print("- Account: anonymous")
        return
    print(f"- Account: {auth.email or '-'} (user {auth.user_id or '-'})")
