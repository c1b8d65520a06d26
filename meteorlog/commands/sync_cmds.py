from __future__ import annotations

import asyncio
import json

import typer
from rich import print

from ..auth import AuthSession
from ..config import MeteorlogConfig, get_env_overrides
from ..errors import MeteorlogError
from ..store import ObservationStore
from ..sync.endpoint import HttpSyncEndpoint
from ..sync.engine import SyncEngine
from ..sync.linking import AccountLinker
from .common import fail


def build_endpoint(config: MeteorlogConfig, auth: AuthSession, device_id: str) -> HttpSyncEndpoint:
    return HttpSyncEndpoint(
        config.api_base,
        auth=auth,
        device_id=device_id,
        timeout_s=float(config.request_timeout_s),
    )


def _print_errors(errors: list) -> None:
    for err in errors:
        label = err.session_id if err.session_id is not None else "listing"
        print(f"  [red]- {label}: {err.message}[/red]")


def sync_push_cmd(
    *,
    store_from_path,
    load_config,
    db_path: str | None,
    privacy: str | None,
    as_json: bool = False,
) -> None:
    """Push unsynced and modified sessions to the remote store."""

    config = load_config()
    auth = AuthSession.from_config(config)
    privacy = privacy or config.location_privacy
    store: ObservationStore = store_from_path(db_path)

    async def _run():
        async with build_endpoint(config, auth, store.device_id) as endpoint:
            engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
            result = await engine.sync_to_remote(privacy)
            linker = AccountLinker(engine, endpoint, auth, device_id=store.device_id)
            migrated = await linker.after_push(result)
            return result, migrated

    try:
        result, migrated = asyncio.run(_run())
    except (MeteorlogError, ValueError) as exc:
        raise fail(exc) from exc
    finally:
        store.close()
    if as_json:
        print(json.dumps({**result.to_dict(), "linked": migrated}, indent=2))
        if result.failed:
            raise typer.Exit(code=1)
        return
    color = "green" if not result.failed else "yellow"
    print(f"[{color}]Pushed {result.synced} session(s), {result.failed} failed[/{color}]")
    _print_errors(result.errors)
    if migrated:
        print(f"- Linked {migrated} device session(s) to your account")
    if result.failed:
        raise typer.Exit(code=1)


def sync_pull_cmd(
    *, store_from_path, load_config, db_path: str | None, as_json: bool = False
) -> None:
    """Download account sessions that are not on this device yet."""

    config = load_config()
    auth = AuthSession.from_config(config)
    if not auth.is_authenticated():
        print("[yellow]Not signed in; run `meteorlog account link` first[/yellow]")
        raise typer.Exit(code=1)
    store: ObservationStore = store_from_path(db_path)

    async def _run():
        async with build_endpoint(config, auth, store.device_id) as endpoint:
            engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
            return await engine.download_remote_sessions()

    try:
        result = asyncio.run(_run())
    finally:
        store.close()
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Downloaded {result.downloaded} session(s), skipped {result.skipped}")
        _print_errors(result.errors)
    if result.errors:
        raise typer.Exit(code=1)


def sync_status_cmd(*, store_from_path, load_config, db_path: str | None, as_json: bool) -> None:
    """Show pending local changes and account state."""

    config = load_config()
    auth = AuthSession.from_config(config)
    store: ObservationStore = store_from_path(db_path)
    try:
        endpoint = build_endpoint(config, auth, store.device_id)
        engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
        status = engine.get_sync_status()
    finally:
        store.close()
    status["location_privacy"] = config.location_privacy
    status["env_overrides"] = sorted(get_env_overrides())
    if as_json:
        print(json.dumps(status, indent=2))
        return
    print("[bold]Sync[/bold]")
    print(f"- Device: {status['device_id']}")
    print(f"- Remote: {config.api_base}")
    account = "anonymous"
    if status["authenticated"]:
        account = auth.email or auth.user_id or "signed in"
    print(f"- Account: {account}")
    print(f"- Location privacy: {config.location_privacy or 'per session'}")
    if status["env_overrides"]:
        print(f"- Env overrides: {', '.join(status['env_overrides'])}")
    sessions = status["sessions"]
    observations = status["observations"]
    print(f"- Sessions: {sessions['unsynced']} unsynced, {sessions['modified']} modified")
    print(
        f"- Observations: {observations['unsynced']} unsynced, "
        f"{observations['modified']} modified"
    )
    if status["has_unsynced_data"]:
        print("[yellow]Local changes pending; run `meteorlog sync push`[/yellow]")
    else:
        print("[green]Everything is synced[/green]")


def sync_check_cmd(*, store_from_path, load_config, db_path: str | None) -> None:
    """Check that the remote store answers."""

    config = load_config()
    auth = AuthSession.from_config(config)
    store: ObservationStore = store_from_path(db_path)

    async def _run() -> bool:
        async with build_endpoint(config, auth, store.device_id) as endpoint:
            engine = SyncEngine(store, endpoint, auth, device_id=store.device_id)
            return await engine.test_connection()

    try:
        ok = asyncio.run(_run())
    finally:
        store.close()
    if ok:
        print(f"[green]Remote reachable at {config.api_base}[/green]")
        return
    print(f"[red]Remote unreachable at {config.api_base}[/red]")
    raise typer.Exit(code=1)
