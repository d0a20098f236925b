"""CLI for DayPulse: inspect the alerts worklist and manage Google Calendar sync."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click

from daypulse.calendar.mirror import CalendarMirror
from daypulse.calendar.sync import CalendarSyncManager
from daypulse.categorize import BUCKET_LABELS, BUCKET_ORDER, relative_label
from daypulse.config import ConfigError, DayPulseConfig, load_config
from daypulse.core.logging import configure_logging
from daypulse.crypto import Cipher, CipherLoadError, load_cipher
from daypulse.db import Database
from daypulse.dispatch import ActionDispatcher, ActionError
from daypulse.engine import AlertsEngine, AlertsView
from daypulse.migrations import run_migrations
from daypulse.models import AlertItem, AlertSource
from daypulse.sources.collections import default_adapters
from daypulse.storage.calendar_ids import CalendarIdStore
from daypulse.storage.documents import DocumentChangeFeed, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

# Upper bound for the first snapshot of every source.
READY_TIMEOUT_SECONDS = 30.0


@dataclass
class _Context:
    config_dir: Path
    _config: DayPulseConfig | None = None

    @property
    def config(self) -> DayPulseConfig:
        if self._config is None:
            try:
                self._config = load_config(self.config_dir)
            except ConfigError as exc:
                raise click.ClickException(str(exc)) from exc
            logging_config = self._config.logging
            configure_logging(
                level=logging_config.level,
                fmt=logging_config.format,
                log_file=logging_config.log_file,
                user_id=self._config.user_id,
            )
        return self._config

    def cipher(self) -> Cipher:
        if not self.config.cipher:
            raise click.ClickException("daypulse.cipher is not configured")
        try:
            return load_cipher(self.config.cipher)
        except CipherLoadError as exc:
            raise click.ClickException(str(exc)) from exc

    def calendar_ids(self, cipher: Cipher) -> CalendarIdStore:
        return CalendarIdStore(Path(self.config.calendar.calendar_ids_path), cipher)


pass_context = click.make_pass_decorator(_Context)


@dataclass
class _Backend:
    store: DocumentStore
    feed: DocumentChangeFeed


@asynccontextmanager
async def _backend(config: DayPulseConfig) -> AsyncIterator[_Backend]:
    """Open the pool and start listening for document changes."""
    database = Database.from_config(config.db)
    pool = await database.connect()
    feed = DocumentChangeFeed(pool)
    try:
        await feed.start()
        yield _Backend(store=DocumentStore(pool), feed=feed)
    finally:
        await feed.stop()
        await database.close()


@asynccontextmanager
async def _alerts_session(
    config: DayPulseConfig, cipher: Cipher, backend: _Backend
) -> AsyncIterator[AlertsEngine]:
    """Run an :class:`AlertsEngine` until every source has reported once."""
    engine = AlertsEngine(
        user_id=config.user_id,
        cipher=cipher,
        adapters=default_adapters(store=backend.store, feed=backend.feed, tz=config.tzinfo),
        dispatcher=ActionDispatcher(user_id=config.user_id, store=backend.store, cipher=cipher),
        tz=config.tzinfo,
    )
    await engine.start()
    try:
        try:
            await engine.wait_ready(timeout=READY_TIMEOUT_SECONDS)
        except TimeoutError as exc:
            raise click.ClickException("Timed out loading alert sources") from exc
        yield engine
    finally:
        await engine.stop()


def _parse_ref(ctx: click.Context, param: click.Parameter, value: str) -> tuple[AlertSource, str]:
    source, _, item_id = value.partition(":")
    try:
        return AlertSource(source), item_id
    except ValueError:
        raise click.BadParameter(
            f"expected <source>:<id> with source one of {', '.join(AlertSource)}"
        ) from None


def _find_item(view: AlertsView, ref: tuple[AlertSource, str]) -> AlertItem:
    for item in view.categorization.items:
        if item.key == ref:
            return item
    source, item_id = ref
    raise click.ClickException(f"No alert item {source}:{item_id}")


def _echo_item(item: AlertItem, view: AlertsView) -> None:
    label = relative_label(item.date, view.computed_at)
    click.echo(f"  {label:<10} {item.title}  [{item.source}:{item.id}]")


def _calendar_manager(
    config: DayPulseConfig, store: DocumentStore, cipher: Cipher
) -> CalendarSyncManager:
    if not config.calendar.enabled:
        raise click.ClickException("daypulse.calendar.client_id is not configured")
    return CalendarSyncManager(
        user_id=config.user_id,
        settings=config.calendar,
        store=store,
        cipher=cipher,
        mirror=CalendarMirror(store, cipher, config.user_id),
    )


async def _ready_manager(manager: CalendarSyncManager) -> None:
    errors: list[str] = []
    task = manager.initialize(on_error=errors.append)
    if task is not None:
        await task
    if errors or not manager.state.client_ready:
        raise click.ClickException(errors[0] if errors else "Calendar client is not ready")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing daypulse.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """DayPulse: one worklist for everything that is due."""
    ctx.obj = _Context(config_dir=config_dir)


@cli.command()
@pass_context
def migrate(obj: _Context) -> None:
    """Create or upgrade the database schema."""
    config = obj.config
    database = Database.from_config(config.db)
    run_migrations(database.sqlalchemy_url(), schema=config.db.schema)
    click.echo("Database schema is up to date.")


@cli.command()
@click.option(
    "--tab",
    type=click.Choice([bucket.value for bucket in BUCKET_ORDER]),
    default=None,
    help="Show this bucket instead of the active one",
)
@click.option("--all", "show_all", is_flag=True, help="Show every bucket")
@pass_context
def show(obj: _Context, tab: str | None, show_all: bool) -> None:
    """Print the focus item and the active bucket of the worklist."""
    config = obj.config
    cipher = obj.cipher()

    async def _run() -> AlertsView:
        async with _backend(config) as backend, _alerts_session(config, cipher, backend) as engine:
            return engine.select_tab(tab) if tab else engine.view

    view = asyncio.run(_run())
    focus = view.focus
    if focus is not None:
        click.echo(f"Focus: {focus.title} ({relative_label(focus.date, view.computed_at)})")
    buckets = list(BUCKET_ORDER) if show_all else [view.active]
    for bucket in buckets:
        click.echo(f"\n{BUCKET_LABELS[bucket]} ({view.categorization.counts[bucket]})")
        for item in view.categorization.buckets[bucket]:
            _echo_item(item, view)


@cli.command()
@click.argument("ref", metavar="SOURCE:ID", callback=_parse_ref)
@pass_context
def complete(obj: _Context, ref: tuple[AlertSource, str]) -> None:
    """Mark a task done or switch off a reminder."""
    config = obj.config
    cipher = obj.cipher()

    async def _run() -> AlertItem:
        async with _backend(config) as backend, _alerts_session(config, cipher, backend) as engine:
            item = _find_item(engine.view, ref)
            try:
                await engine.complete(item)
            except ActionError as exc:
                raise click.ClickException(str(exc)) from exc
            return item

    item = asyncio.run(_run())
    click.echo(f"Completed {item.title}.")


@cli.command()
@click.argument("ref", metavar="SOURCE:ID", callback=_parse_ref)
@pass_context
def snooze(obj: _Context, ref: tuple[AlertSource, str]) -> None:
    """Move an item's due date one day later, keeping the time of day."""
    config = obj.config
    cipher = obj.cipher()

    async def _run() -> tuple[AlertItem, datetime]:
        async with _backend(config) as backend, _alerts_session(config, cipher, backend) as engine:
            item = _find_item(engine.view, ref)
            try:
                return item, await engine.snooze(item)
            except ActionError as exc:
                raise click.ClickException(str(exc)) from exc

    item, new_date = asyncio.run(_run())
    click.echo(f"Snoozed {item.title} until {new_date.astimezone(config.tzinfo):%Y-%m-%d %H:%M}.")


@cli.command("open")
@click.argument("ref", metavar="SOURCE:ID", callback=_parse_ref)
@pass_context
def open_item(obj: _Context, ref: tuple[AlertSource, str]) -> None:
    """Print where an item lives: an app route or the calendar event URL."""
    config = obj.config
    cipher = obj.cipher()

    async def _run() -> str:
        async with _backend(config) as backend, _alerts_session(config, cipher, backend) as engine:
            item = _find_item(engine.view, ref)
            try:
                target = engine.navigate(item)
            except ActionError as exc:
                raise click.ClickException(str(exc)) from exc
            if not target.target:
                raise click.ClickException(f"{item.title} has no link")
            return target.target

    click.echo(asyncio.run(_run()))


@cli.command()
@pass_context
def sync(obj: _Context) -> None:
    """Resync all subscribed Google calendars into the encrypted mirror."""
    config = obj.config
    cipher = obj.cipher()
    calendar_ids = obj.calendar_ids(cipher)

    async def _run() -> None:
        await calendar_ids.load()
        async with _backend(config) as backend:
            store = backend.store
            manager = _calendar_manager(config, store, cipher)
            try:
                await _ready_manager(manager)
                errors: list[str] = []
                if not await manager.check_stored_token(on_error=errors.append):
                    raise click.ClickException(
                        errors[0] if errors else "Not connected; run `daypulse connect` first"
                    )
                result = await manager.sync(calendar_ids.ids)
            finally:
                await manager.close()

        if result is None:
            raise click.ClickException("Sync did not run")
        for calendar_id, count in result.synced.items():
            click.echo(f"{calendar_id}: {count} event(s)")
        for calendar_id, message in result.errors.items():
            click.echo(f"{calendar_id}: FAILED ({message})", err=True)
        if result.errors:
            sys.exit(1)

    asyncio.run(_run())


@cli.command()
@pass_context
def connect(obj: _Context) -> None:
    """Sign in to Google Calendar and run a first sync."""
    config = obj.config
    cipher = obj.cipher()
    calendar_ids = obj.calendar_ids(cipher)

    async def _consent(url: str) -> str | None:
        click.echo("Open this URL in a browser and approve access:\n")
        click.echo(url)
        response = await asyncio.to_thread(
            click.prompt,
            "\nPaste the redirect URL or code (leave blank to cancel)",
            default="",
            show_default=False,
        )
        return response.strip() or None

    async def _run() -> None:
        await calendar_ids.load()
        async with _backend(config) as backend:
            store = backend.store
            manager = _calendar_manager(config, store, cipher)
            try:
                await _ready_manager(manager)
                manager.create_token_client(_consent)
                if not await manager.request_access_token():
                    raise click.ClickException(manager.state.last_error or "Sign-in cancelled")
                click.echo("Connected to Google Calendar.")
                result = await manager.sync(calendar_ids.ids)
            finally:
                await manager.close()
        if result is not None:
            click.echo(f"Synced {sum(result.synced.values())} event(s).")
            if result.errors:
                click.echo(f"Sync errors: {result.error_summary()}", err=True)

    asyncio.run(_run())


@cli.command()
@pass_context
def disconnect(obj: _Context) -> None:
    """Forget the stored Google token. Cached events are kept."""
    config = obj.config
    cipher = obj.cipher()

    async def _run() -> None:
        async with _backend(config) as backend:
            store = backend.store
            manager = _calendar_manager(config, store, cipher)
            try:
                task = manager.initialize()
                if task is not None:
                    await task
                await manager.disconnect()
            finally:
                await manager.close()

    asyncio.run(_run())
    click.echo("Disconnected from Google Calendar.")


@cli.group()
def calendars() -> None:
    """Manage the extra calendars included in sync."""


@calendars.command("list")
@pass_context
def calendars_list(obj: _Context) -> None:
    store = obj.calendar_ids(obj.cipher())
    ids = asyncio.run(store.load())
    if not ids:
        click.echo("No extra calendars.")
        return
    for calendar_id in ids:
        click.echo(calendar_id)


@calendars.command("add")
@click.argument("calendar")
@pass_context
def calendars_add(obj: _Context, calendar: str) -> None:
    """Add a calendar by id or Google embed URL."""
    store = obj.calendar_ids(obj.cipher())

    async def _run() -> bool:
        await store.load()
        return await store.add(calendar)

    if asyncio.run(_run()):
        click.echo(f"Added. {len(store.ids)} extra calendar(s).")
    else:
        click.echo("Nothing added (blank or already present).")


@calendars.command("remove")
@click.argument("calendar_id")
@pass_context
def calendars_remove(obj: _Context, calendar_id: str) -> None:
    store = obj.calendar_ids(obj.cipher())

    async def _run() -> bool:
        await store.load()
        return await store.remove(calendar_id)

    if not asyncio.run(_run()):
        raise click.ClickException(f"Calendar not found: {calendar_id}")
    click.echo(f"Removed {calendar_id}.")


def main() -> None:
    cli()
