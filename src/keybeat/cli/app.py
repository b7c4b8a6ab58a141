"""
Root Typer application for the keybeat CLI.

Commands::

    keybeat start   Run the scheduler until SIGINT/SIGTERM
    keybeat list    Show the schedules found in the schedule directory
    keybeat next    Preview the next trigger instants of a pattern
    keybeat check   Report (or enable) expired-key notifications
    keybeat clear   Delete every store-side schedule key
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from keybeat.core.errors import ConfigError, InvalidPattern, KeybeatError, StoreError
from keybeat.core.logging import configure_logging
from keybeat.core.settings import SchedulerSettings, get_settings
from keybeat.scheduling.connections import RedisConnections
from keybeat.scheduling.loader import load_schedules
from keybeat.scheduling.service import SchedulerService
from keybeat.scheduling.timers import next_run_time_for, parse_interval, upcoming_run_times

app = typer.Typer(
    name="keybeat",
    help="keybeat: distributed recurring jobs on redis key expiry.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


# ── Helpers ──────────────────────────────────────────────────────────────


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    return typer.Exit(code=1)


def _settings(url: str | None = None, path: Path | None = None) -> SchedulerSettings:
    overrides: dict[str, Any] = {}
    if url is not None:
        overrides["url"] = url
    if path is not None:
        overrides["schedule_path"] = path

    try:
        return get_settings(**overrides)
    except ConfigError as e:
        raise _fail(e.message) from e


def make_connections(settings: SchedulerSettings) -> RedisConnections:
    """Store connections for one-shot commands."""
    return RedisConnections(settings.url, db=settings.db)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("keybeat")
        except PackageNotFoundError:
            from keybeat import __version__ as v
        typer.echo(f"keybeat {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """keybeat CLI: run, inspect and reset expiry-driven schedules."""


# ── start ────────────────────────────────────────────────────────────────


async def _serve(service: SchedulerService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - windows
            pass

    async with service:
        await stop.wait()


@app.command("start")
def start(
    path: Path | None = typer.Option(None, "--path", "-p", help="Schedule directory"),
    url: str | None = typer.Option(None, "--url", help="Store URL"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
    json_logs: bool | None = typer.Option(
        None, "--json-logs/--console-logs", help="Log format (default: JSON when not a tty)"
    ),
) -> None:
    """Run the scheduler until interrupted."""
    settings = _settings(url, path)
    configure_logging(level=log_level, json_format=json_logs)

    service = SchedulerService(settings, connections=make_connections(settings))
    try:
        asyncio.run(_serve(service))
    except KeyboardInterrupt:
        pass
    except KeybeatError as e:
        raise _fail(str(e)) from e


# ── list ─────────────────────────────────────────────────────────────────


@app.command("list")
def list_cmd(
    path: Path | None = typer.Option(None, "--path", "-p", help="Schedule directory"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the schedules defined in the schedule directory."""
    settings = _settings(path=path)
    problems: list[Exception] = []
    definitions = load_schedules(settings.schedule_path, on_error=problems.append)

    rows = []
    for definition in definitions.values():
        parsed = parse_interval(definition.interval)
        try:
            next_run = next_run_time_for(
                definition.interval, definition.last_run_at, definition.timezone
            ).isoformat()
        except InvalidPattern:
            next_run = None
        rows.append(
            {
                "name": definition.name,
                "interval": definition.interval,
                "grammar": parsed.value.grammar if parsed.is_ok() else "invalid",
                "timezone": definition.timezone,
                "next_run_at": next_run,
            }
        )

    if json_out:
        console.print_json(
            json.dumps({"schedules": rows, "errors": [str(p) for p in problems]}, default=str)
        )
        return

    table = Table(title=f"Schedules ({settings.schedule_path})")
    for column in ("Name", "Interval", "Grammar", "Timezone", "Next run"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["name"],
            row["interval"],
            row["grammar"],
            row["timezone"] or "local",
            row["next_run_at"] or "[red]-[/red]",
        )
    console.print(table)

    for problem in problems:
        err_console.print(f"[yellow]Skipped[/yellow]: {problem}")


# ── next ─────────────────────────────────────────────────────────────────


@app.command("next")
def next_cmd(
    pattern: str = typer.Argument(..., help='Cron pattern or interval, e.g. "5 minutes"'),
    count: int = typer.Option(5, "--count", "-n", min=1),
    timezone: str | None = typer.Option(None, "--timezone", "--tz"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Preview the next trigger instants of a pattern."""
    try:
        times = upcoming_run_times(pattern, count, timezone=timezone)
    except InvalidPattern as e:
        raise _fail(str(e)) from e

    grammar = parse_interval(pattern).value.grammar
    if json_out:
        console.print_json(
            json.dumps(
                {
                    "pattern": pattern,
                    "grammar": grammar,
                    "next_run_times": [t.isoformat() for t in times],
                }
            )
        )
        return

    console.print(f"[bold]{pattern}[/bold] ({grammar})")
    for moment in times:
        console.print(f"  {moment.isoformat()}")


# ── check ────────────────────────────────────────────────────────────────


async def _check(settings: SchedulerSettings, enable: bool) -> tuple[str, bool]:
    async with make_connections(settings) as connections:
        enabled = await connections.is_keyspace_events_enabled()
        if not enabled and enable:
            await connections.enable_keyspace_events(settings.notify_keyspace_events)
            enabled = await connections.is_keyspace_events_enabled()
        return await connections.keyspace_event_flags(), enabled


@app.command("check")
def check(
    url: str | None = typer.Option(None, "--url", help="Store URL"),
    enable: bool = typer.Option(False, "--enable", help="Enable notifications if disabled"),
) -> None:
    """Report whether expired-key notifications are enabled."""
    settings = _settings(url)
    try:
        flags, enabled = asyncio.run(_check(settings, enable))
    except StoreError as e:
        raise _fail(str(e)) from e

    if enabled:
        console.print(f"[green]✓[/green] expired-key notifications enabled (flags={flags!r})")
        return

    err_console.print(
        f"[red]✗[/red] expired-key notifications disabled (flags={flags!r}); "
        "run with --enable or set notify-keyspace-events to include 'Ex'"
    )
    raise typer.Exit(code=1)


# ── clear ────────────────────────────────────────────────────────────────


@app.command("clear")
def clear(
    url: str | None = typer.Option(None, "--url", help="Store URL"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every store-side schedule key and schedule lock."""
    settings = _settings(url)
    if not yes:
        typer.confirm("Delete all schedule keys from the store?", abort=True)

    service = SchedulerService(settings, connections=make_connections(settings))
    try:
        deleted = asyncio.run(service.clear())
    except StoreError as e:
        raise _fail(str(e)) from e

    console.print(f"[green]✓[/green] Deleted {deleted} key(s)")


if __name__ == "__main__":
    app()
