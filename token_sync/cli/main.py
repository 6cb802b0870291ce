"""
CLI interface for token-sync.

Provides command-line access to syncing, status, configuration and login.
"""

import json
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from token_sync.config.loader import (
    CONFIG_KEYS,
    ConfigError,
    get_config_dir,
    read_config,
    set_config_value,
    unset_config_value,
    write_config,
)
from token_sync.core.payload import build_sync_payload
from token_sync.core.scheduler import get_rate_limit_status
from token_sync.core.sync import SyncOptions, SyncResult, run_sync_once, run_watch
from token_sync.diagnostics.log import configure_logging
from token_sync.storage.db import get_queue_db_path
from token_sync.storage.device import DeviceError, get_or_create_device_info
from token_sync.storage.queue import count_queue
from token_sync.storage.state import StateError, SyncStatus, read_sync_state
from token_sync.transport.auth import clear_auth_token, resolve_auth_token, store_auth_token

app = typer.Typer(help="Sync local model usage totals to the usage API.")
config_app = typer.Typer(help="Read and change token-sync configuration.")
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DUMP_LIMIT = 20


def _status_to_exit_code(status: SyncStatus) -> int:
    return EXIT_CODE_FAIL if status == SyncStatus.ERROR else EXIT_CODE_PASS


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Print debug logs to stderr"),
):
    """token-sync CLI."""
    configure_logging(get_config_dir(), debug=debug)


@app.command()
def sync(
    dump: bool = typer.Option(False, "--dump", help="Print the first 20 aggregated entries"),
    dump_all: bool = typer.Option(False, "--dump-all", help="Print all aggregated entries"),
    payload: bool = typer.Option(False, "--payload", help="Print the full daily payload JSON"),
    as_json: bool = typer.Option(False, "--json", help="Print sync output as JSON"),
    force: bool = typer.Option(False, "--force", help="Bypass the upload rate limit"),
    local: bool = typer.Option(False, "--local", help="Skip upload and run in local-only mode"),
    quiet: bool = typer.Option(False, "--quiet", help="Suppress output except errors"),
    watch: bool = typer.Option(False, "--watch", help="Run sync every 15 minutes with jitter"),
):
    """
    Parse local usage logs and upload the daily totals.

    New records since the last run are folded into the persisted daily
    totals, which are then uploaded unless local-only mode, missing auth
    or the rate limit say otherwise.
    """
    dump = dump or dump_all
    if watch and (dump or payload or as_json):
        err_console.print("Watch mode cannot be combined with dump/payload/json output.")
        sys.exit(EXIT_CODE_FAIL)
    if quiet and (dump or payload or as_json):
        err_console.print("Quiet mode cannot be combined with dump/payload/json output.")
        sys.exit(EXIT_CODE_FAIL)

    options = SyncOptions(force=force, local_only=local, quiet=quiet)

    if watch:
        if not quiet:
            console.print("Starting sync loop. Press Ctrl+C to stop.")
        try:
            run_watch(options, on_result=lambda result, next_at, delay: _print_watch_result(
                result, next_at, quiet
            ))
        except KeyboardInterrupt:
            sys.exit(EXIT_CODE_PASS)
        return

    result = run_sync_once(options)

    if as_json:
        data = result.to_dict()
        if not payload:
            data["payload"] = None
        typer.echo(json.dumps(data, indent=2))
        sys.exit(_status_to_exit_code(result.status))

    if quiet:
        if result.status == SyncStatus.ERROR:
            err_console.print(result.message or "Sync failed.")
        sys.exit(_status_to_exit_code(result.status))

    _display_sync_result(result, dump_limit=None if dump_all else DUMP_LIMIT if dump else 0)

    if payload:
        typer.echo(json.dumps(result.payload or _empty_payload(), indent=2))

    _display_sync_outcome(result, force)
    sys.exit(_status_to_exit_code(result.status))


def _print_watch_result(result: SyncResult, next_run_at: str, quiet: bool) -> None:
    if result.status == SyncStatus.ERROR:
        err_console.print(result.message or "Sync failed.")
    elif result.message and not quiet:
        console.print(result.message)
    if not quiet:
        console.print(f"Next sync at {next_run_at}.")


def _empty_payload():
    try:
        device = get_or_create_device_info()
        return build_sync_payload({}, device_id=device.device_id, device_name=device.device_name)
    except DeviceError:
        return build_sync_payload({})


def _display_sync_result(result: SyncResult, dump_limit: Optional[int]) -> None:
    """Display the run summary, warnings and optionally aggregated entries."""
    console.print("\n[bold]Sync preview[/bold]")
    console.print("-" * 40)
    console.print(f"Records parsed: {result.records_parsed:,}")
    console.print(f"New aggregated entries: {len(result.aggregates):,}")
    console.print(f"Days: {result.days}")
    console.print(f"Models: {result.models}")
    console.print(f"Total tokens: {result.total_tokens:,}")

    if result.warnings:
        console.print("\n[bold yellow]Parse warnings:[/]")
        for warning in result.warnings:
            console.print(f"- {warning}", markup=False)

    if result.records_parsed == 0 and result.status != SyncStatus.ERROR:
        console.print("\n[dim]No new usage records found.[/]")

    if dump_limit == 0:
        return

    entries = result.aggregates if dump_limit is None else result.aggregates[:dump_limit]
    table = Table(title="Aggregated entries")
    for column in ("Day", "Model", "Input", "Output", "Cache", "Thinking", "Total"):
        table.add_column(column, justify="left" if column in ("Day", "Model") else "right")
    for entry in entries:
        tokens = entry.tokens
        table.add_row(
            entry.day,
            entry.model,
            f"{tokens.input:,}",
            f"{tokens.output:,}",
            f"{tokens.cache:,}",
            f"{tokens.thinking:,}",
            f"{tokens.total:,}",
        )
    console.print(table)
    hidden = len(result.aggregates) - len(entries)
    if hidden > 0:
        console.print(f"...and {hidden} more. Use --dump-all to show all.")


def _display_sync_outcome(result: SyncResult, force: bool) -> None:
    console.print()
    if not result.local_only and result.rate_limit and result.rate_limit.limited and not force:
        console.print(f"Rate limited until {result.rate_limit.next_allowed_at or 'later'}.")

    if result.queue is not None:
        console.print(f"Queue pending: {result.queue.pending}")
        if result.queue.flushed:
            console.print(f"Queue flushed: {result.queue.flushed}")
        if result.queue.enqueued:
            console.print("Queued payload for retry.")

    if result.status == SyncStatus.ERROR:
        err_console.print(f"[red]Sync failed:[/] {result.message or 'unknown error'}")
    elif result.status == SyncStatus.SUCCESS and result.api is not None and result.api.url:
        console.print(f"[green]✓[/] Uploaded to {result.api.url}.")
    elif result.message:
        console.print(result.message)


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print status as JSON"),
):
    """Show the last sync run, queue size, rate limit and auth status."""
    try:
        state = read_sync_state()
    except StateError as e:
        err_console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        pending = count_queue(get_queue_db_path())
    except sqlite3.Error:
        pending = None
    rate_limit = get_rate_limit_status(state.last_success_at)
    auth = resolve_auth_token()

    data = {
        "last_run_at": state.last_run_at,
        "last_success_at": state.last_success_at,
        "last_status": state.last_status.value if state.last_status else None,
        "last_error": state.last_error,
        "last_note": state.last_note,
        "last_total_tokens": state.last_total_tokens,
        "last_records_parsed": state.last_records_parsed,
        "tracked_files": len(state.file_cursors),
        "daily_entries": len(state.daily_totals),
        "queue_pending": pending,
        "rate_limited": rate_limit.limited,
        "next_allowed_at": rate_limit.next_allowed_at,
        "auth_status": auth.status.value,
        "last_error_context": (
            state.last_error_context.to_dict() if state.last_error_context else None
        ),
    }

    if as_json:
        typer.echo(json.dumps(data, indent=2))
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="token-sync status")
    table.add_column("Field")
    table.add_column("Value")
    for key, value in data.items():
        if key == "last_error_context":
            continue
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)

    if state.last_error_context and state.last_error_context.hint:
        console.print(f"Hint: {state.last_error_context.hint}", markup=False)
    sys.exit(EXIT_CODE_PASS)


@config_app.command("list")
def config_list():
    """Show every configuration key."""
    config = _load_config_or_exit()
    data = config.to_dict()
    for key in CONFIG_KEYS:
        value = data.get(key)
        console.print(f"{key} = {'' if value is None else value}", markup=False)


@config_app.command("get")
def config_get(key: str = typer.Argument(..., help="Configuration key")):
    """Print one configuration value."""
    if key not in CONFIG_KEYS:
        err_console.print(f"[red]Unknown config key:[/] {key}. Valid keys: {', '.join(CONFIG_KEYS)}")
        sys.exit(EXIT_CODE_FAIL)
    value = _load_config_or_exit().to_dict().get(key)
    typer.echo("" if value is None else value)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Configuration key"),
    value: str = typer.Argument(..., help="New value"),
):
    """Set a configuration value."""
    config = _load_config_or_exit()
    try:
        updated = set_config_value(config, key, value)
    except ConfigError as e:
        err_console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    path = write_config(updated)
    console.print(f"[green]✓[/] Set {key} in {path}")


@config_app.command("unset")
def config_unset(key: str = typer.Argument(..., help="Configuration key")):
    """Reset a configuration value to its default."""
    config = _load_config_or_exit()
    try:
        updated = unset_config_value(config, key)
    except ConfigError as e:
        err_console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    write_config(updated)
    console.print(f"[green]✓[/] Unset {key}")


def _load_config_or_exit():
    try:
        config, _ = read_config()
    except ConfigError as e:
        err_console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    return config


@app.command()
def login(
    token: Optional[str] = typer.Option(None, "--token", help="API token to store"),
    expires_at: Optional[str] = typer.Option(None, "--expires-at", help="ISO expiry of the token"),
):
    """Store an API token for uploads."""
    if token is None:
        token = typer.prompt("API token", hide_input=True)
    if not token.strip():
        err_console.print("[red]Error:[/] Token must not be empty.")
        sys.exit(EXIT_CODE_FAIL)
    path = store_auth_token(token, expires_at=expires_at)
    console.print(f"[green]✓[/] Token saved to {path}")


@app.command()
def logout():
    """Remove the stored API token."""
    if clear_auth_token():
        console.print("[green]✓[/] Logged out")
    else:
        console.print("No stored credentials found.")


if __name__ == "__main__":
    app()
