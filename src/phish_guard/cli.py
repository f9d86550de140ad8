"""CLI entry point for Gmail Phish Guard."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click

from .auth import check_auth, get_gmail_service
from .display import (
    configure_logging,
    console,
    create_progress,
    display_allowlist,
    display_analysis,
    display_results,
    display_stats,
    display_summary,
)
from .engine import PhishGuardEngine
from .errors import StorageError
from .models import Record
from .notify import LoggingNotificationSink
from .scanner import fetch_inbox_records, load_records, scan_records
from .storage import SqliteBackend, resolve_account_id

T = TypeVar("T")


def _run_engine(ctx: click.Context, work: Callable[[PhishGuardEngine], Awaitable[T]]) -> T:
    """Load the engine for the selected account, run ``work`` and flush on the way out."""

    async def _main() -> T:
        with SqliteBackend(ctx.obj["db_path"]) as backend:
            engine = PhishGuardEngine.create(
                backend,
                account_id=ctx.obj["account_id"],
                notifier=LoggingNotificationSink(),
            )
            await engine.load()
            try:
                return await work(engine)
            finally:
                await engine.close()

    try:
        return asyncio.run(_main())
    except (StorageError, sqlite3.Error, OSError) as e:
        raise click.ClickException(f"Storage error: {e}") from e


@click.group()
@click.version_option(version="0.1.0", prog_name="gmail-phish-guard")
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug).")
@click.option(
    "--db",
    "db_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite store for stats and allow-list.",
)
@click.option("--account", default=None, help="Account id or Gmail URL (e.g. .../mail/u/1/).")
@click.pass_context
def cli(ctx: click.Context, verbose: int, db_path: Path | None, account: str | None) -> None:
    """Gmail Phish Guard - flag impersonation and phishing in your inbox."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["account_id"] = resolve_account_id(account)


@cli.command()
@click.option("-i", "--input", "input_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Scan records from a JSON file instead of Gmail.")
@click.option("-q", "--query", default=None, help="Gmail search query (e.g. 'newer_than:7d').")
@click.option("-m", "--max-messages", default=None, type=int, help="Maximum messages to scan.")
@click.option("--min-score", default=0, type=int, help="Minimum score to display.")
@click.pass_context
def scan(
    ctx: click.Context,
    input_path: str | None,
    query: str | None,
    max_messages: int | None,
    min_score: int,
) -> None:
    """Scan messages and flag suspicious senders."""
    if input_path:
        try:
            records = load_records(input_path)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
        if max_messages:
            records = records[:max_messages]
    else:
        try:
            service = get_gmail_service()
        except FileNotFoundError as e:
            raise click.ClickException(str(e)) from e
        records = fetch_inbox_records(service, query=query, max_results=max_messages)

    async def _scan(engine: PhishGuardEngine):
        with create_progress("Analyzing") as progress:
            task = progress.add_task("analyzing", total=len(records))

            def on_record(done: int, total: int) -> None:
                progress.update(task, completed=done)

            return await scan_records(engine, records, callback=on_record)

    report = _run_engine(ctx, _scan)

    display_results(report.processed, min_score=min_score)
    if report.summary is not None:
        display_summary(report.summary)
    else:
        console.print("[dim]No new messages to scan.[/dim]")


@cli.command()
@click.option("--name", "sender_name", default=None, help="Sender display name.")
@click.option("--email", "sender_email", required=True, help="Sender address.")
@click.option("--reply-to", default=None, help="Reply-To address.")
@click.option("--subject", default=None, help="Message subject.")
@click.option("--body", default=None, help="Message body or snippet.")
@click.pass_context
def analyze(
    ctx: click.Context,
    sender_name: str | None,
    sender_email: str,
    reply_to: str | None,
    subject: str | None,
    body: str | None,
) -> None:
    """Score a single message without recording it."""
    record = Record(
        sender_name=sender_name,
        sender_email=sender_email,
        reply_to=reply_to,
        subject=subject,
        body=body,
    )

    async def _analyze(engine: PhishGuardEngine):
        return engine.analyze(record)

    display_analysis(_run_engine(ctx, _analyze))


@cli.command()
@click.option("--legacy", is_flag=True, help="Print the flat legacy view as JSON.")
@click.pass_context
def stats(ctx: click.Context, legacy: bool) -> None:
    """Show statistics for the selected account."""

    async def _stats(engine: PhishGuardEngine):
        return engine.legacy_stats() if legacy else engine.current_stats()

    result = _run_engine(ctx, _stats)
    if legacy:
        console.print_json(data=result)
    else:
        display_stats(result)


@cli.command()
def auth() -> None:
    """Test Gmail authentication."""
    try:
        address = check_auth()
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e
    except Exception as e:  # noqa: BLE001
        raise click.ClickException(f"Authentication failed: {e}") from e
    console.print(f"[green]Authenticated as {address}[/green]")


@cli.group(name="store")
def store_group() -> None:
    """Inspect the local store."""


@store_group.command(name="info")
@click.pass_context
def store_info(ctx: click.Context) -> None:
    """Show store statistics."""
    try:
        with SqliteBackend(ctx.obj["db_path"]) as backend:
            info = backend.get_info()
    except (StorageError, sqlite3.Error, OSError) as e:
        raise click.ClickException(f"Storage error: {e}") from e

    console.print(f"[bold]Database size:[/bold] {info['db_file_size'] / 1024:.1f} KB")
    console.print(f"[bold]Keys:[/bold] {info['key_count']}")
    console.print(f"[bold]In use:[/bold] {info['bytes_in_use']}/{info['quota']} bytes")


@cli.group(name="allowlist")
def allowlist_group() -> None:
    """Manage trusted senders."""


@allowlist_group.command(name="add")
@click.argument("email")
@click.pass_context
def allowlist_add(ctx: click.Context, email: str) -> None:
    """Trust a sender address."""

    async def _add(engine: PhishGuardEngine):
        if engine.is_allowlisted(email):
            return "present", engine.allowlist_status()
        added = await engine.add_to_allowlist(email)
        return ("added" if added else "failed"), engine.allowlist_status()

    outcome, status = _run_engine(ctx, _add)
    if outcome == "present":
        console.print(f"[dim]{email} is already allow-listed.[/dim]")
    elif outcome == "added":
        console.print(f"[green]Added {email} to the allow-list.[/green]")
    elif status["is_full"]:
        raise click.ClickException(f"Allow-list is full ({status['max']} addresses).")
    else:
        raise click.ClickException(f"Could not add {email} to the allow-list.")


@allowlist_group.command(name="remove")
@click.argument("email")
@click.pass_context
def allowlist_remove(ctx: click.Context, email: str) -> None:
    """Stop trusting a sender address."""

    async def _remove(engine: PhishGuardEngine):
        if not engine.is_allowlisted(email):
            return None
        return await engine.remove_from_allowlist(email)

    removed = _run_engine(ctx, _remove)
    if removed is None:
        raise click.ClickException(f"{email} is not on the allow-list.")
    if not removed:
        raise click.ClickException(f"Could not remove {email} from the allow-list.")
    console.print(f"[green]Removed {email} from the allow-list.[/green]")


@allowlist_group.command(name="list")
@click.pass_context
def allowlist_list(ctx: click.Context) -> None:
    """List trusted sender addresses."""

    async def _list(engine: PhishGuardEngine):
        return engine.allowlist.all(), engine.allowlist_status()

    emails, status = _run_engine(ctx, _list)
    if not emails:
        console.print("[dim]Allow-list is empty.[/dim]")
        return
    display_allowlist(emails, status)


@allowlist_group.command(name="status")
@click.pass_context
def allowlist_status(ctx: click.Context) -> None:
    """Show allow-list capacity."""

    async def _status(engine: PhishGuardEngine):
        return engine.allowlist_status()

    status = _run_engine(ctx, _status)
    console.print(f"[bold]Allow-listed:[/bold] {status['count']}/{status['max']}")
    if status["is_full"]:
        console.print("[yellow]Allow-list is full.[/yellow]")
