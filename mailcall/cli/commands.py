"""CLI command implementations — all commands work through MailcallApp."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, TypeVar

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mailcall.calls.scheduler import parse_call_time
from mailcall.calls.scripts import Highlight
from mailcall.calls.types import CallStatus, CallType
from mailcall.inbox.gmail_client import gmail_client
from mailcall.inbox.types import MessageSourceError
from mailcall.processing.types import Category
from mailcall.storage.models import CallLogEntry, ScheduledCall

if TYPE_CHECKING:
    from mailcall.cli.context import MailcallApp

logger = logging.getLogger(__name__)
console = Console(width=200)

_CALL_TYPES = click.Choice([t.value for t in CallType])
_CATEGORIES = click.Choice([c.value for c in Category])

_CATEGORY_STYLE = {
    Category.CALL_ME: "bold red",
    Category.REMIND_ME: "yellow",
    Category.KEEP_QUIET: "dim",
    Category.NEWSLETTER: "cyan",
    Category.WHY_DID_I_SIGNUP: "magenta",
    Category.DONT_TELL_ANYONE: "dim",
}

_STATUS_STYLE = {
    CallStatus.PENDING: "dim",
    CallStatus.INITIATED: "cyan",
    CallStatus.IN_PROGRESS: "yellow",
    CallStatus.COMPLETED: "green",
    CallStatus.FAILED: "red",
}


F = TypeVar("F", bound=Callable[..., object])


def _user_option(fn: F) -> F:
    return click.option(
        "--user",
        "user_id",
        envvar="USER_GOOGLE_EMAIL",
        required=True,
        help="Google account email (defaults to USER_GOOGLE_EMAIL).",
    )(fn)


def _styled_category(category: Category) -> str:
    style = _CATEGORY_STYLE[category]
    return f"[{style}]{category.value}[/{style}]"


def _styled_status(status: CallStatus) -> str:
    style = _STATUS_STYLE[status]
    return f"[{style}]{status.value}[/{style}]"


# ── scan ─────────────────────────────────────────────────────────────────────


@click.command()
@_user_option
@click.option("--max", "max_results", default=50, show_default=True, help="Messages to fetch.")
@click.pass_obj
def scan(app: MailcallApp, user_id: str, max_results: int) -> None:
    """Fetch the inbox, categorize new messages, and update sender state."""
    asyncio.run(_scan_async(app, user_id, max_results))


async def _scan_async(app: MailcallApp, user_id: str, max_results: int) -> None:
    try:
        async with gmail_client(user_email=user_id) as gmail:
            console.print(f"Fetching up to {max_results} message(s) for [bold]{user_id}[/bold]...")
            messages = await gmail.fetch_messages(user_id, max_results)
            if not messages:
                console.print("[yellow]No messages found.[/yellow]")
                return
            call_scheduler = app.call_scheduler(gmail)

            async def alert(uid: str, urgent: Sequence[Highlight]) -> CallLogEntry | None:
                entry = await call_scheduler.send_urgent_alert(uid, urgent)
                if entry is not None:
                    console.print(
                        f"[bold red]Urgent alert[/bold red] {_styled_status(entry.status)} "
                        f"to {entry.phone_number} ({len(urgent)} sender(s))"
                    )
                return entry

            outcome = await app.pipeline().process(user_id, messages, on_urgent=alert)
    except (MessageSourceError, ValueError) as exc:
        console.print(f"[red]Gmail error: {exc}[/red]")
        return
    finally:
        await app.aclose()

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Subject", max_width=40)
    table.add_column("From", max_width=28)
    table.add_column("Category", width=18)
    table.add_column("Imp.", width=4)
    table.add_column("Summary", max_width=60)
    for message in outcome.messages:
        result = outcome.results[message.id]
        marker = "" if message.id in outcome.new_ids else " [dim](seen)[/dim]"
        table.add_row(
            message.subject + marker,
            message.sender_address,
            _styled_category(result.category),
            str(result.importance),
            result.summary,
        )
    console.print(table)

    breakdown = ", ".join(f"{n} {c.value}" for c, n in outcome.stats.ordered())
    console.print(
        f"[green]Done.[/green] {len(outcome.new_ids)} new of {len(outcome.messages)} "
        f"— {breakdown}"
    )


# ── senders ──────────────────────────────────────────────────────────────────


@click.command()
@_user_option
@click.option("--category", type=_CATEGORIES, default=None, help="Only this category.")
@click.pass_obj
def senders(app: MailcallApp, user_id: str, category: str | None) -> None:
    """List senders and the category their latest email put them in."""
    states = app.db.get_sender_states(user_id, Category(category) if category else None)
    if not states:
        console.print("[yellow]No senders yet. Run `mailcall scan` first.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Sender", max_width=36)
    table.add_column("Category", width=18)
    table.add_column("Imp.", width=4)
    table.add_column("Emails", width=6)
    table.add_column("Latest subject", max_width=50)
    table.add_column("Last email", width=16)
    for state in states:
        table.add_row(
            state.sender_id,
            _styled_category(state.category),
            str(state.importance),
            str(state.email_count),
            state.latest_subject,
            state.last_email_date.astimezone().strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


# ── script ───────────────────────────────────────────────────────────────────


@click.command()
@click.argument("call_type", type=_CALL_TYPES)
@_user_option
@click.option("--category", type=_CATEGORIES, default=None, help="Target category for reminders/alerts.")
@click.option("--ai/--no-ai", default=False, show_default=True, help="Let Claude phrase digests.")
@click.pass_obj
def script(app: MailcallApp, call_type: str, user_id: str, category: str | None, ai: bool) -> None:
    """Preview the call script built from stored data."""
    result = asyncio.run(
        app.stored_script(
            user_id,
            CallType(call_type),
            category=Category(category) if category else None,
            use_ai=ai,
        )
    )
    console.print(
        Panel(
            result.body,
            title=f"[bold]{call_type}[/bold]",
            subtitle=f"~{result.estimated_duration}s",
            border_style="blue",
        )
    )


# ── call ─────────────────────────────────────────────────────────────────────


@click.command()
@click.argument("call_type", type=_CALL_TYPES)
@_user_option
@click.option("--phone", default=None, help="Number to call (defaults to the user's scheduled number).")
@click.option("--voice", default=None, help="Voice id (defaults to DEFAULT_VOICE_ID or rachel).")
@click.option("--category", type=_CATEGORIES, default=None, help="Target category for reminders/alerts.")
@click.pass_obj
def call(
    app: MailcallApp,
    call_type: str,
    user_id: str,
    phone: str | None,
    voice: str | None,
    category: str | None,
) -> None:
    """Place a call now using stored data."""
    phone = phone or app.db.get_phone_number(user_id)
    if not phone:
        console.print(f"[red]No phone number for {user_id}. Pass --phone or add a schedule.[/red]")
        raise click.exceptions.Exit(1)
    voice = voice or os.environ.get("DEFAULT_VOICE_ID", "rachel")
    entry = asyncio.run(
        _call_async(app, CallType(call_type), user_id, phone, voice, Category(category) if category else None)
    )

    if entry.status == CallStatus.FAILED:
        console.print(f"[red]Call failed:[/red] {entry.error}")
        raise click.exceptions.Exit(1)
    console.print(
        f"[green]Call {_styled_status(entry.status)}[/green] to {entry.phone_number} "
        f"(log [dim]{entry.id}[/dim], provider id [dim]{entry.provider_call_id}[/dim])"
    )


async def _call_async(
    app: MailcallApp,
    call_type: CallType,
    user_id: str,
    phone: str,
    voice: str,
    category: Category | None,
) -> CallLogEntry:
    try:
        result = await app.stored_script(user_id, call_type, category=category, use_ai=True)
        return await app.dispatcher().dispatch(
            user_id=user_id, phone_number=phone, script=result, voice_id=voice
        )
    finally:
        await app.aclose()


# ── history ──────────────────────────────────────────────────────────────────


@click.command()
@_user_option
@click.option("--limit", default=20, show_default=True, help="Calls to show.")
@click.pass_obj
def history(app: MailcallApp, user_id: str, limit: int) -> None:
    """Show the user's most recent calls."""
    entries = app.db.get_call_logs(user_id, limit=limit)
    if not entries:
        console.print("[yellow]No calls yet.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("When", width=16)
    table.add_column("Type", width=15)
    table.add_column("Status", width=12)
    table.add_column("To", width=16)
    table.add_column("Provider id", max_width=36)
    table.add_column("Error", max_width=50)
    for entry in entries:
        table.add_row(
            entry.scheduled_time.astimezone().strftime("%Y-%m-%d %H:%M"),
            entry.call_type.value,
            _styled_status(entry.status),
            entry.phone_number,
            entry.provider_call_id or "",
            entry.error or "",
        )
    console.print(table)


# ── reconcile ────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def reconcile(app: MailcallApp) -> None:
    """Pull the provider's status for every call still in flight."""
    changed = asyncio.run(_reconcile_async(app))
    if not changed:
        console.print("[dim]No call status changes.[/dim]")
        return
    for entry in changed:
        console.print(f"  • {entry.id} → {_styled_status(entry.status)}")
    console.print(f"[green]Done.[/green] {len(changed)} call(s) updated.")


async def _reconcile_async(app: MailcallApp) -> list[CallLogEntry]:
    try:
        return await app.dispatcher().reconcile_active()
    finally:
        await app.aclose()


# ── schedule ─────────────────────────────────────────────────────────────────


@click.command()
@click.argument("call_type", type=_CALL_TYPES, required=False)
@_user_option
@click.option("--phone", default=None, help="Number to call.")
@click.option("--time", "at", default=None, help="Local time of day, HH:MM.")
@click.option("--voice", default=None, help="Voice id.")
@click.option("--category", type=_CATEGORIES, default=None, help="Target category for reminders/alerts.")
@click.option("--disable", is_flag=True, help="Keep the schedule but stop calling.")
@click.pass_obj
def schedule(
    app: MailcallApp,
    call_type: str | None,
    user_id: str,
    phone: str | None,
    at: str | None,
    voice: str | None,
    category: str | None,
    disable: bool,
) -> None:
    """Create or update a scheduled call. Without CALL_TYPE, list the user's schedules."""
    if call_type is None:
        _list_schedules(app, user_id)
        return

    existing = app.db.get_scheduled_call(user_id, CallType(call_type))
    phone = phone or (existing.phone_number if existing else None)
    at = at or (existing.scheduled_time if existing else None)
    if not phone or not at:
        console.print("[red]--phone and --time are required for a new schedule.[/red]")
        raise click.exceptions.Exit(1)
    if parse_call_time(at) is None:
        console.print(f"[red]Invalid --time {at!r}; expected HH:MM.[/red]")
        raise click.exceptions.Exit(1)

    app.db.upsert_scheduled_call(
        ScheduledCall(
            user_id=user_id,
            phone_number=phone,
            call_type=CallType(call_type),
            scheduled_time=at,
            is_active=not disable,
            voice_id=voice or (existing.voice_id if existing else None) or os.environ.get("DEFAULT_VOICE_ID", "rachel"),
            category=Category(category) if category else (existing.category if existing else None),
            last_run_date=existing.last_run_date if existing else None,
        )
    )
    state = "[dim]disabled[/dim]" if disable else "[green]active[/green]"
    console.print(f"Scheduled [bold]{call_type}[/bold] for {user_id} at {at} ({state}).")


def _list_schedules(app: MailcallApp, user_id: str) -> None:
    schedules = [c for c in app.db.get_scheduled_calls(active_only=False) if c.user_id == user_id]
    if not schedules:
        console.print("[yellow]No scheduled calls.[/yellow]")
        return
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Type", width=15)
    table.add_column("Time", width=6)
    table.add_column("Phone", width=16)
    table.add_column("Voice", width=8)
    table.add_column("Category", width=18)
    table.add_column("Active", width=6)
    table.add_column("Last run", width=10)
    for item in schedules:
        table.add_row(
            item.call_type.value,
            item.scheduled_time,
            item.phone_number,
            item.voice_id,
            item.category.value if item.category else "",
            "yes" if item.is_active else "[dim]no[/dim]",
            item.last_run_date or "",
        )
    console.print(table)


# ── run ──────────────────────────────────────────────────────────────────────


@click.command()
def run() -> None:
    """Run the background agent: scheduled calls, urgent alerts, status sync."""
    from mailcall.agent.runtime import run_agent

    logging.getLogger().setLevel(logging.INFO)
    try:
        asyncio.run(run_agent())
    except KeyboardInterrupt:
        logger.info("Interrupted — goodbye")
