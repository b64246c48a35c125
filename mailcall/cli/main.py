"""CLI entry point for mailcall."""

import logging

import click
from dotenv import load_dotenv

from mailcall.cli.context import MailcallApp
from mailcall.storage.db import MailcallDatabase

logger = logging.getLogger(__name__)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """mailcall — triage your inbox and get a phone call about what matters."""
    load_dotenv()
    logging.basicConfig(
        level=logging.WARNING,  # keep CLI output clean; errors still surface
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.obj = MailcallApp(MailcallDatabase())
    ctx.call_on_close(ctx.obj.close)


# Import and register commands after cli is defined to avoid circular imports.
from mailcall.cli.commands import (  # noqa: E402
    call,
    history,
    reconcile,
    run,
    scan,
    schedule,
    script,
    senders,
)

cli.add_command(scan)
cli.add_command(senders)
cli.add_command(script)
cli.add_command(call)
cli.add_command(history)
cli.add_command(reconcile)
cli.add_command(schedule)
cli.add_command(run)
