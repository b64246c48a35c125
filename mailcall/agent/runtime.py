"""Background agent — keeps a Gmail session open and runs the call jobs against it."""

import asyncio
import logging
import signal
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from dotenv import load_dotenv

from mailcall.agent.pipeline import TriagePipeline
from mailcall.calls.dispatcher import CallDispatcher
from mailcall.calls.gateway import TwilioGateway
from mailcall.calls.scheduler import CallScheduler, SchedulerConfig, create_call_scheduler
from mailcall.calls.scripts import ScriptSynthesizer
from mailcall.inbox.gmail_client import GmailClient, gmail_client
from mailcall.inbox.types import MessageSourceError
from mailcall.processing.aggregator import SenderAggregator
from mailcall.processing.ai_service import AnthropicService
from mailcall.processing.analyzer import EmailCategorizer
from mailcall.storage.db import MailcallDatabase

logger = logging.getLogger(__name__)

# Backoff: 2^attempt seconds, capped at 5 minutes
_MAX_BACKOFF_SECONDS = 300

#: Opens a connected GmailClient; called once per (re)connection.
SourceFactory = Callable[[], AbstractAsyncContextManager[GmailClient]]


class MailcallAgent:
    """Runs the due-call tick, status reconciliation, and inbox scan unattended.

    The APScheduler jobs are bound to one live Gmail session.  The session's
    health is checked every scan interval; when the check (or the connection
    itself) fails the jobs are stopped and the session is reopened with
    exponential backoff.

    Usage::

        agent = MailcallAgent(db, categorizer, synthesizer, dispatcher)
        await agent.run()
    """

    def __init__(
        self,
        db: MailcallDatabase,
        categorizer: EmailCategorizer,
        synthesizer: ScriptSynthesizer,
        dispatcher: CallDispatcher,
        config: SchedulerConfig | None = None,
        *,
        source_factory: SourceFactory = gmail_client,
    ) -> None:
        self._db = db
        self._aggregator = SenderAggregator(db)
        self._categorizer = categorizer
        self._synthesizer = synthesizer
        self._dispatcher = dispatcher
        self._config = config or SchedulerConfig.from_env()
        self._source_factory = source_factory
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        """Signal the agent to stop its jobs and shut down cleanly."""
        logger.info("Shutdown requested — stopping call jobs")
        self._stop_event.set()

    async def run(self) -> None:
        """Run until stop() is called, reconnecting to Gmail on failure."""
        attempt = 0
        while not self._stop_event.is_set():
            try:
                async with self._source_factory() as source:
                    attempt = 0
                    await self._serve(source)
            except MessageSourceError as exc:
                if self._stop_event.is_set():
                    break
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error(
                    "Gmail error (attempt %d): %s — reconnecting in %ds",
                    attempt,
                    exc,
                    delay,
                )
                await self._interruptible_sleep(delay)
            except Exception as exc:  # noqa: BLE001
                if self._stop_event.is_set():
                    break
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error(
                    "Unexpected error (attempt %d): %s — reconnecting in %ds",
                    attempt,
                    exc,
                    delay,
                    exc_info=True,
                )
                await self._interruptible_sleep(delay)

        logger.info("Agent stopped")

    # ── Internal ───────────────────────────────────────────────────────────────

    def build_call_scheduler(self, source: GmailClient) -> CallScheduler:
        pipeline = TriagePipeline(self._categorizer, self._aggregator, self._db)
        return CallScheduler(
            self._db, source, pipeline, self._synthesizer, self._dispatcher, self._config
        )

    async def _serve(self, source: GmailClient) -> None:
        """Run the jobs against ``source`` until stop() or a failed health check."""
        call_scheduler = self.build_call_scheduler(source)
        scheduler = create_call_scheduler(call_scheduler, self._dispatcher, self._config)
        scheduler.start()
        try:
            while not self._stop_event.is_set():
                await self._interruptible_sleep(self._config.scan_seconds)
                if self._stop_event.is_set():
                    break
                # MCPError from a dead session propagates and triggers a reconnect.
                if not await source.has_credentials(source.user_email):
                    logger.warning("Gmail credentials for %s are no longer accepted", source.user_email)
        finally:
            scheduler.shutdown(wait=False)

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep for `seconds` but wake immediately if stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# ── Entry point ────────────────────────────────────────────────────────────────


def main() -> None:
    """Start the agent.  Called by the `mailcall-agent` script and `mailcall run`."""
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        asyncio.run(run_agent())
    except KeyboardInterrupt:
        logger.info("Interrupted — goodbye")


async def run_agent() -> None:
    """Async entry point: wire up components and signal handlers, then run the agent."""
    db = MailcallDatabase()
    gateway = TwilioGateway.from_env()
    ai = AnthropicService()
    categorizer = EmailCategorizer.from_env(ai)
    synthesizer = ScriptSynthesizer(ai)
    dispatcher = CallDispatcher(db, gateway)
    agent = MailcallAgent(db, categorizer, synthesizer, dispatcher)

    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, agent.stop)
    except (NotImplementedError, AttributeError):
        pass

    try:
        await agent.run()
    finally:
        await gateway.aclose()
        db.close()
