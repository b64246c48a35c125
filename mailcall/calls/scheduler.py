"""Call scheduling — the periodic tick, the urgent fast path, and APScheduler wiring."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailcall.calls.scripts import (
    MAX_NEWSLETTER_SUMMARIES,
    AggregateStats,
    Highlight,
    ScriptSynthesizer,
)
from mailcall.calls.types import CallScript, CallType
from mailcall.inbox.types import MessageSource, MessageSourceAuthError
from mailcall.processing.types import Category
from mailcall.storage.models import CallLogEntry, ScheduledCall

if TYPE_CHECKING:
    from mailcall.agent.pipeline import TriageOutcome, TriagePipeline
    from mailcall.calls.dispatcher import CallDispatcher
    from mailcall.storage.db import MailcallDatabase

logger = logging.getLogger(__name__)

_WEEKLY_SUMMARY_WEEKDAY = 0  # Monday
_WEEK = timedelta(days=7)
_NAMES_URGENT_SENDERS = (CallType.DAILY_DIGEST, CallType.URGENT_ALERT)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s %r; using %d", name, raw, default)
        return default
    if value < 1:
        logger.warning("%s must be positive, got %d; using %d", name, value, default)
        return default
    return value


@dataclass
class SchedulerConfig:
    """Intervals and limits for the background jobs."""

    tick_seconds: int = 60
    reconcile_seconds: int = 30
    scan_seconds: int = 300
    max_messages: int = 50
    default_voice_id: str = "rachel"

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            tick_seconds=_env_int("CALL_TICK_SECONDS", 60),
            reconcile_seconds=_env_int("RECONCILE_INTERVAL_SECONDS", 30),
            scan_seconds=_env_int("SCAN_INTERVAL_SECONDS", 300),
            max_messages=_env_int("SCAN_MAX_MESSAGES", 50),
            default_voice_id=os.environ.get("DEFAULT_VOICE_ID", "rachel") or "rachel",
        )


def parse_call_time(time_str: str) -> tuple[int, int] | None:
    """Parse 'HH:MM' into (hour, minute). Returns None if it isn't a valid time."""
    try:
        hour_str, minute_str = time_str.strip().split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (ValueError, AttributeError):
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour, minute


def is_due(call: ScheduledCall, now: datetime) -> bool:
    """True if ``call`` should run at local time ``now``.

    A call is due once per day, on the first tick at or after its HH:MM.
    Weekly summaries only run on Mondays.
    """
    if not call.is_active:
        return False
    parsed = parse_call_time(call.scheduled_time)
    if parsed is None:
        logger.warning(
            "Scheduled %s for %s has invalid time %r; skipping",
            call.call_type.value,
            call.user_id,
            call.scheduled_time,
        )
        return False
    if (now.hour, now.minute) < parsed:
        return False
    if call.last_run_date == now.date().isoformat():
        return False
    if call.call_type == CallType.WEEKLY_SUMMARY and now.weekday() != _WEEKLY_SUMMARY_WEEKDAY:
        return False
    return True


def _local_now() -> datetime:
    return datetime.now().astimezone()


class CallScheduler:
    """Turns scheduled calls and urgent mail into dispatched calls.

    ``run_due_calls`` is the periodic tick; ``scan_all`` triages every
    scheduled user's inbox and raises urgent alerts through
    ``send_urgent_alert`` when new call-me mail appears.  Both sweeps isolate
    each user so one failure never stops the rest.
    """

    def __init__(
        self,
        db: MailcallDatabase,
        source: MessageSource,
        pipeline: TriagePipeline,
        synthesizer: ScriptSynthesizer,
        dispatcher: CallDispatcher,
        config: SchedulerConfig | None = None,
        *,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._db = db
        self._source = source
        self._pipeline = pipeline
        self._synthesizer = synthesizer
        self._dispatcher = dispatcher
        self._config = config or SchedulerConfig()
        self._clock = clock

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    async def schedule_and_dispatch(
        self, scheduled: ScheduledCall, now: datetime | None = None
    ) -> CallLogEntry | None:
        """Triage the user's inbox, build the script, and place the call.

        Returns None without placing a call when the user has no mail
        credentials, or for an urgent-alert schedule with nothing urgent.
        New call-me mail found while preparing any other call type raises
        an urgent alert first.
        The run date is recorded whenever a call was attempted, including
        calls that end in ``failed``; those are not retried.
        """
        now = now or self._clock()
        user_id = scheduled.user_id

        if not await self._source.has_credentials(user_id):
            logger.info("No mail credentials for %s; skipping %s", user_id, scheduled.call_type.value)
            return None
        try:
            messages = await self._source.fetch_messages(user_id, self._config.max_messages)
        except MessageSourceAuthError as exc:
            logger.warning("Mail credentials rejected for %s; skipping: %s", user_id, exc)
            return None

        # Digests and urgent alerts already read out the urgent senders.
        on_urgent = None if scheduled.call_type in _NAMES_URGENT_SENDERS else self.send_urgent_alert
        outcome = await self._pipeline.process(user_id, messages, on_urgent=on_urgent)
        script = await self._build_script(scheduled, outcome, now)
        if script is None:
            logger.info("Nothing urgent for %s; no %s call", user_id, scheduled.call_type.value)
            self._db.mark_scheduled_run(user_id, scheduled.call_type, now.date().isoformat())
            return None

        entry = await self._dispatcher.dispatch(
            user_id=user_id,
            phone_number=scheduled.phone_number,
            script=script,
            voice_id=scheduled.voice_id or self._config.default_voice_id,
            scheduled_time=now,
        )
        self._db.mark_scheduled_run(user_id, scheduled.call_type, now.date().isoformat())
        return entry

    async def run_due_calls(self, now: datetime | None = None) -> list[CallLogEntry]:
        """Dispatch every scheduled call that is due. Returns the resulting log entries."""
        now = now or self._clock()
        due = [c for c in self._db.get_scheduled_calls() if is_due(c, now)]
        if not due:
            logger.debug("Tick: no calls due")
            return []

        logger.info("Tick: %d call(s) due", len(due))
        entries: list[CallLogEntry] = []
        for scheduled in due:
            try:
                entry = await self.schedule_and_dispatch(scheduled, now)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Scheduled %s for %s failed: %s",
                    scheduled.call_type.value,
                    scheduled.user_id,
                    exc,
                    exc_info=True,
                )
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    async def send_urgent_alert(
        self, user_id: str, urgent: Sequence[Highlight]
    ) -> CallLogEntry | None:
        """Call the user right away about new call-me mail."""
        phone = self._db.get_phone_number(user_id)
        if not phone:
            logger.warning("Urgent mail for %s but no phone number on file; not calling", user_id)
            return None

        subscription = self._db.get_scheduled_call(user_id, CallType.URGENT_ALERT)
        voice_id = subscription.voice_id if subscription else self._config.default_voice_id
        script = self._synthesizer.generate_script(
            CallType.URGENT_ALERT,
            AggregateStats({Category.CALL_ME: len(urgent)}),
            urgent,
        )
        return await self._dispatcher.dispatch(
            user_id=user_id,
            phone_number=phone,
            script=script,
            voice_id=voice_id,
            scheduled_time=self._clock(),
        )

    async def scan_all(self) -> int:
        """Triage the inbox of every user with an active schedule.

        Returns the number of users scanned successfully.
        """
        users = sorted({c.user_id for c in self._db.get_scheduled_calls()})
        scanned = 0
        for user_id in users:
            try:
                if not await self._source.has_credentials(user_id):
                    logger.debug("Scan: no mail credentials for %s", user_id)
                    continue
                messages = await self._source.fetch_messages(user_id, self._config.max_messages)
                await self._pipeline.process(user_id, messages, on_urgent=self.send_urgent_alert)
            except Exception as exc:  # noqa: BLE001
                logger.error("Scan failed for %s: %s", user_id, exc, exc_info=True)
                continue
            scanned += 1
        return scanned

    # ── Script building ────────────────────────────────────────────────────────

    async def _build_script(
        self, scheduled: ScheduledCall, outcome: TriageOutcome, now: datetime
    ) -> CallScript | None:
        call_type = scheduled.call_type
        user_id = scheduled.user_id

        if call_type == CallType.DAILY_DIGEST:
            return await self._synthesizer.synthesize(
                call_type,
                outcome.stats,
                outcome.highlights(),
                newsletter_summaries=await self._newsletter_summaries(outcome),
                now=now,
            )

        if call_type == CallType.WEEKLY_SUMMARY:
            since = now - _WEEK
            stats = AggregateStats.from_counts(self._db.get_category_counts(user_id, since=since))
            states = [s for s in self._db.get_sender_states(user_id) if s.last_email_date >= since]
            highlights = sorted(
                (Highlight.from_sender_state(s) for s in states),
                key=lambda h: h.importance,
                reverse=True,
            )
            return await self._synthesizer.synthesize(call_type, stats, highlights, now=now)

        if call_type == CallType.URGENT_ALERT:
            urgent = outcome.highlights(category=Category.CALL_ME)
            if not urgent:
                return None
            return self._synthesizer.generate_script(
                call_type, AggregateStats({Category.CALL_ME: len(urgent)}), urgent, now=now
            )

        default = Category.REMIND_ME if call_type == CallType.REMINDER else Category.CALL_ME
        category = scheduled.category or default
        states = self._db.get_sender_states(user_id, category)
        stats = AggregateStats({category: sum(s.email_count for s in states)})
        return self._synthesizer.generate_script(
            call_type,
            stats,
            [Highlight.from_sender_state(s) for s in states],
            category=category,
            now=now,
        )

    async def _newsletter_summaries(self, outcome: TriageOutcome) -> list[str]:
        summaries: list[str] = []
        grouped = outcome.messages_in(Category.NEWSLETTER)
        for sender, messages in grouped.items():
            if len(summaries) >= MAX_NEWSLETTER_SUMMARIES:
                break
            recent = sorted(messages, key=lambda m: m.date, reverse=True)
            analysis = await self._pipeline.categorizer.analyze_newsletter(sender, recent)
            if analysis.is_newsletter and analysis.summary:
                summaries.append(analysis.summary)
        return summaries


def create_call_scheduler(
    call_scheduler: CallScheduler,
    dispatcher: CallDispatcher,
    config: SchedulerConfig | None = None,
) -> AsyncIOScheduler:
    """Return an AsyncIOScheduler running the due-call tick, status reconciliation, and inbox scan.

    The caller is responsible for calling scheduler.start() and scheduler.shutdown().
    """
    config = config or call_scheduler.config
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        call_scheduler.run_due_calls,
        "interval",
        seconds=config.tick_seconds,
        id="due-calls",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        dispatcher.reconcile_active,
        "interval",
        seconds=config.reconcile_seconds,
        id="reconcile",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        call_scheduler.scan_all,
        "interval",
        seconds=config.scan_seconds,
        id="inbox-scan",
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        "Call jobs scheduled: tick every %ds, reconcile every %ds, scan every %ds",
        config.tick_seconds,
        config.reconcile_seconds,
        config.scan_seconds,
    )
    return scheduler
