"""MailcallApp — builds the storage and service objects the CLI commands share."""

from __future__ import annotations

from datetime import datetime, timedelta

from mailcall.agent.pipeline import TriagePipeline
from mailcall.calls.dispatcher import CallDispatcher
from mailcall.calls.gateway import TelephonyGateway, TwilioGateway
from mailcall.calls.scheduler import CallScheduler, SchedulerConfig
from mailcall.calls.scripts import AggregateStats, Highlight, ScriptSynthesizer
from mailcall.calls.types import CallScript, CallType
from mailcall.inbox.types import MessageSource
from mailcall.processing.aggregator import SenderAggregator
from mailcall.processing.ai_service import AIService, AnthropicService
from mailcall.processing.analyzer import EmailCategorizer
from mailcall.processing.types import Category
from mailcall.storage.db import MailcallDatabase


class MailcallApp:
    """Coordinates the database and the external services behind one object.

    Services are built on first use so commands that only read the database
    never touch the Anthropic or Twilio configuration.

    Usage::

        app = MailcallApp(MailcallDatabase())
        outcome = await app.pipeline().process(user_id, messages)
        entry = await app.dispatcher().dispatch(...)
    """

    def __init__(
        self,
        db: MailcallDatabase,
        ai: AIService | None = None,
        gateway: TelephonyGateway | None = None,
    ) -> None:
        self.db = db
        self._ai = ai
        self._gateway = gateway

    @property
    def ai(self) -> AIService:
        if self._ai is None:
            self._ai = AnthropicService()
        return self._ai

    @property
    def gateway(self) -> TelephonyGateway:
        if self._gateway is None:
            self._gateway = TwilioGateway.from_env()
        return self._gateway

    def close(self) -> None:
        """Release the database connection."""
        self.db.close()

    async def aclose(self) -> None:
        """Close the HTTP client of a gateway this app created."""
        if isinstance(self._gateway, TwilioGateway):
            await self._gateway.aclose()

    def categorizer(self) -> EmailCategorizer:
        return EmailCategorizer.from_env(self.ai)

    def pipeline(self) -> TriagePipeline:
        return TriagePipeline(self.categorizer(), SenderAggregator(self.db), self.db)

    def synthesizer(self, use_ai: bool = True) -> ScriptSynthesizer:
        return ScriptSynthesizer(self.ai if use_ai else None)

    def dispatcher(self) -> CallDispatcher:
        return CallDispatcher(self.db, self.gateway)

    def call_scheduler(self, source: MessageSource) -> CallScheduler:
        return CallScheduler(
            self.db,
            source,
            self.pipeline(),
            self.synthesizer(use_ai=False),
            self.dispatcher(),
            SchedulerConfig.from_env(),
        )

    async def stored_script(
        self,
        user_id: str,
        call_type: CallType,
        *,
        category: Category | None = None,
        use_ai: bool = False,
        now: datetime | None = None,
    ) -> CallScript:
        """Build a script from what is already stored, without fetching mail.

        Digests and alerts cover today (local time); weekly summaries cover
        the last seven days; reminders and category alerts cover every
        sender currently in the target category.
        """
        now = now or datetime.now().astimezone()
        synthesizer = self.synthesizer(use_ai)

        if call_type in (CallType.REMINDER, CallType.CATEGORY_ALERT):
            default = Category.REMIND_ME if call_type == CallType.REMINDER else Category.CALL_ME
            target = category or default
            states = self.db.get_sender_states(user_id, target)
            stats = AggregateStats({target: sum(s.email_count for s in states)})
            highlights = [Highlight.from_sender_state(s) for s in states]
            return synthesizer.generate_script(
                call_type, stats, highlights, category=target, now=now
            )

        if call_type == CallType.WEEKLY_SUMMARY:
            since = now - timedelta(days=7)
        else:
            since = now.replace(hour=0, minute=0, second=0, microsecond=0)
        stats = AggregateStats.from_counts(self.db.get_category_counts(user_id, since=since))
        states = [s for s in self.db.get_sender_states(user_id) if s.last_email_date >= since]

        if call_type == CallType.URGENT_ALERT:
            urgent = [Highlight.from_sender_state(s) for s in states if s.category == Category.CALL_ME]
            return synthesizer.generate_script(call_type, stats, urgent, now=now)

        highlights = sorted(
            (Highlight.from_sender_state(s) for s in states),
            key=lambda h: h.importance,
            reverse=True,
        )
        return await synthesizer.synthesize(call_type, stats, highlights, now=now)
