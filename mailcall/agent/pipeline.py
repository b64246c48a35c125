"""Triage pipeline — categorize a user's messages, persist them, update sender state."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mailcall.calls.scripts import AggregateStats, Highlight
from mailcall.inbox.types import EmailMessage
from mailcall.processing.aggregator import SenderAggregator
from mailcall.processing.analyzer import EmailCategorizer
from mailcall.processing.types import Category, CategoryResult
from mailcall.storage.models import SenderCategoryState

if TYPE_CHECKING:
    from mailcall.storage.db import MailcallDatabase

logger = logging.getLogger(__name__)

#: Called with (user_id, urgent highlights) when a scan finds new call-me mail.
UrgentHandler = Callable[[str, Sequence[Highlight]], Awaitable[object]]


@dataclass
class TriageOutcome:
    """Everything one triage pass produced for a user."""

    user_id: str
    messages: list[EmailMessage]
    results: dict[str, CategoryResult]
    new_ids: set[str] = field(default_factory=set)
    senders: dict[str, SenderCategoryState] = field(default_factory=dict)

    @property
    def stats(self) -> AggregateStats:
        return AggregateStats.from_results(self.results.values())

    def highlights(self, *, new_only: bool = False, category: Category | None = None) -> list[Highlight]:
        """One highlight per sender (their latest message), most important first."""
        latest: dict[str, tuple[EmailMessage, CategoryResult]] = {}
        for message in self.messages:
            result = self.results.get(message.id)
            if result is None:
                continue
            if new_only and message.id not in self.new_ids:
                continue
            if category is not None and result.category != category:
                continue
            seen = latest.get(message.sender_address)
            if seen is None or message.date > seen[0].date:
                latest[message.sender_address] = (message, result)

        ranked = sorted(latest.values(), key=lambda mr: (mr[1].importance, mr[0].date), reverse=True)
        return [
            Highlight(
                sender=m.sender_name,
                subject=m.subject,
                importance=r.importance,
                summary=r.summary,
                email_count=self.senders[m.sender_address].email_count
                if m.sender_address in self.senders
                else 1,
            )
            for m, r in ranked
        ]

    def messages_in(self, category: Category) -> dict[str, list[EmailMessage]]:
        """Messages of one category grouped by sender address."""
        grouped: dict[str, list[EmailMessage]] = {}
        for message in self.messages:
            result = self.results.get(message.id)
            if result is not None and result.category == category:
                grouped.setdefault(message.sender_address, []).append(message)
        return grouped


class TriagePipeline:
    """Runs one categorization pass over a user's messages.

    Messages that were already categorized are read back from storage rather
    than sent to the AI service again, and are not merged into sender state a
    second time.  When ``on_urgent`` is given and the pass finds new call-me
    messages, it is awaited before ``process`` returns.
    """

    def __init__(
        self,
        categorizer: EmailCategorizer,
        aggregator: SenderAggregator,
        db: MailcallDatabase,
    ) -> None:
        self._categorizer = categorizer
        self._aggregator = aggregator
        self._db = db

    @property
    def categorizer(self) -> EmailCategorizer:
        return self._categorizer

    async def process(
        self,
        user_id: str,
        messages: Sequence[EmailMessage],
        *,
        on_urgent: UrgentHandler | None = None,
    ) -> TriageOutcome:
        unique = list({m.id: m for m in messages}.values())
        stored = self._db.get_categorizations(m.id for m in unique)
        new = [m for m in unique if m.id not in stored]

        fresh = await self._categorizer.categorize_many(new) if new else {}
        outcome = TriageOutcome(
            user_id=user_id,
            messages=unique,
            results={**stored, **fresh},
            new_ids=set(fresh),
        )

        # Oldest first so each sender's count and latest subject build up in order.
        for message in sorted(new, key=lambda m: m.date):
            result = fresh[message.id]
            state = await self._aggregator.aggregate(user_id, message, result)
            outcome.senders[state.sender_id] = state

        logger.info(
            "Triage user=%s: %d message(s), %d new, %d sender(s) updated",
            user_id,
            len(unique),
            len(new),
            len(outcome.senders),
        )

        if on_urgent is not None:
            urgent = outcome.highlights(new_only=True, category=Category.CALL_ME)
            if urgent:
                logger.info("Triage user=%s: %d urgent sender(s); raising alert", user_id, len(urgent))
                await on_urgent(user_id, urgent)

        return outcome
