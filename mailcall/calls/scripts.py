"""Call script synthesis — templated scripts, optionally rewritten by the AI service."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from mailcall.calls.types import CallScript, CallType
from mailcall.processing.ai_service import AIService, AIServiceError
from mailcall.processing.prompts import build_script_prompt
from mailcall.processing.types import (
    CATEGORY_ORDER,
    SPOKEN_CATEGORY,
    Category,
    CategoryResult,
)
from mailcall.storage.models import SenderCategoryState

logger = logging.getLogger(__name__)

_BASE_SECONDS = 20
_URGENT_BASE_SECONDS = 10
_PER_ITEM_SECONDS = 8
MAX_SECONDS = 120

MAX_HIGHLIGHTS = 5
HIGHLIGHT_MIN_IMPORTANCE = 4
MAX_NEWSLETTER_SUMMARIES = 2
_AI_TIMEOUT_SECONDS = 30.0

#: What a reminder call tells the user to do with each category.
REMINDER_GUIDANCE: dict[Category, str] = {
    Category.CALL_ME: "These need your direct response today.",
    Category.REMIND_ME: "Set aside a few minutes to follow up on these before the day is out.",
    Category.KEEP_QUIET: "Nothing here is urgent. Skim them when you have a moment.",
    Category.NEWSLETTER: "Save these for your reading time.",
    Category.WHY_DID_I_SIGNUP: "You might want to unsubscribe from the ones you no longer read.",
    Category.DONT_TELL_ANYONE: "These are parked out of sight. No action needed.",
}

_AI_CALL_TYPES = (CallType.DAILY_DIGEST, CallType.WEEKLY_SUMMARY)


@dataclass(frozen=True)
class AggregateStats:
    """Email counts per category for one script."""

    counts: dict[Category, int] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Iterable[CategoryResult]) -> AggregateStats:
        return cls(dict(Counter(r.category for r in results)))

    @classmethod
    def from_counts(cls, counts: Mapping[Category | str, int]) -> AggregateStats:
        merged: Counter[Category] = Counter()
        for key, value in counts.items():
            merged[Category.coerce(key)] += int(value)
        return cls(dict(merged))

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def ordered(self) -> list[tuple[Category, int]]:
        """Non-zero counts in the fixed reading order."""
        return [(c, self.counts[c]) for c in CATEGORY_ORDER if self.counts.get(c)]


@dataclass(frozen=True)
class Highlight:
    """One sender worth mentioning by name."""

    sender: str
    subject: str
    importance: int
    summary: str = ""
    email_count: int = 1

    @classmethod
    def from_sender_state(cls, state: SenderCategoryState) -> Highlight:
        return cls(
            sender=state.sender_id.split("@")[0],
            subject=state.latest_subject,
            importance=state.importance,
            email_count=state.email_count,
        )


class ScriptSynthesizer:
    """Turns category statistics into a spoken call script.

    ``generate_script`` is the deterministic template path.  ``synthesize``
    asks the AI service for a more natural digest when one is available and
    falls back to the template on any failure.
    """

    def __init__(self, ai_service: AIService | None = None, *, timeout: float = _AI_TIMEOUT_SECONDS) -> None:
        self._ai = ai_service
        self._timeout = timeout

    def generate_script(
        self,
        call_type: CallType,
        stats: AggregateStats,
        highlights: Sequence[Highlight] = (),
        *,
        category: Category | None = None,
        newsletter_summaries: Sequence[str] = (),
        now: datetime | None = None,
    ) -> CallScript:
        now = now or datetime.now()
        if call_type in (CallType.DAILY_DIGEST, CallType.WEEKLY_SUMMARY):
            top = _top_highlights(highlights)
            news = list(newsletter_summaries)[:MAX_NEWSLETTER_SUMMARIES]
            body = self._digest(call_type, stats, top, news, now)
            return _script(body, call_type, _BASE_SECONDS, len(top) + len(news))
        if call_type == CallType.URGENT_ALERT:
            everyone = list(highlights)
            urgent = everyone[:MAX_HIGHLIGHTS]
            body = self._urgent(stats, urgent, len(everyone))
            return _script(body, call_type, _URGENT_BASE_SECONDS, len(urgent))
        if call_type == CallType.REMINDER:
            target = category or Category.REMIND_ME
            everyone = list(highlights)
            senders = everyone[:MAX_HIGHLIGHTS]
            body = self._reminder(target, senders, len(everyone))
            return _script(body, call_type, _BASE_SECONDS, len(senders))
        target = category or Category.CALL_ME
        body = self._category_alert(target, stats, highlights)
        return _script(body, call_type, _BASE_SECONDS, min(len(highlights), 3))

    async def synthesize(
        self,
        call_type: CallType,
        stats: AggregateStats,
        highlights: Sequence[Highlight] = (),
        *,
        category: Category | None = None,
        newsletter_summaries: Sequence[str] = (),
        now: datetime | None = None,
    ) -> CallScript:
        """Like generate_script, but lets the AI service phrase digests."""
        template = self.generate_script(
            call_type,
            stats,
            highlights,
            category=category,
            newsletter_summaries=newsletter_summaries,
            now=now,
        )
        if self._ai is None or not self._ai.available or call_type not in _AI_CALL_TYPES:
            return template

        prompt = build_script_prompt(
            call_type.value,
            [(SPOKEN_CATEGORY[c], n) for c, n in stats.ordered()],
            [f"{h.sender}: {h.subject}" for h in _top_highlights(highlights)],
            MAX_SECONDS,
        )
        try:
            text = await asyncio.wait_for(self._ai.complete_text(prompt), timeout=self._timeout)
        except (AIServiceError, asyncio.TimeoutError) as exc:
            logger.error("AI script synthesis failed; using template: %s", exc)
            return template
        return CallScript(
            body=text,
            estimated_duration=template.estimated_duration,
            call_type=call_type,
        )

    # ── Templates ──────────────────────────────────────────────────────────────

    def _digest(
        self,
        call_type: CallType,
        stats: AggregateStats,
        top: list[Highlight],
        news: list[str],
        now: datetime,
    ) -> str:
        weekly = call_type == CallType.WEEKLY_SUMMARY
        period = "this week" if weekly else "today"
        title = "weekly email summary" if weekly else "daily email digest"
        lines = [f"Good {_time_of_day(now)}! This is mailcall with your {title}."]

        if stats.total == 0:
            lines.append(f"You have no new emails {period}. Enjoy the quiet.")
        else:
            lines.append(f"You received {_count(stats.total, 'email')} {period}.")
            breakdown = ", ".join(
                f"{n} in {SPOKEN_CATEGORY[c]}" for c, n in stats.ordered()
            )
            lines.append(f"Here's the breakdown: {breakdown}.")

        if top:
            lines.append("The items that matter most:")
            lines.extend(f"From {h.sender}: {h.subject}." for h in top)
        if news:
            lines.append("From your newsletters:")
            lines.extend(s.rstrip(".") + "." for s in news)

        lines.append("That's everything. Have a great day!")
        return "\n".join(lines)

    def _urgent(self, stats: AggregateStats, urgent: list[Highlight], total: int) -> str:
        lines = ["This is mailcall with an urgent email alert."]
        if urgent:
            lines.append(
                f"You have {_count(total, 'urgent email')} needing your attention right away."
            )
            lines.extend(f"From {h.sender}: {h.subject}." for h in urgent)
        else:
            n = stats.counts.get(Category.CALL_ME, 0)
            if not n:
                lines.append("You have no urgent emails right now. Goodbye.")
                return "\n".join(lines)
            lines.append(f"You have {_count(n, 'urgent email')} waiting.")
        lines.append("Please check your inbox as soon as possible.")
        return "\n".join(lines)

    def _reminder(self, category: Category, senders: list[Highlight], total: int) -> str:
        spoken = SPOKEN_CATEGORY[category]
        lines = [
            "Hello! This is mailcall with an email reminder.",
            f"You have {_count(total, 'sender')} in your {spoken} category.",
        ]
        lines.extend(
            f"From {h.sender}: {h.subject}. {_count(h.email_count, 'email')} in total."
            for h in senders
        )
        lines.append(REMINDER_GUIDANCE[category])
        lines.append("Thanks, and have a productive day.")
        return "\n".join(lines)

    def _category_alert(
        self, category: Category, stats: AggregateStats, senders: Sequence[Highlight]
    ) -> str:
        spoken = SPOKEN_CATEGORY[category]
        total = stats.counts.get(category) or sum(h.email_count for h in senders)
        lines = [
            "Hello! This is mailcall.",
            f"You have {_count(total, 'email')} from {_count(len(senders), 'sender')} "
            f"in your {spoken} category.",
        ]
        names = [h.sender for h in senders[:3]]
        if names:
            lines.append(f"Top senders include {_join(names)}.")
        lines.append(REMINDER_GUIDANCE[category])
        return "\n".join(lines)


# ── Helpers ────────────────────────────────────────────────────────────────────


def _top_highlights(highlights: Iterable[Highlight]) -> list[Highlight]:
    return [h for h in highlights if h.importance >= HIGHLIGHT_MIN_IMPORTANCE][:MAX_HIGHLIGHTS]


def _script(body: str, call_type: CallType, base: int, items: int) -> CallScript:
    duration = min(MAX_SECONDS, base + _PER_ITEM_SECONDS * items)
    return CallScript(body=body, estimated_duration=duration, call_type=call_type)


def _time_of_day(now: datetime) -> str:
    if now.hour < 12:
        return "morning"
    if now.hour < 17:
        return "afternoon"
    return "evening"


def _count(n: int, noun: str) -> str:
    return f"{n} {noun}" if n == 1 else f"{n} {noun}s"


def _join(names: list[str]) -> str:
    if len(names) <= 2:
        return " and ".join(names)
    return ", ".join(names[:-1]) + f", and {names[-1]}"
