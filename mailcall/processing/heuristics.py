"""Deterministic keyword rules — the fallback categorizer and the AI safety net."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace

from mailcall.inbox.types import EmailMessage
from mailcall.processing.types import (
    CONFIDENCE_RANGE,
    IMPORTANCE_RANGE,
    PRIORITY_RANGE,
    SENTIMENT_RANGE,
    Category,
    CategoryResult,
    PriorityAssessment,
    Sentiment,
    TimeToRespond,
)

logger = logging.getLogger(__name__)

_NO_REPLY_MARKERS = ("noreply", "no-reply", "donotreply", "do-not-reply")


@dataclass(frozen=True)
class _Rule:
    name: str
    subject_markers: tuple[str, ...]
    category: Category
    importance: int
    time_to_respond: TimeToRespond
    reasoning: str


# First match wins.
_URGENT = _Rule(
    "urgent-keywords", ("urgent", "asap", "immediate"),
    Category.CALL_ME, 4, TimeToRespond.IMMEDIATE, "Contains urgent keywords",
)
_SCHEDULING = _Rule(
    "scheduling-keywords", ("meeting", "call", "schedule"),
    Category.REMIND_ME, 3, TimeToRespond.TODAY, "Meeting or scheduling related",
)
_NEWSLETTER = _Rule(
    "newsletter-markers", ("newsletter", "digest"),
    Category.NEWSLETTER, 2, TimeToRespond.WHEN_CONVENIENT, "Appears to be newsletter content",
)
_PROMOTION = _Rule(
    "promotional-keywords", ("promotion", "sale", "offer"),
    Category.WHY_DID_I_SIGNUP, 1, TimeToRespond.NEVER, "Promotional content",
)
_DEFAULT = _Rule(
    "default", (),
    Category.KEEP_QUIET, 2, TimeToRespond.WHEN_CONVENIENT, "General email",
)


def is_no_reply_address(sender: str) -> bool:
    lowered = sender.lower()
    return any(marker in lowered for marker in _NO_REPLY_MARKERS)


class HeuristicClassifier:
    """Keyword/sender rules used whenever the AI service can't be.

    ``classify`` is total: it never raises and does no I/O, so it is safe to
    call from any failure path.  ``validate`` re-checks any CategoryResult
    (AI-produced or not) against the closed category set and numeric ranges.
    """

    def classify(self, message: EmailMessage) -> CategoryResult:
        rule = self._match(message)
        return CategoryResult(
            category=rule.category,
            importance=rule.importance,
            reasoning=rule.reasoning,
            summary=message.snippet or message.subject,
            sentiment=Sentiment(),
            priority=PriorityAssessment(
                score=rule.importance,
                factors=(rule.name,),
                time_to_respond=rule.time_to_respond,
            ),
        )

    def validate(self, result: CategoryResult) -> CategoryResult:
        """Return ``result`` with every field forced into its declared range."""
        category = Category.coerce(result.category)
        if category.value != _raw_value(result.category):
            logger.warning("AI returned unknown category %r; using %s", result.category, category.value)

        importance = _clamp_int(result.importance, *IMPORTANCE_RANGE, field="importance")
        sentiment = replace(
            result.sentiment,
            score=_clamp_float(result.sentiment.score, *SENTIMENT_RANGE, field="sentiment.score"),
            confidence=_clamp_float(
                result.sentiment.confidence, *CONFIDENCE_RANGE, field="sentiment.confidence"
            ),
            tone=str(result.sentiment.tone or "neutral"),
        )
        priority = replace(
            result.priority,
            score=_clamp_int(result.priority.score, *PRIORITY_RANGE, field="priority.score"),
            factors=tuple(str(f) for f in result.priority.factors),
            time_to_respond=_coerce_time_to_respond(result.priority.time_to_respond),
        )
        return replace(
            result,
            category=category,
            importance=importance,
            sentiment=sentiment,
            priority=priority,
        )

    @staticmethod
    def _match(message: EmailMessage) -> _Rule:
        subject = message.subject.lower()
        sender = message.sender.lower()

        if any(m in subject for m in _URGENT.subject_markers):
            return _URGENT
        if any(m in subject for m in _SCHEDULING.subject_markers):
            return _SCHEDULING
        if (
            any(m in subject for m in _NEWSLETTER.subject_markers)
            or "newsletter" in sender
            or is_no_reply_address(sender)
        ):
            return _NEWSLETTER
        if any(m in subject for m in _PROMOTION.subject_markers):
            return _PROMOTION
        return _DEFAULT


# ── Clamping helpers ───────────────────────────────────────────────────────────


def _raw_value(value: object) -> str:
    return value.value if isinstance(value, Category) else str(value)


def _coerce_time_to_respond(value: object) -> TimeToRespond:
    if isinstance(value, TimeToRespond):
        return value
    try:
        return TimeToRespond(str(value).strip().lower())
    except ValueError:
        logger.warning("Unknown time_to_respond %r; using when-convenient", value)
        return TimeToRespond.WHEN_CONVENIENT


def _clamp_float(value: object, low: float, high: float, *, field: str) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        number = math.nan
    if math.isnan(number):
        midpoint = (low + high) / 2
        logger.warning("Non-numeric %s %r; using %s", field, value, midpoint)
        return midpoint
    clamped = min(high, max(low, number))
    if clamped != number:
        logger.warning("Clamped %s from %s to %s", field, number, clamped)
    return clamped


def _clamp_int(value: object, low: int, high: int, *, field: str) -> int:
    return int(round(_clamp_float(value, low, high, field=field)))
