"""Email categorization client — batched, rate-limited, never fails."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from mailcall.inbox.types import EmailMessage
from mailcall.processing.ai_service import (
    AIResponseShapeError,
    AIService,
    AIServiceError,
    MissingCredentialsError,
)
from mailcall.processing.heuristics import HeuristicClassifier
from mailcall.processing.prompts import (
    CATEGORIZATION_TOOL,
    NEWSLETTER_TOOL,
    build_messages,
    build_newsletter_messages,
)
from mailcall.processing.types import (
    Category,
    CategoryResult,
    NewsletterAnalysis,
    NewsletterFrequency,
    PriorityAssessment,
    Sentiment,
    TimeToRespond,
)

logger = logging.getLogger(__name__)

#: Messages categorized concurrently per rate-limit window.
CHUNK_SIZE = 5
#: Pause between consecutive chunks.
CHUNK_PAUSE_SECONDS = 1.0
#: Upper bound on a single categorization call.
CALL_TIMEOUT_SECONDS = 30.0

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class EmailCategorizer:
    """Categorizes emails with the AI service, falling back to heuristics.

    Never raises to the caller: a missing key, a failed request, a timeout, or
    a malformed response all degrade that one message to HeuristicClassifier.
    Every result, AI or heuristic, passes through ``HeuristicClassifier.validate``.

    Batches are split into chunks of ``chunk_size``.  Messages within a chunk
    are categorized concurrently; consecutive chunks are separated by
    ``chunk_pause`` seconds so the AI service's rate limit is respected.

    Usage::

        categorizer = EmailCategorizer(AnthropicService())
        results = await categorizer.categorize_many(messages)
    """

    def __init__(
        self,
        service: AIService | None,
        heuristics: HeuristicClassifier | None = None,
        *,
        chunk_size: int = CHUNK_SIZE,
        chunk_pause: float = CHUNK_PAUSE_SECONDS,
        timeout: float = CALL_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._service = service
        self._heuristics = heuristics or HeuristicClassifier()
        self._chunk_size = chunk_size
        self._chunk_pause = chunk_pause
        self._timeout = timeout
        self._sleep = sleep
        self.ai_enabled = service is not None and service.available
        if not self.ai_enabled:
            logger.info("AI service unavailable; categorizing with heuristics only")

    @classmethod
    def from_env(cls, service: AIService | None) -> EmailCategorizer:
        """Build a categorizer, reading the chunk pause from the environment."""
        raw = os.environ.get("CATEGORIZE_CHUNK_PAUSE_SECONDS", str(CHUNK_PAUSE_SECONDS))
        try:
            pause = float(raw)
        except ValueError:
            logger.warning("Invalid CATEGORIZE_CHUNK_PAUSE_SECONDS %r; using %s", raw, CHUNK_PAUSE_SECONDS)
            pause = CHUNK_PAUSE_SECONDS
        return cls(service, chunk_pause=pause)

    @property
    def heuristics(self) -> HeuristicClassifier:
        return self._heuristics

    async def categorize_one(self, message: EmailMessage) -> CategoryResult:
        """Categorize a single message. Never raises."""
        if not self.ai_enabled:
            return self._heuristics.classify(message)

        try:
            data = await self._complete(build_messages(message), CATEGORIZATION_TOOL)
            result = _parse_result(data)
        except (AIServiceError, asyncio.TimeoutError) as exc:
            logger.warning(
                "AI categorization failed for email %s (%s: %s); using heuristics",
                message.id,
                type(exc).__name__,
                exc,
            )
            return self._heuristics.classify(message)

        result = self._heuristics.validate(result)
        logger.debug("email=%s category=%s importance=%d", message.id, result.category.value, result.importance)
        return result

    async def categorize_many(self, messages: Sequence[EmailMessage]) -> dict[str, CategoryResult]:
        """Categorize every message; the result maps message id → CategoryResult.

        Always returns an entry for each input message.
        """
        results: dict[str, CategoryResult] = {}
        chunks = chunked(messages, self._chunk_size)
        for index, chunk in enumerate(chunks):
            if index and self.ai_enabled:
                await self._sleep(self._chunk_pause)
            chunk_results = await asyncio.gather(*(self.categorize_one(m) for m in chunk))
            for message, result in zip(chunk, chunk_results):
                results[message.id] = result

        if chunks:
            logger.info(
                "Categorized %d email(s) in %d chunk(s) (ai=%s)",
                len(messages),
                len(chunks),
                self.ai_enabled,
            )
        return results

    async def analyze_newsletter(
        self, sender: str, messages: Sequence[EmailMessage]
    ) -> NewsletterAnalysis:
        """Decide whether ``sender`` is a newsletter from its recent messages. Never raises."""
        fallback = NewsletterAnalysis(is_newsletter=False, summary=f"Emails from {sender}")
        if not self.ai_enabled or not messages:
            return fallback
        try:
            data = await self._complete(
                build_newsletter_messages(sender, list(messages)), NEWSLETTER_TOOL
            )
        except (AIServiceError, asyncio.TimeoutError) as exc:
            logger.warning("Newsletter analysis failed for %s: %s", sender, exc)
            return fallback
        return _parse_newsletter(data, fallback)

    async def _complete(self, messages: list[dict[str, str]], tool: dict[str, Any]) -> dict[str, Any]:
        if self._service is None:
            raise MissingCredentialsError("AI service is not configured")
        return await asyncio.wait_for(
            self._service.complete_structured(messages, tool),
            timeout=self._timeout,
        )


# ── Response parsing ───────────────────────────────────────────────────────────


def _parse_result(data: object) -> CategoryResult:
    """Convert raw tool-call input into a CategoryResult.

    Only the overall shape is checked here; ranges are enforced afterwards by
    HeuristicClassifier.validate.
    """
    if not isinstance(data, dict) or "category" not in data:
        raise AIResponseShapeError(f"Categorization payload missing 'category': {data!r}")

    raw_sentiment = data.get("sentiment")
    sentiment_data: dict[str, Any] = raw_sentiment if isinstance(raw_sentiment, dict) else {}
    raw_priority = data.get("priority")
    priority_data: dict[str, Any] = raw_priority if isinstance(raw_priority, dict) else {}
    raw_factors = priority_data.get("factors")
    factors = tuple(str(f) for f in raw_factors) if isinstance(raw_factors, list) else ()

    importance = _number(data.get("importance"), 3)
    return CategoryResult(
        category=Category.coerce(data["category"]),
        importance=importance,  # type: ignore[arg-type]
        reasoning=str(data.get("reasoning") or "Automated categorization"),
        summary=str(data.get("summary") or ""),
        sentiment=Sentiment(
            score=_number(sentiment_data.get("score"), 0.0),  # type: ignore[arg-type]
            confidence=_number(sentiment_data.get("confidence"), 0.5),  # type: ignore[arg-type]
            tone=str(sentiment_data.get("tone") or "neutral"),
        ),
        priority=PriorityAssessment(
            score=_number(priority_data.get("score"), importance),  # type: ignore[arg-type]
            factors=factors,
            time_to_respond=priority_data.get(  # type: ignore[arg-type]
                "time_to_respond", TimeToRespond.WHEN_CONVENIENT
            ),
        ),
    )


def _parse_newsletter(data: dict[str, Any], fallback: NewsletterAnalysis) -> NewsletterAnalysis:
    try:
        frequency = NewsletterFrequency(str(data.get("frequency", "irregular")))
    except ValueError:
        frequency = NewsletterFrequency.IRREGULAR
    return NewsletterAnalysis(
        is_newsletter=bool(data.get("is_newsletter", False)),
        frequency=frequency,
        content_type=str(data.get("content_type") or "unknown"),
        summary=str(data.get("summary") or fallback.summary),
    )


def _number(value: object, default: float) -> object:
    """Pass numbers through for clamping; replace missing or non-numeric values."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value))
    except ValueError:
        return default
