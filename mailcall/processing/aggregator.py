"""Folds per-message categorizations into per-sender state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mailcall.inbox.types import EmailMessage
from mailcall.processing.types import CategoryResult
from mailcall.storage.models import SenderCategoryState

if TYPE_CHECKING:
    from mailcall.storage.db import MailcallDatabase

logger = logging.getLogger(__name__)


def merge_sender_state(
    existing: SenderCategoryState | None,
    message: EmailMessage,
    result: CategoryResult,
    user_id: str,
) -> SenderCategoryState:
    """Merge one categorized message into a sender's state.

    The sender's bucket follows their most recent message, not a majority vote:

    - no existing state: create one from this message;
    - same date as the stored latest message: unchanged, so re-processing a
      message is a no-op;
    - otherwise: count the message, and take its category, importance, and
      subject only if it is newer than what is stored.
    """
    message_date = _aware(message.date)
    if existing is None:
        return SenderCategoryState(
            sender_id=message.sender_address,
            user_id=user_id,
            category=result.category,
            importance=result.importance,
            email_count=1,
            latest_subject=message.subject,
            last_email_date=message_date,
        )

    stored_date = _aware(existing.last_email_date)
    if message_date == stored_date:
        return existing

    counted = replace(existing, email_count=existing.email_count + 1)
    if message_date < stored_date:
        return counted
    return replace(
        counted,
        category=result.category,
        importance=result.importance,
        latest_subject=message.subject,
        last_email_date=message_date,
    )


class SenderAggregator:
    """Applies merge_sender_state through the database, one writer per sender.

    An asyncio.Lock per (user_id, sender_id) serialises merges issued from
    concurrent scans and is dropped once no merge holds or awaits it; the
    database's BEGIN IMMEDIATE transaction covers the read-modify-write and
    the categorization record itself.
    """

    def __init__(self, db: MailcallDatabase) -> None:
        self._db = db
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._waiters: dict[tuple[str, str], int] = {}

    async def aggregate(
        self, user_id: str, message: EmailMessage, result: CategoryResult
    ) -> SenderCategoryState:
        sender_id = message.sender_address
        key = (user_id, sender_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                state = self._db.update_sender_state(
                    user_id,
                    sender_id,
                    lambda existing: merge_sender_state(existing, message, result, user_id),
                    categorized=(message, result),
                )
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]
        logger.debug(
            "sender=%s category=%s count=%d",
            sender_id,
            state.category.value,
            state.email_count,
        )
        return state


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)
