"""Shared pytest fixtures."""

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from mailcall.inbox.types import EmailMessage
from mailcall.processing.types import (
    Category,
    CategoryResult,
    PriorityAssessment,
    Sentiment,
    TimeToRespond,
)
from mailcall.storage.db import MailcallDatabase

MessageFactory = Callable[..., EmailMessage]
ResultFactory = Callable[..., CategoryResult]


def _message(
    id: str = "msg_001",
    subject: str = "Q2 budget review",
    sender: str = "Alice Smith <alice@example.com>",
    date: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
    snippet: str = "Please review the attached budget figures.",
    **kwargs: object,
) -> EmailMessage:
    return EmailMessage(id=id, subject=subject, sender=sender, date=date, snippet=snippet, **kwargs)  # type: ignore[arg-type]


def _result(
    category: Category = Category.KEEP_QUIET,
    importance: int = 2,
    summary: str = "",
    **kwargs: object,
) -> CategoryResult:
    return CategoryResult(
        category=category,
        importance=importance,
        reasoning=str(kwargs.pop("reasoning", "test")),
        summary=summary,
        sentiment=kwargs.pop("sentiment", Sentiment()),  # type: ignore[arg-type]
        priority=kwargs.pop(  # type: ignore[arg-type]
            "priority",
            PriorityAssessment(score=importance, time_to_respond=TimeToRespond.WHEN_CONVENIENT),
        ),
    )


@pytest.fixture
def make_message() -> MessageFactory:
    """Factory for EmailMessage with sensible defaults."""
    return _message


@pytest.fixture
def make_result() -> ResultFactory:
    """Factory for CategoryResult with sensible defaults."""
    return _result


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "mailcall.db"


@pytest.fixture
def db(db_path: Path) -> Iterator[MailcallDatabase]:
    database = MailcallDatabase(db_path=db_path)
    yield database
    database.close()
