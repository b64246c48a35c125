"""Tests for TriagePipeline — heuristics-only categorizer, real SQLite."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from mailcall.agent.pipeline import TriageOutcome, TriagePipeline
from mailcall.processing.aggregator import SenderAggregator
from mailcall.processing.analyzer import EmailCategorizer
from mailcall.processing.types import Category

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def categorizer() -> EmailCategorizer:
    return EmailCategorizer(None)


@pytest.fixture
def pipeline(categorizer, db) -> TriagePipeline:
    return TriagePipeline(categorizer, SenderAggregator(db), db)


def _inbox(make_message):
    return [
        make_message(id="m1", subject="URGENT: wire transfer", sender="Dana Lee <dana@corp.com>", date=T0),
        make_message(id="m2", subject="Team meeting moved", sender="pm@corp.com", date=T0 + timedelta(minutes=5)),
        make_message(id="m3", subject="Weekly newsletter", sender="news@letters.io", date=T0 + timedelta(minutes=10)),
    ]


class TestProcess:
    async def test_categorizes_and_persists(self, pipeline, db, make_message) -> None:
        outcome = await pipeline.process("u1", _inbox(make_message))

        assert outcome.new_ids == {"m1", "m2", "m3"}
        assert outcome.results["m1"].category == Category.CALL_ME
        assert outcome.results["m2"].category == Category.REMIND_ME
        assert outcome.results["m3"].category == Category.NEWSLETTER
        assert set(db.get_categorizations(["m1", "m2", "m3"])) == {"m1", "m2", "m3"}
        assert db.get_sender_state("u1", "dana@corp.com").category == Category.CALL_ME
        assert outcome.stats.total == 3

    async def test_stored_messages_are_not_recategorized(self, categorizer, db, make_message) -> None:
        pipeline = TriagePipeline(categorizer, SenderAggregator(db), db)
        await pipeline.process("u1", _inbox(make_message))

        categorizer.categorize_many = AsyncMock(return_value={})
        outcome = await pipeline.process("u1", _inbox(make_message))

        categorizer.categorize_many.assert_not_awaited()
        assert outcome.new_ids == set()
        assert len(outcome.results) == 3
        assert db.get_sender_state("u1", "dana@corp.com").email_count == 1

    async def test_duplicate_ids_processed_once(self, pipeline, db, make_message) -> None:
        message = make_message(id="dup", sender="bob@corp.com")
        outcome = await pipeline.process("u1", [message, message])

        assert len(outcome.messages) == 1
        assert db.get_sender_state("u1", "bob@corp.com").email_count == 1

    async def test_sender_count_builds_oldest_first(self, pipeline, db, make_message) -> None:
        newer = make_message(id="b", subject="Second", sender="bob@corp.com", date=T0 + timedelta(hours=1))
        older = make_message(id="a", subject="First", sender="bob@corp.com", date=T0)

        outcome = await pipeline.process("u1", [newer, older])

        state = db.get_sender_state("u1", "bob@corp.com")
        assert state.email_count == 2
        assert state.latest_subject == "Second"
        assert outcome.senders["bob@corp.com"] == state

    async def test_empty_inbox(self, pipeline) -> None:
        outcome = await pipeline.process("u1", [])
        assert outcome.results == {}
        assert outcome.highlights() == []

    async def test_failed_merge_leaves_message_unprocessed(self, pipeline, db, make_message) -> None:
        message = make_message(id="m1", subject="URGENT: wire transfer", sender="dana@corp.com")
        with patch("mailcall.processing.aggregator.merge_sender_state", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                await pipeline.process("u1", [message])

        assert db.get_categorizations(["m1"]) == {}
        outcome = await pipeline.process("u1", [message])
        assert outcome.new_ids == {"m1"}
        assert db.get_sender_state("u1", "dana@corp.com").email_count == 1


class TestUrgentHandler:
    async def test_called_for_new_call_me_mail(self, pipeline, make_message) -> None:
        on_urgent = AsyncMock()
        await pipeline.process("u1", _inbox(make_message), on_urgent=on_urgent)

        on_urgent.assert_awaited_once()
        user_id, urgent = on_urgent.call_args.args
        assert user_id == "u1"
        assert [h.sender for h in urgent] == ["Dana Lee"]
        assert urgent[0].subject == "URGENT: wire transfer"

    async def test_not_called_again_for_seen_mail(self, pipeline, make_message) -> None:
        await pipeline.process("u1", _inbox(make_message))
        on_urgent = AsyncMock()

        await pipeline.process("u1", _inbox(make_message), on_urgent=on_urgent)

        on_urgent.assert_not_awaited()

    async def test_not_called_without_urgent_mail(self, pipeline, make_message) -> None:
        on_urgent = AsyncMock()
        await pipeline.process("u1", [make_message(subject="Lunch?")], on_urgent=on_urgent)
        on_urgent.assert_not_awaited()


class TestOutcome:
    def test_highlights_one_per_sender_most_important_first(self, make_message, make_result) -> None:
        messages = [
            make_message(id="a", subject="Old", sender="bob@x.com", date=T0),
            make_message(id="b", subject="New", sender="bob@x.com", date=T0 + timedelta(hours=1)),
            make_message(id="c", subject="Big deal", sender="Cara <cara@x.com>", date=T0),
        ]
        outcome = TriageOutcome(
            user_id="u1",
            messages=messages,
            results={
                "a": make_result(Category.KEEP_QUIET, importance=2),
                "b": make_result(Category.KEEP_QUIET, importance=2),
                "c": make_result(Category.CALL_ME, importance=5),
            },
        )

        highlights = outcome.highlights()

        assert [(h.sender, h.subject) for h in highlights] == [("Cara", "Big deal"), ("bob", "New")]
        assert [h.sender for h in outcome.highlights(category=Category.CALL_ME)] == ["Cara"]

    def test_new_only_and_messages_in(self, make_message, make_result) -> None:
        messages = [
            make_message(id="a", sender="news@x.com"),
            make_message(id="b", sender="news@x.com"),
        ]
        outcome = TriageOutcome(
            user_id="u1",
            messages=messages,
            results={"a": make_result(Category.NEWSLETTER), "b": make_result(Category.NEWSLETTER)},
            new_ids={"b"},
        )

        assert len(outcome.highlights(new_only=True)) == 1
        assert [m.id for m in outcome.messages_in(Category.NEWSLETTER)["news@x.com"]] == ["a", "b"]
        assert outcome.messages_in(Category.CALL_ME) == {}
