"""Tests for merge_sender_state and SenderAggregator."""

import asyncio
from datetime import UTC, datetime

import pytest

from mailcall.processing.aggregator import SenderAggregator, merge_sender_state
from mailcall.processing.types import Category

JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)
JAN_5 = datetime(2024, 1, 5, tzinfo=UTC)


# ── merge_sender_state ─────────────────────────────────────────────────────────


class TestMergeSenderState:
    def test_first_message_creates_state(self, make_message, make_result) -> None:
        message = make_message(sender="Alice <Alice@Example.com>", subject="Hi", date=JAN_1)
        state = merge_sender_state(None, message, make_result(Category.REMIND_ME, 3), "u1")
        assert state.sender_id == "alice@example.com"
        assert state.user_id == "u1"
        assert state.category == Category.REMIND_ME
        assert state.importance == 3
        assert state.email_count == 1
        assert state.latest_subject == "Hi"
        assert state.last_email_date == JAN_1

    def test_newer_message_takes_over(self, make_message, make_result) -> None:
        # Newsletter on Jan 1, then call-me on Jan 5: the latest message decides.
        first = merge_sender_state(
            None,
            make_message(id="a", subject="Issue 12", date=JAN_1),
            make_result(Category.NEWSLETTER, 2),
            "u1",
        )
        second = merge_sender_state(
            first,
            make_message(id="b", subject="Need you now", date=JAN_5),
            make_result(Category.CALL_ME, 5),
            "u1",
        )
        assert second.category == Category.CALL_ME
        assert second.importance == 5
        assert second.email_count == 2
        assert second.latest_subject == "Need you now"
        assert second.last_email_date == JAN_5

    def test_older_message_only_counts(self, make_message, make_result) -> None:
        newer = merge_sender_state(
            None, make_message(id="b", subject="New", date=JAN_5), make_result(Category.CALL_ME, 5), "u1"
        )
        merged = merge_sender_state(
            newer, make_message(id="a", subject="Old", date=JAN_1), make_result(Category.NEWSLETTER, 1), "u1"
        )
        assert merged.email_count == 2
        assert merged.category == Category.CALL_ME
        assert merged.importance == 5
        assert merged.latest_subject == "New"
        assert merged.last_email_date == JAN_5

    def test_merging_same_pair_twice_is_idempotent(self, make_message, make_result) -> None:
        message = make_message(date=JAN_5)
        result = make_result(Category.REMIND_ME, 3)
        once = merge_sender_state(None, message, result, "u1")
        twice = merge_sender_state(once, message, result, "u1")
        assert twice == once

    def test_naive_dates_are_treated_as_utc(self, make_message, make_result) -> None:
        state = merge_sender_state(
            None, make_message(date=datetime(2024, 1, 5, 12, 0)), make_result(), "u1"
        )
        again = merge_sender_state(
            state, make_message(date=datetime(2024, 1, 5, 12, 0, tzinfo=UTC)), make_result(), "u1"
        )
        assert again == state


# ── SenderAggregator ───────────────────────────────────────────────────────────


class TestSenderAggregator:
    async def test_persists_merged_state(self, db, make_message, make_result) -> None:
        aggregator = SenderAggregator(db)
        await aggregator.aggregate("u1", make_message(id="a", date=JAN_1), make_result(Category.NEWSLETTER))
        await aggregator.aggregate("u1", make_message(id="b", date=JAN_5), make_result(Category.CALL_ME, 4))

        stored = db.get_sender_state("u1", "alice@example.com")
        assert stored is not None
        assert stored.category == Category.CALL_ME
        assert stored.email_count == 2

    async def test_concurrent_merges_for_one_sender_all_count(self, db, make_message, make_result) -> None:
        aggregator = SenderAggregator(db)
        messages = [make_message(id=f"m{d}", date=datetime(2024, 1, d, tzinfo=UTC)) for d in range(1, 11)]

        await asyncio.gather(*(aggregator.aggregate("u1", m, make_result()) for m in messages))

        stored = db.get_sender_state("u1", "alice@example.com")
        assert stored.email_count == 10
        assert stored.last_email_date == datetime(2024, 1, 10, tzinfo=UTC)

    async def test_users_are_kept_apart(self, db, make_message, make_result) -> None:
        aggregator = SenderAggregator(db)
        await aggregator.aggregate("u1", make_message(), make_result(Category.CALL_ME))
        await aggregator.aggregate("u2", make_message(), make_result(Category.NEWSLETTER))
        assert db.get_sender_state("u1", "alice@example.com").category == Category.CALL_ME
        assert db.get_sender_state("u2", "alice@example.com").category == Category.NEWSLETTER

    async def test_stores_the_categorization(self, db, make_message, make_result) -> None:
        result = make_result(Category.REMIND_ME, 3)
        await SenderAggregator(db).aggregate("u1", make_message(id="m1"), result)
        assert db.get_categorizations(["m1"]) == {"m1": result}

    async def test_locks_are_released_after_merges(self, db, make_message, make_result) -> None:
        aggregator = SenderAggregator(db)
        messages = [
            make_message(id=f"m{i}", sender=f"s{i % 3}@x.com", date=datetime(2024, 1, i + 1, tzinfo=UTC))
            for i in range(9)
        ]

        await asyncio.gather(*(aggregator.aggregate("u1", m, make_result()) for m in messages))

        assert aggregator._locks == {}
        assert aggregator._waiters == {}
        assert db.get_sender_state("u1", "s0@x.com").email_count == 3

    async def test_failed_merge_releases_lock_and_stores_nothing(
        self, db, make_message, make_result, monkeypatch
    ) -> None:
        def broken(*args):
            raise RuntimeError("boom")

        monkeypatch.setattr("mailcall.processing.aggregator.merge_sender_state", broken)
        aggregator = SenderAggregator(db)

        with pytest.raises(RuntimeError):
            await aggregator.aggregate("u1", make_message(id="m1"), make_result())

        assert aggregator._locks == {}
        assert db.get_categorizations(["m1"]) == {}
        assert db.get_sender_state("u1", "alice@example.com") is None
