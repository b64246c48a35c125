"""Tests for CLI commands — real SQLite in tmp_path, fake mail and telephony, CliRunner throughout."""

from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner, Result

from mailcall.calls.types import CallStatus, CallType, PlacedCall
from mailcall.cli.context import MailcallApp
from mailcall.inbox.gmail_client import MCPError
from mailcall.processing.types import Category
from mailcall.storage.db import MailcallDatabase
from mailcall.storage.models import CallLogEntry, ScheduledCall, SenderCategoryState

USER = "me@example.com"
PHONE = "+15551234567"


# ── Helpers ─────────────────────────────────────────────────────────────────────


@pytest.fixture
def gateway() -> MagicMock:
    g = MagicMock()
    g.place_call = AsyncMock(return_value=PlacedCall(provider_call_id="CA42", status=CallStatus.INITIATED))
    g.get_call_status = AsyncMock(return_value=CallStatus.COMPLETED)
    return g


@pytest.fixture
def ai() -> MagicMock:
    service = MagicMock()
    service.available = False
    return service


@pytest.fixture
def invoke(db_path: Path, ai: MagicMock, gateway: MagicMock):
    def _invoke(*args: str) -> Result:
        from mailcall.cli.main import cli

        runner = CliRunner()
        with patch("mailcall.cli.main.MailcallDatabase", lambda: MailcallDatabase(db_path)), patch(
            "mailcall.cli.main.MailcallApp", lambda db: MailcallApp(db, ai=ai, gateway=gateway)
        ):
            return runner.invoke(cli, list(args))

    return _invoke


@pytest.fixture
def store(db_path: Path):
    database = MailcallDatabase(db_path)
    yield database
    database.close()


def _sender(sender_id: str, category: Category, **kwargs) -> SenderCategoryState:
    params = {
        "sender_id": sender_id,
        "user_id": USER,
        "category": category,
        "importance": 4,
        "email_count": 1,
        "latest_subject": "Hello",
        "last_email_date": datetime.now(UTC),
    }
    params.update(kwargs)
    return SenderCategoryState(**params)


def _fake_gmail(messages=None, error: Exception | None = None):
    @asynccontextmanager
    async def factory(*, user_email=None, server_command=None):
        if error is not None:
            raise error
        source = MagicMock()
        source.fetch_messages = AsyncMock(return_value=list(messages or []))
        yield source

    return factory


# ── scan ─────────────────────────────────────────────────────────────────────────


class TestScan:
    def test_categorizes_and_prints_summary(self, invoke, make_message, store) -> None:
        messages = [
            make_message(id="m1", subject="URGENT: server down", sender="ops@corp.com"),
            make_message(id="m2", subject="Weekly newsletter", sender="news@letters.io"),
        ]
        with patch("mailcall.cli.commands.gmail_client", _fake_gmail(messages)):
            result = invoke("scan", "--user", USER)

        assert result.exit_code == 0, result.output
        assert "URGENT: server down" in result.output
        assert "2 new of 2" in result.output
        assert store.get_sender_state(USER, "ops@corp.com").category == Category.CALL_ME

    def test_second_scan_marks_seen(self, invoke, make_message) -> None:
        messages = [make_message(id="m1", subject="Lunch?")]
        with patch("mailcall.cli.commands.gmail_client", _fake_gmail(messages)):
            invoke("scan", "--user", USER)
            result = invoke("scan", "--user", USER)

        assert "(seen)" in result.output
        assert "0 new of 1" in result.output

    def test_urgent_mail_places_alert(self, invoke, make_message, store, gateway) -> None:
        store.upsert_scheduled_call(
            ScheduledCall(user_id=USER, phone_number=PHONE, call_type=CallType.DAILY_DIGEST, scheduled_time="08:00")
        )
        messages = [make_message(id="m1", subject="URGENT: server down", sender="ops@corp.com")]
        with patch("mailcall.cli.commands.gmail_client", _fake_gmail(messages)):
            result = invoke("scan", "--user", USER)

        assert result.exit_code == 0, result.output
        assert f"to {PHONE}" in result.output
        assert gateway.place_call.call_args.args[0] == PHONE
        assert [e.call_type for e in store.get_call_logs(USER)] == [CallType.URGENT_ALERT]

    def test_urgent_mail_without_phone_places_nothing(self, invoke, make_message, gateway) -> None:
        messages = [make_message(id="m1", subject="URGENT: server down", sender="ops@corp.com")]
        with patch("mailcall.cli.commands.gmail_client", _fake_gmail(messages)):
            result = invoke("scan", "--user", USER)

        assert result.exit_code == 0, result.output
        gateway.place_call.assert_not_awaited()

    def test_empty_inbox(self, invoke) -> None:
        with patch("mailcall.cli.commands.gmail_client", _fake_gmail([])):
            result = invoke("scan", "--user", USER)
        assert "No messages found." in result.output

    def test_gmail_error_is_reported(self, invoke) -> None:
        with patch("mailcall.cli.commands.gmail_client", _fake_gmail(error=MCPError("server gone"))):
            result = invoke("scan", "--user", USER)
        assert result.exit_code == 0
        assert "Gmail error: server gone" in result.output

    def test_user_is_required(self, invoke, monkeypatch) -> None:
        monkeypatch.delenv("USER_GOOGLE_EMAIL", raising=False)
        result = invoke("scan")
        assert result.exit_code != 0
        assert "--user" in result.output


# ── senders ──────────────────────────────────────────────────────────────────────


class TestSenders:
    def test_empty(self, invoke) -> None:
        result = invoke("senders", "--user", USER)
        assert "No senders yet" in result.output

    def test_lists_and_filters(self, invoke, store) -> None:
        store.update_sender_state(USER, "bob@acme.com", lambda _: _sender("bob@acme.com", Category.CALL_ME))
        store.update_sender_state(USER, "news@x.io", lambda _: _sender("news@x.io", Category.NEWSLETTER))

        everyone = invoke("senders", "--user", USER)
        urgent = invoke("senders", "--user", USER, "--category", "call-me")

        assert "bob@acme.com" in everyone.output and "news@x.io" in everyone.output
        assert "bob@acme.com" in urgent.output
        assert "news@x.io" not in urgent.output

    def test_rejects_unknown_category(self, invoke) -> None:
        result = invoke("senders", "--user", USER, "--category", "spam")
        assert result.exit_code != 0


# ── script ───────────────────────────────────────────────────────────────────────


class TestScript:
    def test_reminder_preview(self, invoke, store) -> None:
        store.update_sender_state(
            USER, "pm@corp.com", lambda _: _sender("pm@corp.com", Category.REMIND_ME, latest_subject="Standup")
        )
        result = invoke("script", "reminder", "--user", USER)

        assert result.exit_code == 0, result.output
        assert "From pm: Standup." in result.output
        assert "reminder" in result.output

    def test_digest_of_empty_day(self, invoke) -> None:
        result = invoke("script", "daily-digest", "--user", USER)
        assert "no new emails today" in result.output


# ── call ─────────────────────────────────────────────────────────────────────────


class TestCall:
    def test_places_call_with_explicit_phone(self, invoke, gateway, store) -> None:
        result = invoke("call", "daily-digest", "--user", USER, "--phone", PHONE, "--voice", "adam")

        assert result.exit_code == 0, result.output
        assert f"to {PHONE}" in result.output
        assert "CA42" in result.output
        to, _script, voice = gateway.place_call.call_args.args
        assert (to, voice) == (PHONE, "adam")
        assert store.get_call_logs(USER)[0].status == CallStatus.INITIATED

    def test_uses_scheduled_phone(self, invoke, gateway, store) -> None:
        store.upsert_scheduled_call(
            ScheduledCall(user_id=USER, phone_number=PHONE, call_type=CallType.DAILY_DIGEST, scheduled_time="08:00")
        )
        result = invoke("call", "urgent-alert", "--user", USER)
        assert result.exit_code == 0, result.output
        assert gateway.place_call.call_args.args[0] == PHONE

    def test_without_phone_exits_1(self, invoke, gateway) -> None:
        result = invoke("call", "daily-digest", "--user", USER)
        assert result.exit_code == 1
        assert "No phone number" in result.output
        gateway.place_call.assert_not_awaited()

    def test_failed_call_exits_1(self, invoke, gateway) -> None:
        result = invoke("call", "daily-digest", "--user", USER, "--phone", "nonsense")
        assert result.exit_code == 1
        assert "Call failed:" in result.output
        gateway.place_call.assert_not_awaited()


# ── history / reconcile ──────────────────────────────────────────────────────────


def _log(id: str, status: CallStatus, provider_call_id: str | None = None) -> CallLogEntry:
    return CallLogEntry(
        id=id,
        user_id=USER,
        phone_number=PHONE,
        call_type=CallType.DAILY_DIGEST,
        script="Good morning!",
        status=status,
        scheduled_time=datetime.now(UTC) - timedelta(minutes=5),
        provider_call_id=provider_call_id,
    )


class TestHistory:
    def test_empty(self, invoke) -> None:
        assert "No calls yet." in invoke("history", "--user", USER).output

    def test_lists_calls(self, invoke, store) -> None:
        store.create_call_log(_log("c1", CallStatus.INITIATED, "CA1"))
        result = invoke("history", "--user", USER)
        assert "daily-digest" in result.output
        assert "CA1" in result.output


class TestReconcile:
    def test_no_changes(self, invoke) -> None:
        assert "No call status changes." in invoke("reconcile").output

    def test_updates_in_flight_calls(self, invoke, store) -> None:
        store.create_call_log(_log("c1", CallStatus.INITIATED, "CA1"))

        result = invoke("reconcile")

        assert "1 call(s) updated" in result.output
        assert store.get_call_log("c1").status == CallStatus.COMPLETED


# ── schedule ─────────────────────────────────────────────────────────────────────


class TestSchedule:
    def test_create_then_list(self, invoke, store) -> None:
        result = invoke(
            "schedule", "reminder", "--user", USER, "--phone", PHONE, "--time", "18:30", "--category", "newsletter"
        )
        assert result.exit_code == 0, result.output
        assert "Scheduled reminder" in result.output

        stored = store.get_scheduled_call(USER, CallType.REMINDER)
        assert stored.scheduled_time == "18:30"
        assert stored.category == Category.NEWSLETTER

        listing = invoke("schedule", "--user", USER)
        assert "reminder" in listing.output and "18:30" in listing.output

    def test_update_keeps_existing_fields(self, invoke, store) -> None:
        invoke("schedule", "daily-digest", "--user", USER, "--phone", PHONE, "--time", "08:00", "--voice", "adam")
        invoke("schedule", "daily-digest", "--user", USER, "--time", "07:15")

        stored = store.get_scheduled_call(USER, CallType.DAILY_DIGEST)
        assert (stored.phone_number, stored.scheduled_time, stored.voice_id) == (PHONE, "07:15", "adam")

    def test_disable(self, invoke, store) -> None:
        invoke("schedule", "daily-digest", "--user", USER, "--phone", PHONE, "--time", "08:00")
        result = invoke("schedule", "daily-digest", "--user", USER, "--disable")
        assert "disabled" in result.output
        assert store.get_scheduled_call(USER, CallType.DAILY_DIGEST).is_active is False

    def test_new_schedule_needs_phone_and_time(self, invoke) -> None:
        result = invoke("schedule", "daily-digest", "--user", USER, "--time", "08:00")
        assert result.exit_code == 1

    def test_invalid_time(self, invoke) -> None:
        result = invoke("schedule", "daily-digest", "--user", USER, "--phone", PHONE, "--time", "25:99")
        assert result.exit_code == 1
        assert "expected HH:MM" in result.output

    def test_empty_listing(self, invoke) -> None:
        assert "No scheduled calls." in invoke("schedule", "--user", USER).output
