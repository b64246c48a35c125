"""SQLite storage — sender state, categorizations, scheduled calls, and call logs."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from mailcall.calls.types import CallStatus, CallType
from mailcall.inbox.types import EmailMessage
from mailcall.processing.types import (
    Category,
    CategoryResult,
    PriorityAssessment,
    Sentiment,
    TimeToRespond,
)
from mailcall.storage.models import (
    ALL_TABLES,
    CallLogEntry,
    ScheduledCall,
    SenderCategoryState,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/mailcall.db")

_TERMINAL_STATUSES = (CallStatus.COMPLETED.value, CallStatus.FAILED.value)

SenderMerge = Callable[[SenderCategoryState | None], SenderCategoryState]


def default_db_path() -> Path:
    return Path(os.environ.get("MAILCALL_DB_PATH", str(_DEFAULT_DB_PATH)))


class MailcallDatabase:
    """Wraps SQLite for all state the triage and call pipeline persists.

    Designed for single-threaded use from an async event loop — all calls are
    synchronous/blocking but fast enough for personal email volume.  Updates
    that read before they write run inside ``BEGIN IMMEDIATE`` so each sender
    row and each call-log row is updated atomically.

    Usage::

        db = MailcallDatabase()
        state = db.update_sender_state(user_id, sender_id, merge)
        entry = db.create_call_log(entry)
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._path = Path(db_path) if db_path is not None else default_db_path()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    # ── Sender state ────────────────────────────────────────────────────────────

    def update_sender_state(
        self,
        user_id: str,
        sender_id: str,
        merge: SenderMerge,
        *,
        categorized: tuple[EmailMessage, CategoryResult] | None = None,
    ) -> SenderCategoryState:
        """Atomically read the sender's state, apply ``merge``, and write the result.

        When ``categorized`` is given, that message's categorization is stored
        in the same transaction, so a failed merge leaves neither behind.
        """
        with self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            if categorized is not None:
                self._insert_categorization(user_id, *categorized)
            existing = self._fetch_sender_state(user_id, sender_id)
            merged = merge(existing)
            if merged != existing:
                self._conn.execute(
                    """
                    INSERT INTO sender_states
                        (user_id, sender_id, category, importance, email_count,
                         latest_subject, last_email_date)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, sender_id) DO UPDATE SET
                        category        = excluded.category,
                        importance      = excluded.importance,
                        email_count     = excluded.email_count,
                        latest_subject  = excluded.latest_subject,
                        last_email_date = excluded.last_email_date,
                        updated_at      = datetime('now')
                    """,
                    (
                        merged.user_id,
                        merged.sender_id,
                        merged.category.value,
                        merged.importance,
                        merged.email_count,
                        merged.latest_subject,
                        _to_iso(merged.last_email_date),
                    ),
                )
        return merged

    def get_sender_state(self, user_id: str, sender_id: str) -> SenderCategoryState | None:
        return self._fetch_sender_state(user_id, sender_id)

    def get_sender_states(
        self, user_id: str, category: Category | None = None
    ) -> list[SenderCategoryState]:
        """Return the user's senders, most recently heard from first."""
        query = "SELECT * FROM sender_states WHERE user_id = ?"
        params: list[object] = [user_id]
        if category is not None:
            query += " AND category = ?"
            params.append(category.value)
        rows = self._conn.execute(query + " ORDER BY last_email_date DESC", params).fetchall()
        return [_row_to_sender_state(r) for r in rows]

    # ── Categorizations ─────────────────────────────────────────────────────────

    def save_categorization(
        self, user_id: str, message: EmailMessage, result: CategoryResult
    ) -> None:
        """Store the latest categorization of a message (replacing any earlier one)."""
        with self._conn:
            self._insert_categorization(user_id, message, result)

    def _insert_categorization(
        self, user_id: str, message: EmailMessage, result: CategoryResult
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO email_categorizations
                (email_id, user_id, sender_id, subject, email_date, category,
                 importance, reasoning, summary, sentiment_score,
                 sentiment_confidence, sentiment_tone, priority_score,
                 priority_factors, time_to_respond)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(email_id) DO UPDATE SET
                category             = excluded.category,
                importance           = excluded.importance,
                reasoning            = excluded.reasoning,
                summary              = excluded.summary,
                sentiment_score      = excluded.sentiment_score,
                sentiment_confidence = excluded.sentiment_confidence,
                sentiment_tone       = excluded.sentiment_tone,
                priority_score       = excluded.priority_score,
                priority_factors     = excluded.priority_factors,
                time_to_respond      = excluded.time_to_respond
            """,
            (
                message.id,
                user_id,
                message.sender_address,
                message.subject,
                _to_iso(message.date),
                result.category.value,
                result.importance,
                result.reasoning,
                result.summary,
                result.sentiment.score,
                result.sentiment.confidence,
                result.sentiment.tone,
                result.priority.score,
                json.dumps(list(result.priority.factors)),
                result.priority.time_to_respond.value,
            ),
        )

    def get_categorizations(self, email_ids: Iterable[str]) -> dict[str, CategoryResult]:
        """Return stored results for whichever of ``email_ids`` have been categorized."""
        ids = list(email_ids)
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self._conn.execute(
            f"SELECT * FROM email_categorizations WHERE email_id IN ({placeholders})",
            ids,
        ).fetchall()
        return {r["email_id"]: _row_to_result(r) for r in rows}

    def get_category_counts(
        self, user_id: str, since: datetime | None = None
    ) -> dict[Category, int]:
        """Count the user's categorized emails per category, optionally since a date."""
        query = "SELECT category, COUNT(*) AS n FROM email_categorizations WHERE user_id = ?"
        params: list[object] = [user_id]
        if since is not None:
            query += " AND email_date >= ?"
            params.append(_to_iso(since))
        rows = self._conn.execute(query + " GROUP BY category", params).fetchall()
        return {Category.coerce(r["category"]): int(r["n"]) for r in rows}

    # ── Scheduled calls ─────────────────────────────────────────────────────────

    def upsert_scheduled_call(self, call: ScheduledCall) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO scheduled_calls
                    (user_id, call_type, phone_number, scheduled_time, voice_id,
                     category, is_active, last_run_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, call_type) DO UPDATE SET
                    phone_number   = excluded.phone_number,
                    scheduled_time = excluded.scheduled_time,
                    voice_id       = excluded.voice_id,
                    category       = excluded.category,
                    is_active      = excluded.is_active
                """,
                (
                    call.user_id,
                    call.call_type.value,
                    call.phone_number,
                    call.scheduled_time,
                    call.voice_id,
                    call.category.value if call.category else None,
                    int(call.is_active),
                    call.last_run_date,
                ),
            )

    def get_scheduled_call(self, user_id: str, call_type: CallType) -> ScheduledCall | None:
        row = self._conn.execute(
            "SELECT * FROM scheduled_calls WHERE user_id = ? AND call_type = ?",
            (user_id, call_type.value),
        ).fetchone()
        return _row_to_scheduled_call(row) if row else None

    def get_scheduled_calls(self, active_only: bool = True) -> list[ScheduledCall]:
        query = "SELECT * FROM scheduled_calls"
        if active_only:
            query += " WHERE is_active = 1"
        rows = self._conn.execute(query + " ORDER BY user_id, call_type").fetchall()
        return [_row_to_scheduled_call(r) for r in rows]

    def mark_scheduled_run(self, user_id: str, call_type: CallType, run_date: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE scheduled_calls SET last_run_date = ? WHERE user_id = ? AND call_type = ?",
                (run_date, user_id, call_type.value),
            )

    def get_phone_number(self, user_id: str) -> str | None:
        """Return the phone number from any of the user's active schedules."""
        row = self._conn.execute(
            "SELECT phone_number FROM scheduled_calls "
            "WHERE user_id = ? AND is_active = 1 ORDER BY call_type LIMIT 1",
            (user_id,),
        ).fetchone()
        return row["phone_number"] if row else None

    # ── Call logs ───────────────────────────────────────────────────────────────

    def create_call_log(self, entry: CallLogEntry) -> CallLogEntry:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO call_logs
                    (id, user_id, phone_number, call_type, script, status,
                     provider_call_id, voice_id, error, scheduled_time, completed_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.phone_number,
                    entry.call_type.value,
                    entry.script,
                    entry.status.value,
                    entry.provider_call_id,
                    entry.voice_id,
                    entry.error,
                    _to_iso(entry.scheduled_time),
                    _to_iso(entry.completed_time) if entry.completed_time else None,
                ),
            )
        return entry

    def advance_call_status(
        self,
        call_id: str,
        status: CallStatus,
        *,
        provider_call_id: str | None = None,
        error: str | None = None,
        completed_time: datetime | None = None,
    ) -> CallLogEntry | None:
        """Move a call to ``status`` if that is a forward transition.

        Terminal rows are never modified.  Returns the row as stored after the
        attempt, or None if the call id is unknown.
        """
        with self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            current = self._fetch_call_log(call_id)
            if current is None:
                return None
            if not current.status.can_advance_to(status):
                logger.debug(
                    "Ignoring call %s transition %s → %s",
                    call_id,
                    current.status.value,
                    status.value,
                )
                return current
            self._conn.execute(
                f"""
                UPDATE call_logs SET
                    status           = ?,
                    provider_call_id = COALESCE(?, provider_call_id),
                    error            = COALESCE(?, error),
                    completed_time   = COALESCE(?, completed_time),
                    updated_at       = datetime('now')
                WHERE id = ? AND status NOT IN ({", ".join("?" for _ in _TERMINAL_STATUSES)})
                """,
                (
                    status.value,
                    provider_call_id,
                    error,
                    _to_iso(completed_time) if completed_time else None,
                    call_id,
                    *_TERMINAL_STATUSES,
                ),
            )
            return self._fetch_call_log(call_id)

    def get_call_log(self, call_id: str) -> CallLogEntry | None:
        return self._fetch_call_log(call_id)

    def get_call_logs(self, user_id: str, limit: int = 20) -> list[CallLogEntry]:
        """Return the user's most recent calls, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM call_logs WHERE user_id = ? "
            "ORDER BY scheduled_time DESC, created_at DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [_row_to_call_log(r) for r in rows]

    def get_active_call_logs(self) -> list[CallLogEntry]:
        """Return non-terminal calls that the provider knows about."""
        rows = self._conn.execute(
            f"""
            SELECT * FROM call_logs
            WHERE status NOT IN ({", ".join("?" for _ in _TERMINAL_STATUSES)})
              AND provider_call_id IS NOT NULL
            ORDER BY scheduled_time
            """,
            _TERMINAL_STATUSES,
        ).fetchall()
        return [_row_to_call_log(r) for r in rows]

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)

    def _fetch_sender_state(self, user_id: str, sender_id: str) -> SenderCategoryState | None:
        row = self._conn.execute(
            "SELECT * FROM sender_states WHERE user_id = ? AND sender_id = ?",
            (user_id, sender_id),
        ).fetchone()
        return _row_to_sender_state(row) if row else None

    def _fetch_call_log(self, call_id: str) -> CallLogEntry | None:
        row = self._conn.execute("SELECT * FROM call_logs WHERE id = ?", (call_id,)).fetchone()
        return _row_to_call_log(row) if row else None


# ── Row mapping ────────────────────────────────────────────────────────────────


def _to_iso(value: datetime) -> str:
    """Serialise as UTC ISO-8601 so stored dates compare lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _row_to_sender_state(row: sqlite3.Row) -> SenderCategoryState:
    return SenderCategoryState(
        sender_id=row["sender_id"],
        user_id=row["user_id"],
        category=Category.coerce(row["category"]),
        importance=int(row["importance"]),
        email_count=int(row["email_count"]),
        latest_subject=row["latest_subject"],
        last_email_date=_from_iso(row["last_email_date"]),
    )


def _row_to_result(row: sqlite3.Row) -> CategoryResult:
    return CategoryResult(
        category=Category.coerce(row["category"]),
        importance=int(row["importance"]),
        reasoning=row["reasoning"],
        summary=row["summary"],
        sentiment=Sentiment(
            score=float(row["sentiment_score"]),
            confidence=float(row["sentiment_confidence"]),
            tone=row["sentiment_tone"],
        ),
        priority=PriorityAssessment(
            score=int(row["priority_score"]),
            factors=tuple(json.loads(row["priority_factors"])),
            time_to_respond=TimeToRespond(row["time_to_respond"]),
        ),
    )


def _row_to_scheduled_call(row: sqlite3.Row) -> ScheduledCall:
    return ScheduledCall(
        user_id=row["user_id"],
        phone_number=row["phone_number"],
        call_type=CallType(row["call_type"]),
        scheduled_time=row["scheduled_time"],
        is_active=bool(row["is_active"]),
        voice_id=row["voice_id"],
        category=Category.coerce(row["category"]) if row["category"] else None,
        last_run_date=row["last_run_date"],
    )


def _row_to_call_log(row: sqlite3.Row) -> CallLogEntry:
    return CallLogEntry(
        id=row["id"],
        user_id=row["user_id"],
        phone_number=row["phone_number"],
        call_type=CallType(row["call_type"]),
        script=row["script"],
        status=CallStatus(row["status"]),
        scheduled_time=_from_iso(row["scheduled_time"]),
        provider_call_id=row["provider_call_id"],
        voice_id=row["voice_id"],
        error=row["error"],
        completed_time=_from_iso(row["completed_time"]) if row["completed_time"] else None,
    )
