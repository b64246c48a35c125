"""SQLite table schemas and typed records for the storage layer."""

from dataclasses import dataclass
from datetime import datetime

from mailcall.calls.types import CallStatus, CallType
from mailcall.processing.types import Category


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_SENDER_STATES = """
CREATE TABLE IF NOT EXISTS sender_states (
    user_id          TEXT NOT NULL,
    sender_id        TEXT NOT NULL,
    category         TEXT NOT NULL,
    importance       INTEGER NOT NULL,
    email_count      INTEGER NOT NULL DEFAULT 0,
    latest_subject   TEXT NOT NULL DEFAULT '',
    last_email_date  TEXT NOT NULL,
    updated_at       TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (user_id, sender_id)
)
"""

_CREATE_CATEGORIZATIONS = """
CREATE TABLE IF NOT EXISTS email_categorizations (
    email_id              TEXT PRIMARY KEY,
    user_id               TEXT NOT NULL,
    sender_id             TEXT NOT NULL,
    subject               TEXT NOT NULL,
    email_date            TEXT NOT NULL,
    category              TEXT NOT NULL,
    importance            INTEGER NOT NULL,
    reasoning             TEXT NOT NULL DEFAULT '',
    summary               TEXT NOT NULL DEFAULT '',
    sentiment_score       REAL NOT NULL DEFAULT 0.0,
    sentiment_confidence  REAL NOT NULL DEFAULT 0.5,
    sentiment_tone        TEXT NOT NULL DEFAULT 'neutral',
    priority_score        INTEGER NOT NULL,
    priority_factors      TEXT NOT NULL DEFAULT '[]',
    time_to_respond       TEXT NOT NULL,
    created_at            TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_SCHEDULED_CALLS = """
CREATE TABLE IF NOT EXISTS scheduled_calls (
    user_id         TEXT NOT NULL,
    call_type       TEXT NOT NULL,
    phone_number    TEXT NOT NULL,
    scheduled_time  TEXT NOT NULL,
    voice_id        TEXT NOT NULL DEFAULT 'rachel',
    category        TEXT,
    is_active       INTEGER NOT NULL DEFAULT 1,
    last_run_date   TEXT,
    PRIMARY KEY (user_id, call_type)
)
"""

_CREATE_CALL_LOGS = """
CREATE TABLE IF NOT EXISTS call_logs (
    id                TEXT PRIMARY KEY,
    user_id           TEXT NOT NULL,
    phone_number      TEXT NOT NULL,
    call_type         TEXT NOT NULL,
    script            TEXT NOT NULL,
    status            TEXT NOT NULL,
    provider_call_id  TEXT,
    voice_id          TEXT,
    error             TEXT,
    scheduled_time    TEXT NOT NULL,
    completed_time    TEXT,
    created_at        TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at        TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_CALL_LOGS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_call_logs_status ON call_logs (status)
"""

#: All DDL statements in creation order.
ALL_TABLES: list[str] = [
    _CREATE_SENDER_STATES,
    _CREATE_CATEGORIZATIONS,
    _CREATE_SCHEDULED_CALLS,
    _CREATE_CALL_LOGS,
    _CREATE_CALL_LOGS_INDEX,
]


# ── Records ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SenderCategoryState:
    """Where a sender currently sits, derived from their most recent message."""

    sender_id: str
    user_id: str
    category: Category
    importance: int
    email_count: int
    latest_subject: str
    last_email_date: datetime


@dataclass(frozen=True)
class ScheduledCall:
    """A user's standing request for a recurring call."""

    user_id: str
    phone_number: str
    call_type: CallType
    scheduled_time: str  # "HH:MM", local time
    is_active: bool = True
    voice_id: str = "rachel"
    category: Category | None = None  # reminder target
    last_run_date: str | None = None  # ISO date of the last dispatch


@dataclass(frozen=True)
class CallLogEntry:
    """One outbound call attempt and its reconciled status."""

    id: str
    user_id: str
    phone_number: str
    call_type: CallType
    script: str
    status: CallStatus
    scheduled_time: datetime
    provider_call_id: str | None = None
    voice_id: str | None = None
    error: str | None = None
    completed_time: datetime | None = None
