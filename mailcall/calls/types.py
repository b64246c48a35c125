"""Types shared by the script synthesizer, telephony gateway, and dispatcher."""

from dataclasses import dataclass
from enum import Enum


class CallType(str, Enum):
    """Purpose of an outbound call; selects the script template."""

    DAILY_DIGEST = "daily-digest"
    URGENT_ALERT = "urgent-alert"
    WEEKLY_SUMMARY = "weekly-summary"
    REMINDER = "reminder"
    CATEGORY_ALERT = "category-alert"


class CallStatus(str, Enum):
    """Lifecycle of a call: pending → initiated → in-progress → completed | failed."""

    PENDING = "pending"
    INITIATED = "initiated"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_advance_to(self, new: "CallStatus") -> bool:
        """True if ``new`` is a forward transition from this status."""
        return not self.is_terminal and new.rank > self.rank


_STATUS_RANK: dict[CallStatus, int] = {
    CallStatus.PENDING: 0,
    CallStatus.INITIATED: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.FAILED: 3,
}


@dataclass(frozen=True)
class CallScript:
    """A spoken script ready to hand to a telephony gateway."""

    body: str
    estimated_duration: int  # seconds
    call_type: CallType


@dataclass(frozen=True)
class PlacedCall:
    """What the gateway reports back after accepting a call."""

    provider_call_id: str
    status: CallStatus
