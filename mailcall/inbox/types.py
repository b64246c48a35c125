"""Message types and the message-source interface consumed by the triage core."""

from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parseaddr
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class EmailMessage:
    """An inbox message as fetched from the mail provider.

    Immutable once fetched. ``sender`` is the raw ``From`` header, e.g.
    ``"Alice <alice@example.com>"``; use :attr:`sender_address` for the
    normalised address that keys per-sender state.
    """

    id: str
    subject: str
    sender: str
    date: datetime
    snippet: str = ""
    body: str | None = None
    thread_id: str | None = None
    recipient: str | None = None
    labels: list[str] = field(default_factory=list)
    is_read: bool = False

    @property
    def sender_address(self) -> str:
        """Lower-cased email address parsed from the From header."""
        _name, address = parseaddr(self.sender)
        return (address or self.sender).strip().lower()

    @property
    def sender_name(self) -> str:
        """Display name from the From header, or the address local part."""
        name, address = parseaddr(self.sender)
        if name:
            return name
        return (address or self.sender).split("@")[0]


class MessageSourceError(Exception):
    """Raised when messages cannot be fetched for a transient reason."""


class MessageSourceAuthError(MessageSourceError):
    """Raised when the user's mail credentials are missing or rejected."""


@runtime_checkable
class MessageSource(Protocol):
    """Read-only access to a user's inbox."""

    async def has_credentials(self, user_id: str) -> bool:
        """Return True if messages can be fetched for this user."""
        ...

    async def fetch_messages(self, user_id: str, max_results: int = 50) -> list[EmailMessage]:
        """Return the user's most recent messages, newest first.

        Raises:
            MessageSourceAuthError: credentials are missing or rejected.
            MessageSourceError: any other fetch failure.
        """
        ...
