"""Gmail MCP client — reads the inbox through workspace-mcp's Gmail tools."""

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.types import TextContent

from mailcall.inbox.types import EmailMessage, MessageSourceAuthError, MessageSourceError

logger = logging.getLogger(__name__)

_UNREAD = "UNREAD"
_AUTH_MARKERS = re.compile(r"auth|credential|oauth|invalid_grant|token", re.IGNORECASE)

# JSON-decoded value from an MCP tool response
_JsonValue = dict[str, Any] | list[Any] | str | None


class MCPError(MessageSourceError):
    """Raised when a workspace-mcp tool call returns an error."""


class GmailAuthError(MCPError, MessageSourceAuthError):
    """Raised when workspace-mcp reports missing or rejected Google credentials."""


class GmailClient:
    """MessageSource backed by a single workspace-mcp session.

    workspace-mcp runs in single-user mode, so the only ``user_id`` this client
    serves is the Google account email it was started with.  Use the
    `gmail_client()` context manager to construct and tear down correctly.
    """

    def __init__(self, session: ClientSession, user_email: str) -> None:
        self._session = session
        self._user_email = user_email

    @property
    def user_email(self) -> str:
        return self._user_email

    # ── MessageSource ──────────────────────────────────────────────────────────

    async def has_credentials(self, user_id: str) -> bool:
        """True if ``user_id`` is this session's account and Gmail accepts it."""
        if not self._serves(user_id):
            return False
        try:
            await self._call(
                "search_gmail_messages",
                {"query": "in:inbox", "page_size": 1, "user_google_email": self._user_email},
            )
        except GmailAuthError:
            return False
        return True

    async def fetch_messages(
        self, user_id: str, max_results: int = 50, query: str = "in:inbox"
    ) -> list[EmailMessage]:
        """Return up to ``max_results`` messages matching ``query``, newest first.

        Makes two MCP calls: a lightweight search, then a batch content fetch.
        """
        if not self._serves(user_id):
            raise MessageSourceAuthError(
                f"No Gmail credentials for {user_id!r} (session is {self._user_email!r})"
            )
        raw = await self._call(
            "search_gmail_messages",
            {"query": query, "page_size": max_results, "user_google_email": self._user_email},
        )
        ids = self._parse_search_ids(raw)
        if not ids:
            return []

        content = await self._call(
            "get_gmail_messages_content_batch",
            {"message_ids": ids, "user_google_email": self._user_email},
        )
        messages = self._parse_batch_emails(content)
        messages.sort(key=lambda m: m.date, reverse=True)
        logger.debug("Fetched %d message(s) for %s", len(messages), user_id)
        return messages

    # ── Internal helpers ───────────────────────────────────────────────────────

    def _serves(self, user_id: str) -> bool:
        return user_id.strip().lower() == self._user_email.strip().lower()

    async def _call(self, tool_name: str, arguments: dict[str, Any]) -> _JsonValue:
        """Call a workspace-mcp tool and return the parsed JSON result.

        Raises GmailAuthError if the tool error looks like a credentials
        problem, MCPError for any other tool error.  Plain-string responses
        are returned as-is.
        """
        logger.debug("MCP → %s %s", tool_name, arguments)
        result = await self._session.call_tool(tool_name, arguments)

        text: str | None = None
        for item in result.content or []:
            if isinstance(item, TextContent):
                text = item.text
                break

        if result.isError:
            detail = text or str(result.content)
            if _AUTH_MARKERS.search(detail):
                raise GmailAuthError(f"Tool {tool_name!r} rejected credentials: {detail}")
            raise MCPError(f"Tool {tool_name!r} returned error: {detail}")

        if text is None:
            return None
        try:
            parsed: _JsonValue = json.loads(text)
            return parsed
        except json.JSONDecodeError:
            return text

    @staticmethod
    def _parse_search_ids(raw: _JsonValue) -> list[str]:
        """Extract message IDs from a search response (text or JSON list)."""
        if isinstance(raw, list):
            return [
                str(m.get("message_id", ""))
                for m in raw
                if isinstance(m, dict) and m.get("message_id")
            ]
        if isinstance(raw, str):
            return re.findall(r"Message ID:\s*(\S+)", raw)
        return []

    @staticmethod
    def _parse_batch_emails(raw: _JsonValue) -> list[EmailMessage]:
        """Parse one or more messages from a batch content response.

        workspace-mcp returns text blocks like::

            Message ID: abc123
            Subject: Hello
            From: alice@example.com
            Date: Mon, 1 Jan 2026 12:00:00 +0000
            To: <bob@example.com>

            Body text follows after a blank line...
        """
        if isinstance(raw, list):
            return [GmailClient._parse_email_dict(m) for m in raw if isinstance(m, dict)]
        if not isinstance(raw, str):
            return []

        messages: list[EmailMessage] = []
        blocks = re.split(r"(?=^Message ID:)", raw, flags=re.MULTILINE)
        for block in blocks:
            block = block.strip()
            if not block.startswith("Message ID:"):
                continue

            def _header(name: str) -> str:
                m = re.search(rf"^{name}:\s*(.+)$", block, re.MULTILINE)
                return m.group(1).strip() if m else ""

            body = ""
            header_end = re.search(r"\n\s*\n", block)
            if header_end:
                body = block[header_end.end():].strip()

            to_raw = _header("To")
            thread_id = _header("Thread ID")
            messages.append(EmailMessage(
                id=_header("Message ID"),
                subject=_header("Subject") or "(no subject)",
                sender=_header("From"),
                date=_parse_date(_header("Date")),
                snippet=body[:200],
                body=body or None,
                thread_id=thread_id or None,
                recipient=re.sub(r"^<|>$", "", to_raw) if to_raw else None,
            ))
        return messages

    @staticmethod
    def _parse_email_dict(data: dict[str, Any]) -> EmailMessage:
        """Map a JSON message dict to an EmailMessage."""
        labels = [str(label) for label in data.get("labels", [])]
        body_raw = data.get("body", "")
        recipient_raw = data.get("to", "")
        return EmailMessage(
            id=str(data.get("message_id", data.get("id", ""))),
            subject=str(data.get("subject") or "(no subject)"),
            sender=str(data.get("from", "")),
            date=_parse_date(str(data.get("date", ""))),
            snippet=str(data.get("snippet", "")),
            body=str(body_raw) if body_raw else None,
            thread_id=str(data["thread_id"]) if data.get("thread_id") else None,
            recipient=str(recipient_raw) if recipient_raw else None,
            labels=labels,
            is_read=bool(labels) and _UNREAD not in labels,
        )


def _parse_date(raw: str) -> datetime:
    """Parse an RFC 2822 Date header; unparseable dates become "now"."""
    if raw:
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header %r; using current time", raw)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


_MCP_CONNECT_RETRIES = 5
_MCP_RETRY_DELAY_SECONDS = 3


@asynccontextmanager
async def gmail_client(
    *,
    user_email: str | None = None,
    server_command: str | None = None,
) -> AsyncIterator[GmailClient]:
    """Async context manager that yields a connected GmailClient.

    Spawns `workspace-mcp` as a subprocess via the MCP stdio transport and
    initialises the session.  Retries startup up to ``_MCP_CONNECT_RETRIES``
    times because workspace-mcp binds a port for its OAuth callback server and
    fails if a previous instance still holds it.

    Args:
        user_email: Google account email. Falls back to USER_GOOGLE_EMAIL env var.
        server_command: Command used to launch the MCP server.
                        Defaults to GMAIL_MCP_SERVER_PATH env var (or "uvx").

    Example::

        async with gmail_client() as client:
            messages = await client.fetch_messages(client.user_email)
    """
    email = user_email or os.environ.get("USER_GOOGLE_EMAIL", "")
    if not email:
        raise ValueError(
            "user_email must be provided or USER_GOOGLE_EMAIL env var must be set"
        )

    cmd = server_command or os.environ.get("GMAIL_MCP_SERVER_PATH", "uvx")
    args = ["workspace-mcp", "--tools", "gmail"] if os.path.basename(cmd) == "uvx" else []

    server_params = StdioServerParameters(
        command=cmd,
        args=args,
        env={
            **os.environ,
            "GOOGLE_OAUTH_CLIENT_ID": os.environ.get("GOOGLE_OAUTH_CLIENT_ID", ""),
            "GOOGLE_OAUTH_CLIENT_SECRET": os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", ""),
            "USER_GOOGLE_EMAIL": email,
            "MCP_SINGLE_USER_MODE": "1",
            "WORKSPACE_MCP_PORT": os.environ.get("WORKSPACE_MCP_PORT", "18741"),
        },
    )

    last_err: BaseException | None = None
    connected = False
    for attempt in range(1, _MCP_CONNECT_RETRIES + 1):
        try:
            async with stdio_client(server_params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    client = GmailClient(session, email)
                    logger.info("Gmail MCP client connected (%s)", email)
                    connected = True
                    yield client
                    return
        except (Exception, BaseExceptionGroup) as exc:
            last_err = exc
            # Errors from the caller's block are not connection failures.
            if connected or attempt == _MCP_CONNECT_RETRIES:
                raise
            logger.warning(
                "MCP server connection failed (attempt %d/%d) — retrying in %ds",
                attempt,
                _MCP_CONNECT_RETRIES,
                _MCP_RETRY_DELAY_SECONDS,
            )
            await asyncio.sleep(_MCP_RETRY_DELAY_SECONDS)

    raise MCPError(f"Failed to connect after {_MCP_CONNECT_RETRIES} attempts") from last_err
