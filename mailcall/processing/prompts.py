"""Anthropic tool definitions and prompt builders for categorization and scripts."""

from html.parser import HTMLParser
from typing import Any

from mailcall.inbox.types import EmailMessage
from mailcall.processing.types import (
    CATEGORY_ORDER,
    Category,
    NewsletterFrequency,
    TimeToRespond,
)

# Maximum characters of email body sent to the model — applied after HTML
# stripping, so this represents actual text content rather than raw markup.
BODY_CHAR_LIMIT = 2_000

#: Messages from one sender included in a newsletter analysis prompt.
NEWSLETTER_SAMPLE_SIZE = 3


# ── HTML stripper ───────────────────────────────────────────────────────────────


class _HTMLStripper(HTMLParser):
    """Minimal HTMLParser subclass that collects visible text nodes."""

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []

    def handle_data(self, data: str) -> None:
        text = data.strip()
        if text:
            self._parts.append(text)

    def get_text(self) -> str:
        return " ".join(self._parts)


def strip_html(text: str) -> str:
    """Return plain text from an HTML string.

    If the input doesn't look like HTML, or stripping produces nothing useful,
    the original string is returned unchanged.
    """
    if "<" not in text:
        return text
    stripper = _HTMLStripper()
    stripper.feed(text)
    stripper.close()
    result = stripper.get_text()
    # Stripping away >90% of the content means the input was not really HTML.
    return result if len(result) > len(text) * 0.1 else text


# ── Tool definitions ───────────────────────────────────────────────────────────

_CATEGORY_GUIDE = {
    Category.CALL_ME: "urgent, needs immediate attention (investors, customers, critical issues)",
    Category.REMIND_ME: "important but not urgent (meetings, deadlines, follow-ups)",
    Category.KEEP_QUIET: "low priority but relevant (updates, FYIs)",
    Category.WHY_DID_I_SIGNUP: "promotional/marketing email from a service the user signed up for",
    Category.DONT_TELL_ANYONE: "spam, unwanted promotions, irrelevant content",
    Category.NEWSLETTER: "legitimate newsletter or content subscription",
}

#: Anthropic tool schema for structured per-email categorization.
CATEGORIZATION_TOOL: dict[str, Any] = {
    "name": "record_email_category",
    "description": "Record the category and triage assessment of an email.",
    "input_schema": {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "enum": [c.value for c in CATEGORY_ORDER],
            },
            "importance": {"type": "integer", "minimum": 1, "maximum": 5},
            "reasoning": {"type": "string", "description": "Why this category, one sentence."},
            "summary": {"type": "string", "description": "One sentence summary of the email."},
            "sentiment": {
                "type": "object",
                "properties": {
                    "score": {"type": "number", "minimum": -1, "maximum": 1},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "tone": {"type": "string", "description": "One word, e.g. friendly, urgent, formal."},
                },
                "required": ["score", "confidence", "tone"],
            },
            "priority": {
                "type": "object",
                "properties": {
                    "score": {"type": "integer", "minimum": 1, "maximum": 5},
                    "factors": {"type": "array", "items": {"type": "string"}},
                    "time_to_respond": {
                        "type": "string",
                        "enum": [t.value for t in TimeToRespond],
                    },
                },
                "required": ["score", "factors", "time_to_respond"],
            },
        },
        "required": ["category", "importance", "reasoning", "summary", "sentiment", "priority"],
    },
}

#: Anthropic tool schema for deciding whether a sender is a newsletter.
NEWSLETTER_TOOL: dict[str, Any] = {
    "name": "record_newsletter_analysis",
    "description": "Record whether a sender is a newsletter and what it provides.",
    "input_schema": {
        "type": "object",
        "properties": {
            "is_newsletter": {"type": "boolean"},
            "frequency": {
                "type": "string",
                "enum": [f.value for f in NewsletterFrequency],
            },
            "content_type": {"type": "string"},
            "summary": {"type": "string", "description": "What this newsletter provides, one sentence."},
        },
        "required": ["is_newsletter", "frequency", "content_type", "summary"],
    },
}


# ── Prompt builders ────────────────────────────────────────────────────────────


def build_messages(message: EmailMessage) -> list[dict[str, str]]:
    """Build the Anthropic messages list for categorizing a single email.

    HTML is stripped from the body before truncation.  If no body is
    available the snippet is used instead.
    """
    plain_body = strip_html(message.body or message.snippet or "")
    body_preview = plain_body[:BODY_CHAR_LIMIT]

    guide = "\n".join(f'- "{c.value}": {_CATEGORY_GUIDE[c]}' for c in CATEGORY_ORDER)
    content_lines = [
        f"From: {message.sender}",
        f"Subject: {message.subject}",
        f"Date: {message.date.isoformat()}",
        "",
        body_preview,
    ]
    if len(plain_body) > BODY_CHAR_LIMIT:
        content_lines.append("\n[… email truncated …]")

    return [
        {
            "role": "user",
            "content": (
                "You help a busy founder triage their inbox. Put the email below "
                f"into exactly one of these buckets:\n{guide}\n\n"
                "Call record_email_category with your assessment.\n\n"
                + "\n".join(content_lines)
            ),
        }
    ]


def build_newsletter_messages(sender: str, messages: list[EmailMessage]) -> list[dict[str, str]]:
    """Build the messages list for a newsletter analysis of one sender."""
    sample = sorted(messages, key=lambda m: m.date, reverse=True)[:NEWSLETTER_SAMPLE_SIZE]
    listing = "\n".join(
        f"{i}. Subject: {m.subject}\n   Date: {m.date.isoformat()}\n   Snippet: {m.snippet}"
        for i, m in enumerate(sample, start=1)
    )
    return [
        {
            "role": "user",
            "content": (
                f"These are the {len(sample)} most recent emails from {sender}. "
                "Decide whether this sender is a legitimate newsletter or content "
                "subscription, how often it sends, and what it provides. Call "
                f"record_newsletter_analysis with your findings.\n\n{listing}"
            ),
        }
    ]


def build_script_prompt(
    call_type: str,
    counts: list[tuple[str, int]],
    highlights: list[str],
    max_seconds: int,
) -> str:
    """Prompt asking the model for a spoken call script."""
    count_lines = "\n".join(f"- {label}: {count} emails" for label, count in counts) or "- none"
    highlight_lines = "\n".join(f"{i}. {h}" for i, h in enumerate(highlights, start=1)) or "None"
    return (
        f"Write the spoken script for a {call_type} phone call to a busy founder "
        "about their inbox.\n\n"
        f"Emails by category:\n{count_lines}\n\n"
        f"High importance items:\n{highlight_lines}\n\n"
        f"Keep it under {max_seconds} seconds when read aloud. Greet the user "
        "casually, summarize the categories, call out the important items, and "
        "end with a short sign-off. Plain sentences only: no markdown, no lists, "
        "no stage directions."
    )
