"""Anthropic-backed AI service: forced tool-use for structured output, plain text for scripts."""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol, runtime_checkable

import anthropic
from anthropic import AsyncAnthropic
from anthropic.types import TextBlock, ToolUseBlock

logger = logging.getLogger(__name__)

# Haiku: fast and cheap enough to run on every incoming email.
_CATEGORIZE_MODEL = "claude-haiku-4-5-20251001"
_CATEGORIZE_MAX_TOKENS = 1024
# Sonnet for free-text call scripts.
_SCRIPT_MODEL = "claude-sonnet-4-6"
_SCRIPT_MAX_TOKENS = 600
_DEFAULT_TIMEOUT_SECONDS = 30.0


class AIServiceError(Exception):
    """Base class for AI service failures."""


class MissingCredentialsError(AIServiceError):
    """Raised when no API key is configured."""


class AIRequestError(AIServiceError):
    """Raised when the request fails: timeout, connection error, non-2xx."""


class AIResponseShapeError(AIServiceError):
    """Raised when the response does not have the expected structure."""


@runtime_checkable
class AIService(Protocol):
    """Interface the categorizer and script synthesizer depend on."""

    available: bool

    async def complete_structured(
        self, messages: list[dict[str, str]], tool: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def complete_text(self, prompt: str) -> str: ...


class AnthropicService:
    """Thin wrapper over AsyncAnthropic exposing the two calls the core needs.

    Credential presence is decided once, at construction.  Without a key the
    service reports ``available = False`` and every call raises
    MissingCredentialsError without touching the network.

    Usage::

        service = AnthropicService()
        data = await service.complete_structured(messages, CATEGORIZATION_TOOL)
        text = await service.complete_text("Write a short call script ...")
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        key = api_key if api_key is not None else os.environ.get("ANTHROPIC_API_KEY", "")
        self.available = bool(key)
        self._client: AsyncAnthropic | None = (
            AsyncAnthropic(api_key=key, timeout=timeout) if key else None
        )
        if not self.available:
            logger.warning("ANTHROPIC_API_KEY not set; AI categorization disabled")

    async def complete_structured(
        self,
        messages: list[dict[str, str]],
        tool: dict[str, Any],
        *,
        model: str = _CATEGORIZE_MODEL,
        max_tokens: int = _CATEGORIZE_MAX_TOKENS,
    ) -> dict[str, Any]:
        """Force a call to ``tool`` and return its input dict.

        Raises:
            MissingCredentialsError: no API key configured.
            AIRequestError: the API call failed.
            AIResponseShapeError: no matching tool_use block in the response.
        """
        client = self._require_client()
        try:
            response = await client.messages.create(
                model=model,
                max_tokens=max_tokens,
                tools=[tool],  # type: ignore[list-item]
                tool_choice={"type": "tool", "name": tool["name"]},
                messages=messages,  # type: ignore[arg-type]
            )
        except anthropic.APIError as exc:
            raise AIRequestError(f"{tool['name']} request failed: {exc}") from exc

        for block in response.content:
            if isinstance(block, ToolUseBlock) and block.name == tool["name"]:
                if not isinstance(block.input, dict):
                    raise AIResponseShapeError(
                        f"{tool['name']} input is {type(block.input).__name__}, not an object"
                    )
                return block.input

        raise AIResponseShapeError(
            f"Model did not return a {tool['name']} tool call "
            f"(stop_reason={response.stop_reason!r})"
        )

    async def complete_text(
        self,
        prompt: str,
        *,
        model: str = _SCRIPT_MODEL,
        max_tokens: int = _SCRIPT_MAX_TOKENS,
    ) -> str:
        """Return the model's plain-text reply to a single user prompt."""
        client = self._require_client()
        try:
            response = await client.messages.create(
                model=model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            raise AIRequestError(f"Text completion failed: {exc}") from exc

        text = "".join(b.text for b in response.content if isinstance(b, TextBlock)).strip()
        if not text:
            raise AIResponseShapeError(
                f"Model returned no text (stop_reason={response.stop_reason!r})"
            )
        return text

    def _require_client(self) -> AsyncAnthropic:
        if self._client is None:
            raise MissingCredentialsError("ANTHROPIC_API_KEY is not configured")
        return self._client
