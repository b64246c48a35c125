"""Tests for AnthropicService — the Anthropic client is mocked."""

from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
from anthropic.types import TextBlock, ToolUseBlock

from mailcall.processing.ai_service import (
    AIRequestError,
    AIResponseShapeError,
    AIService,
    AnthropicService,
    MissingCredentialsError,
)
from mailcall.processing.prompts import CATEGORIZATION_TOOL

_MESSAGES = [{"role": "user", "content": "categorize this"}]


def _response(*blocks: object, stop_reason: str = "tool_use") -> MagicMock:
    r = MagicMock()
    r.content = list(blocks)
    r.stop_reason = stop_reason
    return r


def _tool_block(data: dict[str, object], name: str = "record_email_category") -> ToolUseBlock:
    return ToolUseBlock(type="tool_use", id="toolu_test_1", name=name, input=data)


@pytest.fixture
def service() -> AnthropicService:
    return AnthropicService(api_key="test-key")


class TestCredentials:
    def test_available_with_key(self, service: AnthropicService) -> None:
        assert service.available is True
        assert isinstance(service, AIService)

    def test_unavailable_without_key(self, monkeypatch) -> None:
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert AnthropicService().available is False

    def test_reads_key_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")
        assert AnthropicService().available is True

    async def test_calls_without_key_raise_missing_credentials(self) -> None:
        service = AnthropicService(api_key="")
        with pytest.raises(MissingCredentialsError):
            await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)
        with pytest.raises(MissingCredentialsError):
            await service.complete_text("hello")


class TestCompleteStructured:
    async def test_returns_tool_input(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(
            return_value=_response(_tool_block({"category": "call-me"}))
        )
        data = await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)
        assert data == {"category": "call-me"}

    async def test_forces_the_tool(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(
            return_value=_response(_tool_block({"category": "call-me"}))
        )
        await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)
        kwargs = service._client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "record_email_category"}
        assert kwargs["tools"] == [CATEGORIZATION_TOOL]

    async def test_skips_non_tool_blocks(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(
            return_value=_response(
                TextBlock(type="text", text="Let me think."),
                _tool_block({"category": "remind-me"}),
            )
        )
        data = await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)
        assert data["category"] == "remind-me"

    async def test_wrong_tool_name_is_shape_error(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(
            return_value=_response(_tool_block({}, name="some_other_tool"))
        )
        with pytest.raises(AIResponseShapeError):
            await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)

    async def test_empty_content_is_shape_error(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(return_value=_response(stop_reason="end_turn"))
        with pytest.raises(AIResponseShapeError):
            await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)

    async def test_api_error_is_request_error(self, service: AnthropicService) -> None:
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        service._client.messages.create = AsyncMock(
            side_effect=anthropic.APIConnectionError(request=request)
        )
        with pytest.raises(AIRequestError):
            await service.complete_structured(_MESSAGES, CATEGORIZATION_TOOL)


class TestCompleteText:
    async def test_joins_text_blocks(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(
            return_value=_response(
                TextBlock(type="text", text="Good morning! "),
                TextBlock(type="text", text="You have mail."),
                stop_reason="end_turn",
            )
        )
        assert await service.complete_text("write a script") == "Good morning! You have mail."

    async def test_no_text_is_shape_error(self, service: AnthropicService) -> None:
        service._client.messages.create = AsyncMock(return_value=_response(stop_reason="max_tokens"))
        with pytest.raises(AIResponseShapeError):
            await service.complete_text("write a script")
