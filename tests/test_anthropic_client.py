"""Tests for the Anthropic gateway client."""

from types import SimpleNamespace
from unittest.mock import Mock, patch

import httpx
import pytest
from anthropic import APIConnectionError, APIStatusError, BadRequestError, InternalServerError
from anthropic.types import Message

from relaybot.clients.anthropic import AnthropicClient, AnthropicConfig, is_context_overflow
from relaybot.errors import ContextOverflowError, LLMGatewayError
from relaybot.models.llm import LLMMessage, ToolDescriptor, ToolUseBlock

API_URL = "https://api.anthropic.com/v1/messages"


def status_error(status_code: int, message: str, error_class=APIStatusError) -> APIStatusError:
    response = httpx.Response(status_code, request=httpx.Request("POST", API_URL))
    return error_class(message, response=response, body=None)


def final_message(*content: dict, stop_reason: str = "end_turn") -> Message:
    return Message.model_validate(
        {
            "id": "msg_01",
            "type": "message",
            "role": "assistant",
            "model": "claude-test",
            "content": list(content),
            "stop_reason": stop_reason,
            "stop_sequence": None,
            "usage": {"input_tokens": 12, "output_tokens": 7, "cache_read_input_tokens": 4},
        }
    )


class FakeStream:
    """Async context manager mimicking the SDK's message stream."""

    def __init__(self, chunks: list[str], message: Message):
        self.chunks = chunks
        self.message = message

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    async def text_stream(self):
        for chunk in self.chunks:
            yield chunk

    async def get_final_message(self) -> Message:
        return self.message


class FakeMessages:
    """Stand-in for ``AsyncAnthropic().messages`` that records requests."""

    def __init__(self, chunks=(), message=None, errors=()):
        self.chunks = list(chunks)
        self.message = message
        self.errors = list(errors)
        self.requests: list[dict] = []

    def stream(self, **params):
        self.requests.append(params)
        if self.errors:
            raise self.errors.pop(0)
        return FakeStream(self.chunks, self.message)


def make_client(messages: FakeMessages, **config) -> AnthropicClient:
    with patch("relaybot.clients.anthropic.tiktoken.encoding_for_model", side_effect=KeyError("offline")):
        return AnthropicClient(
            config=AnthropicConfig(retry_delay=0, **config),
            client=SimpleNamespace(messages=messages),
        )


class TestClientSetup:
    """Tests for construction and configuration."""

    def test_missing_api_key_raises(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicClient()

    def test_config_from_env(self):
        env = {"ANTHROPIC_MODEL": "claude-custom", "ANTHROPIC_MAX_TOKENS": "512", "ANTHROPIC_TEMPERATURE": "0.1"}
        with patch.dict("os.environ", env):
            config = AnthropicConfig.from_env()

        assert config.model == "claude-custom"
        assert config.max_tokens == 512
        assert config.temperature == 0.1


class TestTokenEstimation:
    """Tests for token estimation used by the rate limiter."""

    @pytest.fixture
    def anthropic_client(self):
        client = make_client(FakeMessages())
        client.tokenizer = Mock()
        return client

    def test_estimate_uses_tokenizer(self, anthropic_client):
        anthropic_client.tokenizer.encode.return_value = ["token"] * 42

        assert anthropic_client.estimate_message_tokens("some text") == 42

    def test_estimate_falls_back_without_tokenizer(self, anthropic_client):
        anthropic_client.tokenizer = None

        assert anthropic_client.estimate_message_tokens("a" * 400) == 100

    def test_estimate_falls_back_when_tokenizer_fails(self, anthropic_client):
        anthropic_client.tokenizer.encode.side_effect = ValueError("disallowed special token")

        assert anthropic_client.estimate_message_tokens("a" * 80) == 20


class TestBuildTools:
    """Tests for tool definitions sent to the API."""

    def test_last_tool_is_cached(self):
        tools = AnthropicClient.build_tools([ToolDescriptor(name="search"), ToolDescriptor(name="fetch")])

        assert [tool.name for tool in tools] == ["search", "fetch"]
        assert tools[0].cache_control is None
        assert tools[1].cache_control is not None
        assert tools[1].cache_control.type == "ephemeral"

    def test_no_tools(self):
        assert AnthropicClient.build_tools([]) == []


class TestContextOverflow:
    """Tests for recognizing context size errors."""

    def test_prompt_too_long(self):
        error = status_error(400, "prompt is too long: 210000 tokens > 200000 maximum", BadRequestError)

        assert is_context_overflow(error)

    def test_request_too_large(self):
        assert is_context_overflow(status_error(413, "request_too_large"))

    def test_other_bad_request(self):
        assert not is_context_overflow(status_error(400, "messages: roles must alternate", BadRequestError))

    def test_server_error(self):
        assert not is_context_overflow(status_error(500, "prompt is too long", InternalServerError))


class TestStreamMessage:
    """Tests for streaming requests."""

    @pytest.mark.asyncio
    async def test_streams_text_and_returns_response(self):
        messages = FakeMessages(
            chunks=["Hel", "lo"],
            message=final_message({"type": "text", "text": "Hello"}),
        )
        client = make_client(messages)
        received: list[str] = []

        response = await client.stream_message(
            [LLMMessage(role="user", content="hi")], "be brief", on_text=received.append
        )

        assert received == ["Hel", "lo"]
        assert response.text == "Hello"
        assert response.stop_reason == "end_turn"
        assert response.model == "claude-test"
        assert response.usage.input_tokens == 12
        assert response.usage.output_tokens == 7
        assert response.usage.total_tokens == 19
        assert response.usage.cache_read_input_tokens == 4

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self):
        messages = FakeMessages(chunks=["a", "b"], message=final_message({"type": "text", "text": "ab"}))
        client = make_client(messages)
        received: list[str] = []

        async def on_text(text: str) -> None:
            received.append(text)

        await client.stream_message([LLMMessage(role="user", content="hi")], "system", on_text=on_text)

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_tool_use_blocks_are_converted(self):
        messages = FakeMessages(
            message=final_message(
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "toolu_1", "name": "search", "input": {"query": "mcp"}},
                stop_reason="tool_use",
            )
        )
        client = make_client(messages)

        response = await client.stream_message([LLMMessage(role="user", content="find mcp")], "system")

        assert response.stop_reason == "tool_use"
        assert response.tool_uses == [ToolUseBlock(id="toolu_1", name="search", input={"query": "mcp"})]
        assert response.to_message().is_tool_use

    @pytest.mark.asyncio
    async def test_request_parameters(self):
        messages = FakeMessages(message=final_message({"type": "text", "text": "ok"}))
        client = make_client(messages, model="claude-configured", max_tokens=300)

        await client.stream_message(
            [LLMMessage(role="user", content="hi")],
            "system prompt",
            tools=[ToolDescriptor(name="search", description="Search notes")],
            temperature=0.0,
        )

        request = messages.requests[0]
        assert request["model"] == "claude-configured"
        assert request["max_tokens"] == 300
        assert request["temperature"] == 0.0
        assert request["system"] == "system prompt"
        assert request["messages"] == [{"role": "user", "content": "hi"}]
        assert request["tools"][0]["name"] == "search"
        assert request["tools"][0]["cache_control"] == {"type": "ephemeral", "ttl": "5m"}

    @pytest.mark.asyncio
    async def test_tools_omitted_when_none_registered(self):
        messages = FakeMessages(message=final_message({"type": "text", "text": "ok"}))
        client = make_client(messages)

        await client.stream_message([LLMMessage(role="user", content="hi")], "system", tools=[])

        assert "tools" not in messages.requests[0]

    @pytest.mark.asyncio
    async def test_context_overflow_is_mapped(self):
        messages = FakeMessages(errors=[status_error(400, "prompt is too long", BadRequestError)])
        client = make_client(messages)

        with pytest.raises(ContextOverflowError):
            await client.stream_message([LLMMessage(role="user", content="hi")], "system")

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        messages = FakeMessages(
            message=final_message({"type": "text", "text": "recovered"}),
            errors=[status_error(529, "overloaded")],
        )
        client = make_client(messages, max_retries=2)

        response = await client.stream_message([LLMMessage(role="user", content="hi")], "system")

        assert response.text == "recovered"
        assert len(messages.requests) == 2

    @pytest.mark.asyncio
    async def test_persistent_server_error_is_gateway_error(self):
        messages = FakeMessages(errors=[status_error(500, "boom", InternalServerError)] * 2)
        client = make_client(messages, max_retries=2)

        with pytest.raises(LLMGatewayError, match="500"):
            await client.stream_message([LLMMessage(role="user", content="hi")], "system")

        assert len(messages.requests) == 2

    @pytest.mark.asyncio
    async def test_connection_error_is_gateway_error(self):
        error = APIConnectionError(request=httpx.Request("POST", API_URL))
        messages = FakeMessages(errors=[error])
        client = make_client(messages, max_retries=1)

        with pytest.raises(LLMGatewayError) as exc_info:
            await client.stream_message([LLMMessage(role="user", content="hi")], "system")

        assert not isinstance(exc_info.value, ContextOverflowError)
