"""Anthropic API client with streaming, rate limiting and error handling."""

import asyncio
import inspect
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import tiktoken
from anthropic import APIConnectionError, APIError, APIStatusError, AsyncAnthropic
from anthropic.types import ContentBlock as AnthropicContentBlock
from anthropic.types import Message
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from relaybot.errors import ContextOverflowError, LLMGatewayError
from relaybot.models.llm import LLMMessage, LLMResponse, LLMUsage, TextBlock, ToolDescriptor, ToolUseBlock
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

StreamCallback = Callable[[str], Awaitable[None] | None]

CONTEXT_OVERFLOW_MARKERS = ("prompt is too long", "context length", "context window", "too many tokens")


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 2048
    temperature: float = 0.5
    max_retries: int = 3
    retry_delay: float = 1.0

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000

    @classmethod
    def from_env(cls) -> "AnthropicConfig":
        return cls(
            model=os.getenv("ANTHROPIC_MODEL", cls.model),
            max_tokens=int(os.getenv("ANTHROPIC_MAX_TOKENS", cls.max_tokens)),
            temperature=float(os.getenv("ANTHROPIC_TEMPERATURE", cls.temperature)),
        )


class AnthropicRateLimiter:
    """Client-side request and token rate limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the request and token windows."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


def is_context_overflow(error: APIStatusError) -> bool:
    """Whether an API error reports that the request exceeded the context size."""
    if error.status_code == 413:
        return True
    if error.status_code != 400:
        return False
    message = str(error.message).lower()
    return any(marker in message for marker in CONTEXT_OVERFLOW_MARKERS)


class AnthropicClient:
    """Anthropic Messages API gateway with streaming, retries and rate limiting."""

    tokenizer: tiktoken.Encoding | None = None
    client: AsyncAnthropic
    config: AnthropicConfig

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        client: AsyncAnthropic | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
            client: Pre-built SDK client
        """
        self.config = config or AnthropicConfig()

        if client is None:
            anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            # Retries are handled by _request_with_retries
            client = AsyncAnthropic(api_key=anthropic_api_key, max_retries=0)
        self.client = client

        self.rate_limiter = AnthropicRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    @staticmethod
    def build_tools(tools: list[ToolDescriptor]) -> list[AnthropicTool]:
        """Convert descriptors to API tools, marking the last one for prompt caching."""
        anthropic_tools = []
        for i, tool in enumerate(tools):
            cache_control = CacheControl() if i == len(tools) - 1 else None
            anthropic_tools.append(
                AnthropicTool(
                    name=tool.name,
                    description=tool.description,
                    input_schema=tool.input_schema,
                    cache_control=cache_control,
                )
            )
        return anthropic_tools

    async def stream_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[ToolDescriptor] | None = None,
        on_text: StreamCallback | None = None,
        **kwargs,
    ) -> LLMResponse:
        """Stream a message from Claude, forwarding text increments as they arrive.

        Args:
            messages: Conversation window
            system_prompt: System prompt for Claude
            tools: Tools the model may call
            on_text: Callback receiving each streamed text increment
            **kwargs: Overrides for model, max_tokens and temperature

        Returns:
            Structured response with content blocks and stop reason

        Raises:
            ContextOverflowError: If the request exceeds the model's context size
            LLMGatewayError: If the request fails for any other reason
        """
        estimated_tokens = self._estimate_tokens(messages, system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        request_params: dict[str, Any] = {
            "model": kwargs.get("model", self.config.model),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "system": system_prompt,
            "messages": [message.to_api() for message in messages],
        }
        if tools:
            request_params["tools"] = [tool.model_dump(exclude_none=True) for tool in self.build_tools(tools)]

        logger.debug(f"Streaming message with {len(messages)} messages, {len(tools) if tools else 0} tools")

        async def stream() -> Message:
            async with self.client.messages.stream(**request_params) as message_stream:
                async for text in message_stream.text_stream:
                    if on_text is not None:
                        result = on_text(text)
                        if inspect.isawaitable(result):
                            await result
                return await message_stream.get_final_message()

        try:
            response = await self._request_with_retries(stream)
        except APIStatusError as e:
            if is_context_overflow(e):
                raise ContextOverflowError(str(e.message)) from e
            raise LLMGatewayError(f"Anthropic API error {e.status_code}: {e.message}") from e
        except APIError as e:
            raise LLMGatewayError(f"Anthropic API error: {e}") from e

        usage = LLMUsage()
        if response.usage:
            usage = LLMUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
                cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            )

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )

        return LLMResponse(
            content=self._convert_content_blocks(response.content),
            stop_reason=response.stop_reason,
            usage=usage,
            model=response.model,
        )

    async def _request_with_retries[T](self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIStatusError as e:
                last_attempt = attempt >= self.config.max_retries - 1
                if e.status_code == 429 and not last_attempt:
                    retry_after = 60
                    if e.response is not None:
                        retry_after = int(e.response.headers.get("retry-after", 60))
                    if retry_after < 120:
                        logger.warning(f"Rate limited by Anthropic, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif e.status_code >= 500 and not last_attempt:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                # Re-raise if not retryable or max retries reached
                raise

            except APIConnectionError:
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue
                raise

        raise LLMGatewayError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _convert_content_blocks(self, anthropic_content: list[AnthropicContentBlock]) -> list[TextBlock | ToolUseBlock]:
        """Convert Anthropic content blocks to our ContentBlock types."""
        converted_blocks: list[TextBlock | ToolUseBlock] = []
        for block in anthropic_content:
            block_dict = block.model_dump() if hasattr(block, "model_dump") else dict(block)

            if block_dict.get("type") == "text":
                converted_blocks.append(TextBlock.model_validate(block_dict))
            elif block_dict.get("type") == "tool_use":
                converted_blocks.append(ToolUseBlock.model_validate(block_dict))
            else:
                logger.warning(f"Unknown content block type: {block_dict.get('type')}")

        return converted_blocks

    def _estimate_tokens(self, messages: list[LLMMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting.

        Args:
            messages: Conversation messages
            system_prompt: System prompt

        Returns:
            Estimated token count
        """
        text_content = system_prompt + "".join(message.text for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message.

        Args:
            message: Message content

        Returns:
            Estimated token count
        """
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4
