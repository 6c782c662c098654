"""Conversation orchestrator driving the model/tool loop for each turn."""

import asyncio
from typing import Protocol

from relaybot.clients.anthropic import StreamCallback
from relaybot.config import OrchestratorConfig
from relaybot.errors import ContextOverflowError, LLMGatewayError
from relaybot.models.llm import (
    LLMMessage,
    LLMResponse,
    LLMUsage,
    ToolDescriptor,
    ToolResultBlock,
    TurnResult,
)
from relaybot.services.history import ConversationHistoryStore
from relaybot.tools.registry import ToolRegistry
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

MAX_DEPTH_MESSAGE = "Maximum recursion depth reached, stopping tool processing."
ERROR_MESSAGE = "I apologize, but I'm experiencing technical difficulties. Please try again."
CONTEXT_APOLOGY_MESSAGE = (
    "I apologize, but our conversation has grown too long for me to continue. "
    "Please start over with a new message."
)
CONTEXT_RESET_NOTICE = (
    "Our earlier conversation exceeded the model's context limit and has been cleared. "
    "Please answer my latest message below on its own."
)


class LLMGateway(Protocol):
    """Interface for the streaming LLM client."""

    async def stream_message(
        self,
        messages: list[LLMMessage],
        system_prompt: str,
        tools: list[ToolDescriptor] | None = None,
        on_text: StreamCallback | None = None,
        **kwargs,
    ) -> LLMResponse:
        """Send a conversation window and stream the reply.

        Raises:
            ContextOverflowError: If the request exceeds the model's context size
            LLMGatewayError: If the request fails
        """
        ...


class ConversationOrchestrator:
    """Runs conversation turns: model call, tool execution, and follow-up calls.

    Owns the per-user history and shares the tool registry built at startup.
    Turns of the same user must not run concurrently; callers serialize them.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        registry: ToolRegistry,
        history: ConversationHistoryStore | None = None,
        config: OrchestratorConfig | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            gateway: LLM client used for every model call
            registry: Tool registry used to route tool calls
            history: History store (defaults to a fresh store sized from config)
            config: Orchestrator configuration
        """
        self.gateway = gateway
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.history = history or ConversationHistoryStore(max_tokens=self.config.max_history_tokens)

    async def handle_turn(
        self,
        user_id: str,
        prompt: str | list[LLMMessage],
        on_stream_text: StreamCallback | None = None,
        reset: bool = False,
    ) -> TurnResult:
        """Run one conversation turn to completion.

        Args:
            user_id: User whose history the turn reads and extends
            prompt: User text, or pre-built messages to append
            on_stream_text: Receives text increments as the model streams them
            reset: Clear the user's history before starting

        Returns:
            The turn's final answer; failures are reported as plain text
        """
        if reset:
            logger.info(f"Resetting conversation for user {user_id}")
            self.history.reset(user_id)

        pending = [LLMMessage(role="user", content=prompt)] if isinstance(prompt, str) else list(prompt)
        usage = LLMUsage()
        rounds = 0
        depth = 0
        recovered = False

        logger.info(f"Starting turn for user {user_id} with {len(self.registry.tools)} tools available")

        while True:
            try:
                rounds += 1
                response = await self._submit(user_id, pending, on_stream_text)

            except ContextOverflowError as e:
                logger.warning(f"Context overflow for user {user_id}: {e}")
                seed = self.history.latest_user_message(user_id)
                self.history.reset(user_id)
                if recovered or seed is None:
                    return TurnResult(CONTEXT_APOLOGY_MESSAGE, "context_overflow", rounds, usage)

                recovered = True
                pending = [LLMMessage(role="user", content=f"{CONTEXT_RESET_NOTICE}\n\n{seed.text}")]
                continue

            except LLMGatewayError as e:
                logger.error(f"LLM gateway failed for user {user_id}: {e}", exc_info=True)
                return TurnResult(ERROR_MESSAGE, "error", rounds, usage)

            except Exception as e:
                logger.error(f"Unexpected error during turn for user {user_id}: {e}", exc_info=True)
                return TurnResult(ERROR_MESSAGE, "error", rounds, usage)

            usage.add(response.usage)
            tool_uses = response.tool_uses

            if not tool_uses:
                logger.info(
                    f"Turn for user {user_id} completed in {rounds} rounds, "
                    f"{usage.total_tokens} tokens, cache hit rate {usage.cache_hit_rate:.1f}%"
                )
                return TurnResult(response.text, response.stop_reason, rounds, usage)

            if depth >= self.config.max_depth:
                logger.warning(
                    f"Maximum recursion depth ({self.config.max_depth}) reached, stopping tool processing"
                )
                return TurnResult(MAX_DEPTH_MESSAGE, "max_depth", rounds, usage)

            logger.info(f"Processing {len(tool_uses)} tools at depth {depth}")
            results = await asyncio.gather(*(self.registry.invoke(tool_use) for tool_use in tool_uses))
            pending = [self._result_message(result) for result in results]
            depth += 1

    async def _submit(
        self,
        user_id: str,
        pending: list[LLMMessage],
        on_stream_text: StreamCallback | None,
    ) -> LLMResponse:
        """Record the pending input, call the model on the recent window, record its reply."""
        self.history.append_many(user_id, pending)
        window = self.history.read(user_id, limit=self.config.history_window)

        logger.debug(f"Calling LLM with {len(window)} messages for user {user_id}")
        response = await self.gateway.stream_message(
            messages=window,
            system_prompt=self.config.system_prompt,
            tools=self.registry.tools,
            on_text=on_stream_text,
        )

        if response.content:
            self.history.append(user_id, response.to_message())
        return response

    @staticmethod
    def _result_message(result: ToolResultBlock) -> LLMMessage:
        return LLMMessage(role="user", content=[result])
