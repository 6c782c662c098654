"""Conversation service used by chat surfaces."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from relaybot.clients.anthropic import StreamCallback
from relaybot.models.llm import TurnResult
from relaybot.services.orchestrator import ConversationOrchestrator
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_CHARS = 16000  # Roughly 4000 tokens


class ConversationService:
    """Entry point for chat surfaces.

    Validates incoming text and serializes turns per user before handing them
    to the orchestrator, which assumes at most one in-flight turn per user.
    """

    def __init__(self, orchestrator: ConversationOrchestrator, max_message_chars: int = MAX_MESSAGE_CHARS):
        """Initialize conversation service.

        Args:
            orchestrator: Orchestrator that runs the turns
            max_message_chars: Longest accepted user message
        """
        self.orchestrator = orchestrator
        self.max_message_chars = max_message_chars
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock; it is dropped once no task holds or awaits it."""
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._user_locks[user_id]

    async def process_message(
        self,
        message: str,
        user_id: str,
        on_stream_text: StreamCallback | None = None,
        reset: bool = False,
    ) -> TurnResult:
        """Process a user message and return the assistant's answer.

        Raises:
            ValueError: If message exceeds the length limit
        """
        self.validate_message(message)

        async with self._user_lock(user_id):
            logger.info(f"Processing message for user {user_id}: {message[:50]}...")
            return await self.orchestrator.handle_turn(user_id, message, on_stream_text=on_stream_text, reset=reset)

    async def reset(self, user_id: str) -> None:
        """Forget a user's conversation."""
        async with self._user_lock(user_id):
            self.orchestrator.history.reset(user_id)

    def validate_message(self, message: str) -> None:
        if not message.strip():
            raise ValueError("Message cannot be empty.")
        if len(message) > self.max_message_chars:
            max_message_tokens = self.max_message_chars // 4
            raise ValueError(f"Your message is too long. Please keep messages under {max_message_tokens} tokens.")
