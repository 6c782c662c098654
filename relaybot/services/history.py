"""Per-user conversation history with tool pairing and a token budget."""

import json
import math

from relaybot.models.llm import ImageBlock, LLMMessage, TextBlock, ToolResultBlock, ToolUseBlock
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
BLOCK_OVERHEAD_TOKENS = 3


def _chars_to_tokens(chars: int) -> int:
    return math.ceil(chars / CHARS_PER_TOKEN)


def _block_chars(block: TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock) -> int:
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        return len(block.name) + len(json.dumps(block.input, default=str))
    if isinstance(block, ToolResultBlock):
        if isinstance(block.content, str):
            return len(block.content)
        return sum(_block_chars(item) for item in block.content)
    # Images and anything else are costed by their serialized size
    return len(block.model_dump_json())


def _is_pair(invocation: LLMMessage, result: LLMMessage) -> bool:
    """Whether ``result`` carries a result for one of ``invocation``'s tool uses."""
    use_ids = {block.id for block in invocation.tool_uses}
    return any(block.tool_use_id in use_ids for block in result.tool_results)


class ConversationHistoryStore:
    """In-memory conversation histories keyed by user id.

    Every tool use message is kept directly ahead of the message carrying its
    results, and the estimated token cost of each history is kept under
    ``max_tokens`` by evicting the oldest messages after the first one.
    """

    def __init__(self, max_tokens: int = 50_000):
        """Initialize the store.

        Args:
            max_tokens: Token ceiling for a single user's history
        """
        self.max_tokens = max_tokens
        self._histories: dict[str, list[LLMMessage]] = {}
        self._token_totals: dict[str, int] = {}

    def _queue(self, user_id: str) -> list[LLMMessage]:
        return self._histories.setdefault(user_id, [])

    def append(self, user_id: str, message: LLMMessage) -> None:
        """Append a message, repairing tool pairing first if needed."""
        self._append_paired(self._queue(user_id), message)
        self.enforce_budget(user_id)

    def append_many(self, user_id: str, messages: list[LLMMessage]) -> None:
        """Append messages in order, repairing tool pairing per message."""
        queue = self._queue(user_id)
        for message in messages:
            self._append_paired(queue, message)
        self.enforce_budget(user_id)

    def _append_paired(self, queue: list[LLMMessage], message: LLMMessage) -> None:
        if not message.is_tool_result:
            queue.append(message)
            return

        last = queue[-1] if queue else None
        if last is not None and last.is_tool_use and _is_pair(last, message):
            queue.append(message)
            return

        # Results of parallel tool calls join the reply already answering the same tool use message
        if last is not None and last.is_tool_result and len(queue) >= 2 and _is_pair(queue[-2], message):
            known_ids = {block.tool_use_id for block in last.tool_results}
            extra = [
                block
                for block in message.blocks
                if not (isinstance(block, ToolResultBlock) and block.tool_use_id in known_ids)
            ]
            queue[-1] = LLMMessage(role=last.role, content=[*last.blocks, *extra])
            return

        invocation = self._find_invocation(queue, message)
        if invocation is not None:
            logger.debug("Restoring tool use message ahead of an unpaired tool result")
            queue.append(invocation.model_copy(deep=True))
        queue.append(message)

    @staticmethod
    def _find_invocation(queue: list[LLMMessage], result: LLMMessage) -> LLMMessage | None:
        """Most recent tool use message, preferring the one that issued ``result``."""
        latest = None
        for candidate in reversed(queue):
            if not candidate.is_tool_use:
                continue
            if _is_pair(candidate, result):
                return candidate
            if latest is None:
                latest = candidate
        return latest

    def read(self, user_id: str, limit: int | None = None) -> list[LLMMessage]:
        """Get a user's history ready to send to the model.

        Tool use messages not answered by the following message are dropped,
        as are tool results left without their tool use.

        Args:
            user_id: User identifier
            limit: Maximum number of most recent messages to return; a tool
                use/result pair that does not fit is left out whole

        Returns:
            Ordered list of messages
        """
        queue = self._histories.get(user_id, [])

        answered = [
            message
            for index, message in enumerate(queue)
            if not message.is_tool_use or (index + 1 < len(queue) and queue[index + 1].answers(message))
        ]

        filtered: list[LLMMessage] = []
        for message in answered:
            follows_invocation = filtered and filtered[-1].is_tool_use and _is_pair(filtered[-1], message)
            if message.is_tool_result and not follows_invocation:
                continue
            filtered.append(message)

        if not limit or limit <= 0:
            return filtered

        window: list[LLMMessage] = []
        i = len(filtered) - 1
        while i >= 0 and len(window) < limit:
            current = filtered[i]

            if current.is_tool_result and i > 0 and filtered[i - 1].is_tool_use:
                if len(window) < limit - 1:
                    window[:0] = [filtered[i - 1], current]
                    i -= 2
                    continue
                break

            window.insert(0, current)
            i -= 1

        return window

    def reset(self, user_id: str) -> None:
        """Clear a user's history and token accounting."""
        self._histories[user_id] = []
        self._token_totals[user_id] = 0

    def estimate_tokens(self, message: LLMMessage) -> int:
        """Estimate the token cost of a message.

        A character-count heuristic, not the provider's tokenizer; treat the
        ceiling as a safety margin.
        """
        if isinstance(message.content, str):
            return MESSAGE_OVERHEAD_TOKENS + _chars_to_tokens(len(message.content))

        return MESSAGE_OVERHEAD_TOKENS + sum(
            BLOCK_OVERHEAD_TOKENS + _chars_to_tokens(_block_chars(block)) for block in message.content
        )

    def _recompute(self, queue: list[LLMMessage]) -> int:
        return sum(self.estimate_tokens(message) for message in queue)

    def enforce_budget(self, user_id: str) -> None:
        """Evict the oldest messages until the history fits the token ceiling.

        The first message is never evicted while others remain, and a tool use
        message leaves together with the result that follows it. When only the
        root and the newest message remain and they are still over the ceiling,
        the newest message is evicted.
        """
        queue = self._queue(user_id)
        newest = queue[-1] if queue else None
        total = self._recompute(queue)
        evicted = 0

        while total > self.max_tokens and len(queue) > 1:
            start = 1  # index 0 holds the root context
            message = queue[start]
            if message.is_tool_use and start + 1 < len(queue) and _is_pair(message, queue[start + 1]):
                del queue[start : start + 2]
                evicted += 2
            else:
                del queue[start]
                evicted += 1
            total = self._recompute(queue)

        self._token_totals[user_id] = total
        if evicted and queue[-1] is not newest:
            logger.warning(
                f"Newest message for user {user_id} does not fit the token budget next to the root message, evicted it"
            )
        if evicted:
            logger.info(
                f"Evicted {evicted} messages for user {user_id}, {len(queue)} remain ({total}/{self.max_tokens} tokens)"
            )

    def total_tokens(self, user_id: str) -> int:
        return self._token_totals.get(user_id, 0)

    def message_count(self, user_id: str) -> int:
        return len(self._histories.get(user_id, []))

    def latest_user_message(self, user_id: str) -> LLMMessage | None:
        """Most recent message typed by the user, skipping tool results."""
        for message in reversed(self._histories.get(user_id, [])):
            if message.role == "user" and not message.is_tool_result and message.text.strip():
                return message
        return None
