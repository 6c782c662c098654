"""Tests for the conversation orchestrator's model/tool loop."""

import itertools

import pytest

from relaybot.config import OrchestratorConfig
from relaybot.errors import ContextOverflowError, InvocationError, LLMGatewayError
from relaybot.models.llm import (
    LLMMessage,
    LLMResponse,
    LLMUsage,
    TextBlock,
    ToolDescriptor,
    ToolOutput,
    ToolResultBlock,
    ToolUseBlock,
)
from relaybot.services.orchestrator import (
    CONTEXT_APOLOGY_MESSAGE,
    CONTEXT_RESET_NOTICE,
    ERROR_MESSAGE,
    MAX_DEPTH_MESSAGE,
    ConversationOrchestrator,
)
from relaybot.tools.registry import ToolRegistry


def text_response(text: str, input_tokens: int = 10, output_tokens: int = 5) -> LLMResponse:
    return LLMResponse(
        content=[TextBlock(text=text)],
        stop_reason="end_turn",
        usage=LLMUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        model="test-model",
    )


def tool_response(*calls: tuple[str, str, dict]) -> LLMResponse:
    return LLMResponse(
        content=[ToolUseBlock(id=call_id, name=name, input=arguments) for call_id, name, arguments in calls],
        stop_reason="tool_use",
        usage=LLMUsage(),
        model="test-model",
    )


class ScriptedGateway:
    """Gateway that replays scripted responses and records every request."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[list[LLMMessage]] = []
        self.tools_seen: list[list[ToolDescriptor] | None] = []

    async def stream_message(self, messages, system_prompt, tools=None, on_text=None, **kwargs):
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if on_text is not None and step.text:
            for word in step.text.split(" "):
                on_text(word)
        return step


class LoopingGateway:
    """Gateway that asks for another tool call on every request."""

    def __init__(self):
        self.calls = 0
        self._ids = itertools.count()

    async def stream_message(self, messages, system_prompt, tools=None, on_text=None, **kwargs):
        self.calls += 1
        return tool_response((f"call_{next(self._ids)}", "echo", {"text": "again"}))


class FakeConnection:
    """Tool provider backed by plain Python callables."""

    def __init__(self, connection_id: str, handlers: dict):
        self.connection_id = connection_id
        self.handlers = handlers
        self.invocations: list[tuple[str, dict]] = []

    async def discover(self) -> list[ToolDescriptor]:
        return [ToolDescriptor(name=name) for name in self.handlers]

    async def invoke(self, name, arguments) -> ToolOutput:
        self.invocations.append((name, arguments))
        return self.handlers[name](arguments)


def echo(arguments: dict) -> ToolOutput:
    return ToolOutput(content=[TextBlock(text=f"echo: {arguments.get('text', '')}")])


def failing(arguments: dict) -> ToolOutput:
    raise InvocationError("provider crashed")


def crashing(arguments: dict) -> ToolOutput:
    raise RuntimeError("socket closed")


@pytest.fixture
def connection():
    return FakeConnection("local", {"echo": echo, "clock": lambda _: ToolOutput(content=[TextBlock(text="12:00")])})


@pytest.fixture
def registry(connection):
    registry = ToolRegistry()
    registry.add_connection(connection)
    registry.register(connection.connection_id, [ToolDescriptor(name="echo"), ToolDescriptor(name="clock")])
    return registry


class TestPlainTurns:
    """Turns that do not involve tools."""

    @pytest.mark.asyncio
    async def test_direct_answer(self, registry):
        gateway = ScriptedGateway(text_response("Hello there"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "hi")

        assert result.text == "Hello there"
        assert result.stop_reason == "end_turn"
        assert result.rounds == 1
        assert [m.role for m in orchestrator.history.read("u1")] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_registered_tools_are_offered(self, registry):
        gateway = ScriptedGateway(text_response("ok"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        await orchestrator.handle_turn("u1", "hi")

        assert [tool.name for tool in gateway.tools_seen[0]] == ["echo", "clock"]

    @pytest.mark.asyncio
    async def test_history_carries_across_turns(self, registry):
        gateway = ScriptedGateway(text_response("first answer"), text_response("second answer"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        await orchestrator.handle_turn("u1", "first")
        await orchestrator.handle_turn("u1", "second")

        assert [m.text for m in gateway.calls[1]] == ["first", "first answer", "second"]

    @pytest.mark.asyncio
    async def test_reset_starts_from_empty_history(self, registry):
        gateway = ScriptedGateway(text_response("first answer"), text_response("fresh"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        await orchestrator.handle_turn("u1", "first")
        await orchestrator.handle_turn("u1", "again", reset=True)

        assert [m.text for m in gateway.calls[1]] == ["again"]

    @pytest.mark.asyncio
    async def test_window_is_limited(self, registry):
        gateway = ScriptedGateway(*(text_response(f"a{i}") for i in range(4)))
        orchestrator = ConversationOrchestrator(gateway, registry, config=OrchestratorConfig(history_window=3))

        for i in range(4):
            await orchestrator.handle_turn("u1", f"q{i}")

        assert [m.text for m in gateway.calls[-1]] == ["q2", "a2", "q3"]

    @pytest.mark.asyncio
    async def test_stream_callback_receives_text(self, registry):
        gateway = ScriptedGateway(text_response("streamed reply text"))
        orchestrator = ConversationOrchestrator(gateway, registry)
        chunks: list[str] = []

        await orchestrator.handle_turn("u1", "hi", on_stream_text=chunks.append)

        assert chunks == ["streamed", "reply", "text"]


class TestToolRounds:
    """Turns in which the model calls tools."""

    @pytest.mark.asyncio
    async def test_tool_result_is_sent_back(self, registry, connection):
        gateway = ScriptedGateway(
            tool_response(("call_1", "echo", {"text": "ping"})),
            text_response("The tool said ping"),
        )
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "echo ping")

        assert result.text == "The tool said ping"
        assert result.rounds == 2
        assert connection.invocations == [("echo", {"text": "ping"})]

        follow_up = gateway.calls[1]
        assert follow_up[-2].tool_uses[0].id == "call_1"
        result_block = follow_up[-1].tool_results[0]
        assert result_block.tool_use_id == "call_1"
        assert result_block.content[0].text == "echo: ping"
        assert not result_block.is_error

    @pytest.mark.asyncio
    async def test_parallel_tool_calls_share_one_reply(self, registry, connection):
        gateway = ScriptedGateway(
            tool_response(("call_a", "echo", {"text": "x"}), ("call_b", "clock", {})),
            text_response("done"),
        )
        orchestrator = ConversationOrchestrator(gateway, registry)

        await orchestrator.handle_turn("u1", "both please")

        follow_up = gateway.calls[1]
        assert follow_up[-1].answers(follow_up[-2])
        assert {block.tool_use_id for block in follow_up[-1].tool_results} == {"call_a", "call_b"}
        assert sorted(name for name, _ in connection.invocations) == ["clock", "echo"]

    @pytest.mark.asyncio
    async def test_unknown_tool_becomes_error_result(self, registry):
        gateway = ScriptedGateway(
            tool_response(("call_1", "nope", {})),
            text_response("That tool is not available"),
        )
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "use nope")

        assert result.text == "That tool is not available"
        result_block = gateway.calls[1][-1].tool_results[0]
        assert result_block.is_error
        assert result_block.content == "Error: Tool nope does not exist"

    @pytest.mark.asyncio
    async def test_failing_tool_becomes_error_result(self):
        connection = FakeConnection("broken", {"explode": failing})
        registry = ToolRegistry()
        registry.add_connection(connection)
        registry.register("broken", [ToolDescriptor(name="explode")])
        gateway = ScriptedGateway(tool_response(("call_1", "explode", {})), text_response("It failed"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "explode")

        assert result.text == "It failed"
        result_block = gateway.calls[1][-1].tool_results[0]
        assert result_block.is_error
        assert result_block.content == "Error: provider crashed"

    @pytest.mark.asyncio
    async def test_unexpected_tool_exception_becomes_error_result(self):
        """A provider raising something other than InvocationError does not end the turn."""
        connection = FakeConnection("flaky", {"fetch": crashing})
        registry = ToolRegistry()
        registry.add_connection(connection)
        registry.register("flaky", [ToolDescriptor(name="fetch")])
        gateway = ScriptedGateway(tool_response(("call_1", "fetch", {})), text_response("done"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "hi")

        assert result.text == "done"
        result_block = gateway.calls[1][-1].tool_results[0]
        assert result_block.is_error
        assert result_block.content == "Error: socket closed"

    @pytest.mark.asyncio
    async def test_depth_limit_stops_tool_loop(self, registry, connection):
        """With max_depth N the model is called N + 1 times before giving up."""
        gateway = LoopingGateway()
        orchestrator = ConversationOrchestrator(gateway, registry, config=OrchestratorConfig(max_depth=3))

        result = await orchestrator.handle_turn("u1", "loop forever")

        assert result.text == MAX_DEPTH_MESSAGE
        assert result.stop_reason == "max_depth"
        assert gateway.calls == 4
        assert result.rounds == 4
        assert len(connection.invocations) == 3

    @pytest.mark.asyncio
    async def test_zero_depth_runs_no_tools(self, registry, connection):
        gateway = LoopingGateway()
        orchestrator = ConversationOrchestrator(gateway, registry, config=OrchestratorConfig(max_depth=0))

        result = await orchestrator.handle_turn("u1", "loop forever")

        assert result.text == MAX_DEPTH_MESSAGE
        assert gateway.calls == 1
        assert connection.invocations == []

    @pytest.mark.asyncio
    async def test_usage_is_accumulated(self, registry, caplog):
        gateway = ScriptedGateway(
            tool_response(("call_1", "clock", {})),
            text_response("noon", input_tokens=20, output_tokens=3),
        )
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "time?")

        assert result.usage.input_tokens == 20
        assert result.usage.output_tokens == 3
        assert "completed in 2 rounds" in caplog.text
        assert "cache hit rate 0.0%" in caplog.text


class TestFailures:
    """Gateway failures and context overflow recovery."""

    @pytest.mark.asyncio
    async def test_gateway_error_returns_apology(self, registry):
        gateway = ScriptedGateway(LLMGatewayError("503 from provider"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "hi")

        assert result.text == ERROR_MESSAGE
        assert result.stop_reason == "error"

    @pytest.mark.asyncio
    async def test_context_overflow_retries_with_latest_message(self, registry):
        gateway = ScriptedGateway(
            text_response("earlier answer"),
            ContextOverflowError("prompt is too long"),
            text_response("fresh answer"),
        )
        orchestrator = ConversationOrchestrator(gateway, registry)
        await orchestrator.handle_turn("u1", "earlier question")

        result = await orchestrator.handle_turn("u1", "latest question")

        assert result.text == "fresh answer"
        retry = gateway.calls[2]
        assert len(retry) == 1
        assert retry[0].text.startswith(CONTEXT_RESET_NOTICE)
        assert retry[0].text.endswith("latest question")
        assert "earlier question" not in retry[0].text
        assert [m.text for m in orchestrator.history.read("u1")][-1] == "fresh answer"

    @pytest.mark.asyncio
    async def test_second_context_overflow_returns_apology(self, registry):
        gateway = ScriptedGateway(
            ContextOverflowError("prompt is too long"),
            ContextOverflowError("prompt is too long"),
        )
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "hi")

        assert result.text == CONTEXT_APOLOGY_MESSAGE
        assert result.stop_reason == "context_overflow"
        assert result.rounds == 2
        assert orchestrator.history.read("u1") == []

    @pytest.mark.asyncio
    async def test_context_overflow_without_user_text_returns_apology(self, registry):
        """Nothing typed by the user to retry with, so the turn gives up after one call."""
        gateway = ScriptedGateway(ContextOverflowError("prompt is too long"))
        orchestrator = ConversationOrchestrator(gateway, registry)
        orphan = LLMMessage(role="user", content=[ToolResultBlock(tool_use_id="call_9", content="late result")])

        result = await orchestrator.handle_turn("u1", [orphan])

        assert result.text == CONTEXT_APOLOGY_MESSAGE
        assert result.stop_reason == "context_overflow"
        assert result.rounds == 1
        assert len(gateway.calls) == 1
        assert orchestrator.history.message_count("u1") == 0

    @pytest.mark.asyncio
    async def test_raising_stream_callback_returns_apology(self, registry):
        def broken_sink(text: str) -> None:
            raise RuntimeError("client went away")

        gateway = ScriptedGateway(text_response("hello there"))
        orchestrator = ConversationOrchestrator(gateway, registry)

        result = await orchestrator.handle_turn("u1", "hi", on_stream_text=broken_sink)

        assert result.text == ERROR_MESSAGE
        assert result.stop_reason == "error"
        assert result.rounds == 1
