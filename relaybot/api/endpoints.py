"""API endpoints for the conversation service."""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from cuid2 import cuid_wrapper
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from relaybot import __version__
from relaybot.models.conversation import ConversationRequest, ConversationResponse, HealthResponse, ToolInfo
from relaybot.services.conversation import ConversationService
from relaybot.tools.registry import ToolRegistry
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

cuid = cuid_wrapper()

_STREAM_DONE = object()


def get_conversation_service(request: Request) -> ConversationService:
    """Conversation service created at startup."""
    return request.app.state.conversation_service


def get_tool_registry(request: Request) -> ToolRegistry:
    """Tool registry populated at startup."""
    return request.app.state.tool_registry


@router.post("/conversation", response_model=ConversationResponse, tags=["Conversation"])
async def handle_conversation(
    request: ConversationRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationResponse:
    """Handle a conversation message and return the assistant's final answer."""
    user_id = request.user_id or cuid()

    try:
        result = await service.process_message(request.message, user_id, reset=request.reset)
    except ValueError as e:
        logger.warning(f"Message validation error for user {user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Conversation processing error for user {user_id}: {e}", exc_info=True)
        error_msg = "I apologize, but I'm experiencing technical difficulties. Please try again."
        return ConversationResponse(response=error_msg, user_id=user_id, rounds=0, stop_reason="error")

    logger.info(f"Generated response for user {user_id}: {result.text[:50]}...")
    return ConversationResponse(
        response=result.text,
        user_id=user_id,
        rounds=result.rounds,
        stop_reason=result.stop_reason,
    )


@router.post("/conversation/stream", tags=["Conversation"])
async def stream_conversation(
    request: ConversationRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> StreamingResponse:
    """Stream the assistant's text as it is generated.

    Intermediate text from every model call is streamed; when the turn ends
    with a fixed message (depth limit or failure) that message is streamed last.
    """
    user_id = request.user_id or cuid()
    try:
        service.validate_message(request.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    queue: asyncio.Queue = asyncio.Queue()
    streamed: list[str] = []

    def on_text(text: str) -> None:
        streamed.append(text)
        queue.put_nowait(text)

    async def run_turn() -> None:
        try:
            result = await service.process_message(
                request.message, user_id, on_stream_text=on_text, reset=request.reset
            )
            if result.text and not "".join(streamed).endswith(result.text):
                queue.put_nowait(("\n\n" if streamed else "") + result.text)
        except Exception as e:
            logger.error(f"Streaming conversation error for user {user_id}: {e}", exc_info=True)
            queue.put_nowait("I apologize, but I'm experiencing technical difficulties. Please try again.")
        finally:
            queue.put_nowait(_STREAM_DONE)

    async def body() -> AsyncIterator[str]:
        task = asyncio.create_task(run_turn())
        try:
            while (chunk := await queue.get()) is not _STREAM_DONE:
                yield chunk
        finally:
            await task

    return StreamingResponse(body(), media_type="text/plain", headers={"X-User-Id": user_id})


@router.delete("/conversation/{user_id}", status_code=204, tags=["Conversation"])
async def reset_conversation(
    user_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> None:
    """Forget a user's conversation history."""
    await service.reset(user_id)
    logger.info(f"Conversation reset for user {user_id}")


@router.get("/tools", response_model=list[ToolInfo], tags=["Tools"])
async def list_tools(registry: ToolRegistry = Depends(get_tool_registry)) -> list[ToolInfo]:
    """List the tools the assistant can call and the provider that owns each."""
    return [
        ToolInfo(
            name=tool.name,
            description=tool.description,
            provider=registry.route(tool.name),
            input_schema=tool.input_schema,
        )
        for tool in registry.tools
    ]


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(registry: ToolRegistry = Depends(get_tool_registry)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
        tools=len(registry.tools),
    )
