"""Conversation request and response models for the HTTP surface."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class ConversationRequest(BaseModel):
    """Request model for conversation endpoints."""

    message: str
    user_id: str | None = None
    reset: bool = False


class ConversationResponse(BaseModel):
    """Response model for conversation endpoint."""

    response: str
    user_id: str
    rounds: int = 1
    stop_reason: str | None = None


class ToolInfo(BaseModel):
    """A registered tool and the provider that owns it."""

    name: str
    description: str
    provider: str
    input_schema: dict[str, Any]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
    tools: int = 0
