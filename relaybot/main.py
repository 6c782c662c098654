"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relaybot import __version__
from relaybot.api.endpoints import router
from relaybot.clients.anthropic import AnthropicClient, AnthropicConfig
from relaybot.config import Settings, load_tools_config
from relaybot.services.conversation import ConversationService
from relaybot.services.orchestrator import ConversationOrchestrator
from relaybot.tools.bootstrap import close_providers, connect_providers
from relaybot.tools.registry import ToolRegistry
from relaybot.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph at startup and close tool providers at shutdown."""
    setup_logging(LogConfig.from_env())
    settings = Settings.from_env()

    tools_config = load_tools_config(settings.tools_config_path)
    registry = ToolRegistry()
    connections = await connect_providers(tools_config.enabled_providers, registry)

    orchestrator = ConversationOrchestrator(
        gateway=AnthropicClient(config=AnthropicConfig.from_env()),
        registry=registry,
        config=settings.orchestrator,
    )
    app.state.tool_registry = registry
    app.state.conversation_service = ConversationService(orchestrator)

    logger.info(f"relaybot {__version__} started with {len(registry.tools)} tools")
    try:
        yield
    finally:
        await close_providers(connections)
        logger.info("Tool providers closed")


# Create FastAPI application
app = FastAPI(
    title="relaybot",
    description=(
        "A conversational assistant that calls tools hosted by MCP servers "
        "and streams its answers back to chat surfaces."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "Conversation",
            "description": "Send messages to the assistant, stream answers, and reset conversations.",
        },
        {
            "name": "Tools",
            "description": "Tools discovered from the configured MCP providers.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("relaybot.main:app", host="0.0.0.0", port=8000, log_level="info")
