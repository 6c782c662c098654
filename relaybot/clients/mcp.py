"""MCP client connection to a single tool provider."""

import asyncio
from contextlib import AsyncExitStack
from typing import Any

import mcp.types as types
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client

from relaybot import __version__
from relaybot.config import ProviderConfig
from relaybot.errors import InvocationError, ProviderUnavailableError
from relaybot.models.llm import ToolDescriptor, ToolOutput
from relaybot.models.primitives import Primitive, PromptPrimitive, ResourcePrimitive, ToolPrimitive
from relaybot.tools.content import normalize_tool_content
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

CLIENT_INFO = types.Implementation(name="relaybot", version=__version__)


class MCPToolConnection:
    """A logical connection to one tool-serving process or endpoint."""

    def __init__(self, config: ProviderConfig):
        """Initialize the connection.

        Args:
            config: Provider configuration (stdio command or SSE url)
        """
        self.config = config
        self.connection_id = config.id
        self.session: ClientSession | None = None
        self.capabilities: types.ServerCapabilities | None = None
        self._exit_stack = AsyncExitStack()

    async def connect(self) -> None:
        """Open the transport and complete the MCP handshake.

        Raises:
            ProviderUnavailableError: If the provider cannot be started or initialized
        """
        try:
            if self.config.transport == "stdio":
                params = StdioServerParameters(
                    command=self.config.command,
                    args=self.config.args,
                    env=self.config.env,
                )
                command_line = " ".join([self.config.command, *self.config.args])
                logger.info(f"Starting MCP provider {self.connection_id}: {command_line}")
                read, write = await self._exit_stack.enter_async_context(stdio_client(params))
            else:
                logger.info(f"Connecting to MCP provider {self.connection_id} at {self.config.url}")
                read, write = await self._exit_stack.enter_async_context(sse_client(self.config.url))

            session = await self._exit_stack.enter_async_context(
                ClientSession(read, write, logging_callback=self._on_server_log, client_info=CLIENT_INFO)
            )
            result = await session.initialize()
        except Exception as e:
            await self.close()
            raise ProviderUnavailableError(self.connection_id, str(e)) from e

        self.session = session
        self.capabilities = result.capabilities
        logger.info(
            f"Connected to {self.connection_id}, server capabilities: "
            f"{', '.join(k for k, v in result.capabilities.model_dump().items() if v is not None)}"
        )

    async def _on_server_log(self, params: types.LoggingMessageNotificationParams) -> None:
        if params.data:
            logger.debug(f"[{self.connection_id} server log]: {params.data}")

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise InvocationError(f"Provider {self.connection_id} is not connected")
        return self.session

    async def list_primitives(self) -> list[Primitive]:
        """List every resource, tool and prompt the provider declares."""
        session = self._require_session()
        capabilities = self.capabilities or types.ServerCapabilities()

        async def resources() -> list[Primitive]:
            result = await session.list_resources()
            return [
                ResourcePrimitive(
                    uri=str(item.uri), name=item.name, description=item.description, mime_type=item.mimeType
                )
                for item in result.resources
            ]

        async def tools() -> list[Primitive]:
            result = await session.list_tools()
            return [
                ToolPrimitive(name=item.name, description=item.description, input_schema=item.inputSchema)
                for item in result.tools
            ]

        async def prompts() -> list[Primitive]:
            result = await session.list_prompts()
            return [
                PromptPrimitive(
                    name=item.name,
                    description=item.description,
                    arguments=[arg.model_dump() for arg in item.arguments or []],
                )
                for item in result.prompts
            ]

        listings = []
        if capabilities.resources is not None:
            listings.append(resources())
        if capabilities.tools is not None:
            listings.append(tools())
        if capabilities.prompts is not None:
            listings.append(prompts())

        primitives: list[Primitive] = []
        for group in await asyncio.gather(*listings):
            primitives.extend(group)
        return primitives

    async def discover(self) -> list[ToolDescriptor]:
        """Query the provider's capabilities and return its tools.

        Raises:
            ProviderUnavailableError: If the capability listing fails
        """
        try:
            primitives = await self.list_primitives()
        except Exception as e:
            raise ProviderUnavailableError(self.connection_id, str(e)) from e

        descriptors = [p.to_descriptor() for p in primitives if isinstance(p, ToolPrimitive)]
        logger.info(
            f"Provider {self.connection_id} offers {len(descriptors)} tools out of {len(primitives)} primitives"
        )
        return descriptors

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolOutput:
        """Call a tool on this provider.

        Args:
            name: Tool name
            arguments: Structured tool input

        Returns:
            Normalized tool output

        Raises:
            InvocationError: On transport failure, malformed response, or tool-reported failure
        """
        session = self._require_session()
        try:
            result = await session.call_tool(name, arguments)
        except McpError as e:
            logger.error(f"Error calling tool {name} on {self.connection_id}: {e}")
            raise InvocationError(f"Provider {self.connection_id} rejected {name}: {e}") from e
        except Exception as e:
            logger.error(f"Transport failure calling tool {name} on {self.connection_id}: {e}")
            raise InvocationError(f"Provider {self.connection_id} failed to run {name}: {e}") from e

        try:
            content = normalize_tool_content([item.model_dump() for item in result.content])
        except (AttributeError, TypeError, ValueError) as e:
            raise InvocationError(f"Malformed response from {self.connection_id} for {name}: {e}") from e

        if result.isError:
            reason = "\n".join(block.text for block in content if block.type == "text") or "unknown error"
            raise InvocationError(f"Tool {name} failed: {reason}")

        return ToolOutput(content=content)

    async def close(self) -> None:
        """Close the session and its transport."""
        self.session = None
        await self._exit_stack.aclose()
