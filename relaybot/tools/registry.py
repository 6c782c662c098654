"""Tools registry: aggregates provider tools and routes calls by name."""

from typing import Any, Protocol

from relaybot.errors import InvocationError, UnknownToolError
from relaybot.models.llm import TextBlock, ToolDescriptor, ToolOutput, ToolResultBlock, ToolUseBlock
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)


class ToolConnection(Protocol):
    """Interface for a connected tool provider."""

    connection_id: str

    async def discover(self) -> list[ToolDescriptor]:
        """List the tools the provider offers."""
        ...

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolOutput:
        """Run a tool.

        Raises:
            InvocationError: If the provider fails to run the tool
        """
        ...


class ToolRegistry:
    """Registry mapping tool names to the provider connection that owns them.

    The first provider to register a name owns it; later registrations of the
    same name are dropped.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._connections: dict[str, ToolConnection] = {}
        self._routes: dict[str, str] = {}
        self._tools: list[ToolDescriptor] = []

    def add_connection(self, connection: ToolConnection) -> None:
        """Make a connection available for routing."""
        self._connections[connection.connection_id] = connection

    def register(self, connection_id: str, descriptors: list[ToolDescriptor]) -> int:
        """Register tools offered by a connection.

        Returns:
            Number of tools newly registered
        """
        registered = 0
        for descriptor in descriptors:
            owner = self._routes.get(descriptor.name)
            if owner is not None:
                logger.warning(
                    f"Tool {descriptor.name} from {connection_id} already registered by {owner}, skipping"
                )
                continue

            self._routes[descriptor.name] = connection_id
            self._tools.append(descriptor)
            registered += 1

        logger.info(f"Registered {registered} tools from {connection_id}")
        return registered

    def route(self, name: str) -> str:
        """Get the id of the connection that owns a tool.

        Raises:
            UnknownToolError: If no connection registered the name
        """
        try:
            return self._routes[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def get_connection(self, connection_id: str) -> ToolConnection | None:
        return self._connections.get(connection_id)

    @property
    def tools(self) -> list[ToolDescriptor]:
        """All registered tool descriptors in registration order."""
        return list(self._tools)

    async def invoke(self, tool_use: ToolUseBlock) -> ToolResultBlock:
        """Run a requested tool and wrap its output as a tool result.

        Unknown tools and any provider failure become error results the model
        can read; this method does not raise.
        """
        try:
            connection_id = self.route(tool_use.name)
            connection = self.get_connection(connection_id)
            if connection is None:
                raise UnknownToolError(tool_use.name)

            logger.debug(f"Executing tool {tool_use.name} on {connection_id} with input: {tool_use.input}")
            output = await connection.invoke(tool_use.name, tool_use.input)

        except UnknownToolError as e:
            logger.error(f"Unknown tool requested: {tool_use.name}")
            return ToolResultBlock(tool_use_id=tool_use.id, content=f"Error: {e}", is_error=True)

        except InvocationError as e:
            logger.error(f"Tool {tool_use.name} failed: {e.reason}")
            return ToolResultBlock(tool_use_id=tool_use.id, content=f"Error: {e.reason}", is_error=True)

        except Exception as e:
            logger.error(f"Tool {tool_use.name} raised unexpectedly: {e}", exc_info=True)
            return ToolResultBlock(tool_use_id=tool_use.id, content=f"Error: {e}", is_error=True)

        logger.debug(f"Tool {tool_use.name} succeeded with {len(output.content)} content blocks")
        return ToolResultBlock(
            tool_use_id=tool_use.id,
            content=output.content or [TextBlock(text="(no output)")],
            is_error=output.is_error,
        )
