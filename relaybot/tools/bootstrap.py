"""Startup wiring: connect configured tool providers and register their tools."""

from collections.abc import Callable

from relaybot.clients.mcp import MCPToolConnection
from relaybot.config import ProviderConfig
from relaybot.errors import ProviderUnavailableError
from relaybot.tools.registry import ToolRegistry
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

ConnectionFactory = Callable[[ProviderConfig], MCPToolConnection]


async def connect_provider(
    config: ProviderConfig,
    registry: ToolRegistry,
    connection_factory: ConnectionFactory = MCPToolConnection,
) -> MCPToolConnection:
    """Connect one provider, discover its tools and register them.

    Raises:
        ProviderUnavailableError: If the provider cannot be connected or queried
    """
    connection = connection_factory(config)
    await connection.connect()
    try:
        descriptors = await connection.discover()
    except ProviderUnavailableError:
        await connection.close()
        raise

    registry.add_connection(connection)
    registry.register(connection.connection_id, descriptors)
    return connection


async def connect_providers(
    configs: list[ProviderConfig],
    registry: ToolRegistry,
    connection_factory: ConnectionFactory = MCPToolConnection,
) -> list[MCPToolConnection]:
    """Connect every configured provider in order.

    Providers are connected one after another so that tool name ownership
    follows configuration order. A provider that fails is logged and skipped.

    Returns:
        The connections that came up
    """
    connections: list[MCPToolConnection] = []
    for config in configs:
        try:
            connections.append(await connect_provider(config, registry, connection_factory))
            logger.info(f"{config.id} tools initialized successfully")
        except ProviderUnavailableError as e:
            logger.error(f"Failed to initialize {config.id} tools: {e.reason}")

    logger.info(
        f"Connected {len(connections)}/{len(configs)} tool providers, {len(registry.tools)} tools available"
    )
    return connections


async def close_providers(connections: list[MCPToolConnection]) -> None:
    """Close connections in reverse order of opening."""
    for connection in reversed(connections):
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing provider {connection.connection_id}: {e}")
