"""Tool providers, routing and output normalization."""

from relaybot.tools.registry import ToolConnection, ToolRegistry

__all__ = ["ToolConnection", "ToolRegistry"]
