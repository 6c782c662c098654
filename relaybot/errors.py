"""Exceptions raised by the tool, history and gateway layers."""


class RelayError(Exception):
    """Base class for relaybot errors."""


class ConfigError(RelayError):
    """Configuration could not be loaded or validated."""


class UnknownToolError(RelayError):
    """No registered provider owns the requested tool."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool {name} does not exist")


class InvocationError(RelayError):
    """A tool provider failed to run a tool."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ProviderUnavailableError(RelayError):
    """A tool provider could not be connected or queried for its capabilities."""

    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Provider {provider_id} unavailable: {reason}")


class LLMGatewayError(RelayError):
    """The LLM provider request failed."""


class ContextOverflowError(LLMGatewayError):
    """The request exceeded the model's maximum context size."""
