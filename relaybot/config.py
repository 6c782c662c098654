"""Application configuration loaded from the environment and the tools file."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from relaybot.errors import ConfigError
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant reachable from group chats and direct messages.

You can call tools to look things up or act on the user's behalf. Use a tool whenever it gives a
better answer than your own knowledge, combine several tools when needed, and always explain the
outcome to the user in plain language. If a tool returns an error, tell the user what went wrong
instead of retrying indefinitely."""


class ProviderConfig(BaseModel):
    """One MCP tool provider, reached either by subprocess or by URL."""

    id: str = Field(..., min_length=1)
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    url: str | None = None
    enabled: bool = True

    @model_validator(mode="after")
    def check_transport(self) -> "ProviderConfig":
        """Exactly one of command or url must be set."""
        if bool(self.command) == bool(self.url):
            raise ValueError(f"Provider {self.id} must define exactly one of 'command' or 'url'")
        return self

    @property
    def transport(self) -> str:
        return "stdio" if self.command else "sse"


class ToolsConfig(BaseModel):
    """Tool providers to connect at startup."""

    providers: list[ProviderConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "ToolsConfig":
        ids = [provider.id for provider in self.providers]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate provider ids: {', '.join(duplicates)}")
        return self

    @property
    def enabled_providers(self) -> list[ProviderConfig]:
        return [provider for provider in self.providers if provider.enabled]


def load_tools_config(path: str | Path | None) -> ToolsConfig:
    """Load the tool provider configuration file.

    Args:
        path: JSON file path; None or a missing file yields an empty configuration

    Returns:
        Validated tools configuration

    Raises:
        ConfigError: If the file is not valid JSON or fails validation
    """
    if not path:
        return ToolsConfig()

    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Tools config {config_path} not found, starting without tool providers")
        return ToolsConfig()

    try:
        return ToolsConfig.model_validate_json(config_path.read_text())
    except ValidationError as e:
        raise ConfigError(f"Invalid tools config {config_path}: {e}") from e


@dataclass
class OrchestratorConfig:
    """Configuration for the conversation orchestrator."""

    max_depth: int = 10
    history_window: int = 6
    max_history_tokens: int = 50_000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            max_depth=int(os.getenv("RELAYBOT_MAX_DEPTH", cls.max_depth)),
            history_window=int(os.getenv("RELAYBOT_HISTORY_WINDOW", cls.history_window)),
            max_history_tokens=int(os.getenv("RELAYBOT_MAX_HISTORY_TOKENS", cls.max_history_tokens)),
            system_prompt=os.getenv("RELAYBOT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        )


@dataclass
class Settings:
    """Top-level settings assembled at startup."""

    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    tools_config_path: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            orchestrator=OrchestratorConfig.from_env(),
            tools_config_path=os.getenv("RELAYBOT_TOOLS_CONFIG", "tools.json"),
        )
