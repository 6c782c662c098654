"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


# Content block types
class TextBlock(BaseModel):
    """Text content block."""

    type: Literal["text"] = "text"
    text: str

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


class ImageSource(BaseModel):
    """Inline base64 image payload."""

    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class ImageBlock(BaseModel):
    """Image content block, produced by tools that return screenshots or pictures."""

    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseBlock(BaseModel):
    """Tool use content block."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


ToolResultContent = Annotated[TextBlock | ImageBlock, Field(discriminator="type")]


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[ToolResultContent]
    is_error: bool = False

    class Config:
        extra = "ignore"  # Ignore any additional fields from Anthropic


ContentBlock = Annotated[TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock, Field(discriminator="type")]


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    @property
    def blocks(self) -> list[Any]:
        return self.content if isinstance(self.content, list) else []

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.blocks if isinstance(block, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.blocks if isinstance(block, ToolResultBlock)]

    @property
    def is_tool_use(self) -> bool:
        return bool(self.tool_uses)

    @property
    def is_tool_result(self) -> bool:
        return bool(self.tool_results)

    @property
    def text(self) -> str:
        """Plain text of the message, text blocks joined by newlines."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))

    def answers(self, invocation: "LLMMessage") -> bool:
        """Whether this message carries a result for every tool use in ``invocation``."""
        result_ids = {block.tool_use_id for block in self.tool_results}
        return invocation.is_tool_use and all(block.id in result_ids for block in invocation.tool_uses)

    def to_api(self) -> dict[str, Any]:
        """Serialize to the Anthropic message parameter format."""
        return self.model_dump(exclude_none=True)


class ToolDescriptor(BaseModel):
    """A tool as advertised to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    class Config:
        frozen = True


class ToolOutput(BaseModel):
    """Normalized output of a tool call."""

    content: list[ToolResultContent] = Field(default_factory=list)
    is_error: bool = False


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def cache_hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        total_input = self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        if total_input == 0:
            return 0.0
        return (self.cache_read_input_tokens / total_input) * 100

    def add(self, other: "LLMUsage | None") -> None:
        """Accumulate another response's usage into this one."""
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens


@dataclass
class LLMResponse:
    """Provider-agnostic response from the LLM gateway."""

    content: list[TextBlock | ToolUseBlock]
    stop_reason: str | None
    usage: LLMUsage | None
    model: str
    provider: str = "anthropic"

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def to_message(self) -> LLMMessage:
        return LLMMessage(role="assistant", content=list(self.content))


@dataclass
class TurnResult:
    """Result of one conversation turn."""

    text: str
    stop_reason: str | None
    rounds: int
    usage: LLMUsage = field(default_factory=LLMUsage)
