"""Capabilities advertised by an MCP tool provider."""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from relaybot.models.llm import ToolDescriptor


class ResourcePrimitive(BaseModel):
    """A readable resource exposed by a provider."""

    type: Literal["resource"] = "resource"
    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = None


class ToolPrimitive(BaseModel):
    """A callable tool exposed by a provider."""

    type: Literal["tool"] = "tool"
    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict)

    def to_descriptor(self) -> ToolDescriptor:
        """Build the descriptor sent to the model.

        Only ``properties`` and ``required`` are carried over from the provider schema.
        """
        schema: dict[str, Any] = {
            "type": "object",
            "properties": self.input_schema.get("properties", {}),
        }
        if self.input_schema.get("required"):
            schema["required"] = list(self.input_schema["required"])
        return ToolDescriptor(name=self.name, description=self.description or "", input_schema=schema)


class PromptPrimitive(BaseModel):
    """A prompt template exposed by a provider."""

    type: Literal["prompt"] = "prompt"
    name: str
    description: str | None = None
    arguments: list[dict[str, Any]] = Field(default_factory=list)


Primitive = Annotated[ResourcePrimitive | ToolPrimitive | PromptPrimitive, Field(discriminator="type")]
