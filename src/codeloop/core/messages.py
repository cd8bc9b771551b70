"""Conversation data model shared by the agent loop and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, model_validator

Role = Literal["system", "user", "assistant", "tool"]


class ToolCallRef(BaseModel):
    """A finalized tool call requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments_text: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_text},
        }


class Message(BaseModel):
    """A single transcript entry. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCallRef, ...] = ()
    tool_call_id: str | None = None

    @model_validator(mode="after")
    def _validate_role_fields(self) -> Message:
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages may carry tool calls")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages must reference a tool_call_id")
        if self.role != "tool" and self.tool_call_id is not None:
            raise ValueError("only tool messages may carry a tool_call_id")
        return self

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        tool_calls: tuple[ToolCallRef, ...] | list[ToolCallRef] = (),
    ) -> Message:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, result: ToolResult) -> Message:
        return cls(role="tool", content=result.output_text, tool_call_id=result.tool_call_id)

    def to_wire(self) -> dict[str, Any]:
        """Serialise to the OpenAI-compatible chat message shape."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> Message:
        tool_calls: list[ToolCallRef] = []
        for item in payload.get("tool_calls") or []:
            function = item.get("function") or {}
            tool_calls.append(
                ToolCallRef(
                    id=str(item.get("id", "")),
                    name=str(function.get("name", "")),
                    arguments_text=str(function.get("arguments") or ""),
                )
            )
        return cls(
            role=payload["role"],
            content=payload.get("content"),
            tool_calls=tuple(tool_calls),
            tool_call_id=payload.get("tool_call_id"),
        )


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Catalog entry advertised to the model."""

    name: str
    description: str
    parameter_schema: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema,
            },
        }


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of dispatching one tool call."""

    tool_call_id: str
    output_text: str
    is_error: bool = False


__all__ = ["Message", "Role", "ToolCallRef", "ToolDefinition", "ToolResult"]
