"""Shared types for tool implementations."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from codeloop.core.messages import ToolDefinition


class ToolRegistryError(RuntimeError):
    """Base error for tool registry failures."""


class ToolAlreadyRegisteredError(ToolRegistryError):
    """Raised when attempting to register a tool with a duplicate name."""


class ToolkitAlreadyRegisteredError(ToolRegistryError):
    """Raised when attempting to register a toolkit twice."""


class ToolNotFoundError(ToolRegistryError):
    """Raised when invoking an unknown tool."""


class ToolInvocationError(ToolRegistryError):
    """Raised when a tool handler fails."""


@dataclass(slots=True)
class ToolOutput:
    """Represents the outcome of invoking a tool handler."""

    content: str
    summary: str | None = None
    data: Any | None = None


@dataclass(slots=True)
class Tool:
    """Metadata for a registered tool.

    ``mutating`` tools change state outside the conversation and are routed
    through the permission gate. When ``target_argument`` is set, approvals are
    scoped to the value of that argument instead of the whole tool.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[..., ToolOutput]
    mutating: bool = False
    target_argument: str | None = None
    preview: Callable[[dict[str, Any]], str] | None = None
    # Cancellable handlers take a second ``cancel_event`` argument and must stop once it is set.
    cancellable: bool = False

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameter_schema=self.input_schema,
        )

    def required_arguments(self) -> list[str]:
        required = self.input_schema.get("required") or []
        return [str(item) for item in required]

    def scope_target(self, payload: dict[str, Any]) -> str | None:
        if not self.target_argument:
            return None
        value = payload.get(self.target_argument)
        if value is None:
            return None
        return os.path.normpath(str(value))

    def describe_target(self, payload: dict[str, Any]) -> str:
        target = self.scope_target(payload)
        if target is not None:
            return target
        for key in ("command", "query", "pattern"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return self.name

    def render_preview(self, payload: dict[str, Any]) -> str:
        if self.preview is None:
            return ""
        return self.preview(payload)


@dataclass(slots=True)
class Toolkit:
    """Groups related tools together."""

    name: str
    version: str
    description: str
    tools: list[Tool] = field(default_factory=list)


@dataclass(slots=True)
class Workspace:
    """Filesystem and runtime context shared by the built-in tools."""

    root: Path
    shell_timeout_seconds: float = 30.0
    web_search_url: str | None = None
    api_key: str | None = None
    max_output_chars: int = 20_000

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser().resolve()

    def resolve(self, value: object, *, default: str | None = None) -> Path:
        """Resolve ``value`` against the root, rejecting paths that escape it."""
        if value is None or (isinstance(value, str) and not value.strip()):
            if default is None:
                raise ToolInvocationError("A path argument is required.")
            value = default
        if not isinstance(value, str):
            raise ToolInvocationError("Path arguments must be strings.")
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise ToolInvocationError(f"Path '{value}' is outside the workspace {self.root}.")
        return resolved

    def relative(self, path: Path) -> str:
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            return str(path)
        return relative.as_posix() or "."

    def clip(self, text: str) -> str:
        if len(text) <= self.max_output_chars:
            return text
        omitted = len(text) - self.max_output_chars
        return f"{text[: self.max_output_chars]}\n... ({omitted} more characters truncated)"


__all__ = [
    "Tool",
    "ToolAlreadyRegisteredError",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolOutput",
    "ToolRegistryError",
    "Toolkit",
    "ToolkitAlreadyRegisteredError",
    "Workspace",
]
