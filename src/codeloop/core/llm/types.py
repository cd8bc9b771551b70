"""Shared LLM transport types."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol, Union

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.messages import Message, ToolDefinition

FinishReason = Literal["stop", "tool-calls", "length"]


@dataclass(slots=True)
class LLMSettings:
    """Runtime configuration for the LLM client."""

    base_url: str
    model: str
    api_key: str | None
    timeout_seconds: float = 30.0
    max_output_tokens: int = 4096


@dataclass(frozen=True, slots=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    """A fragment of a tool call, keyed by its position within the turn."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token counts reported by the backend for one or more requests."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True, slots=True)
class TurnComplete:
    """Completion signal for a turn, with token usage when the backend reports it."""

    finish_reason: FinishReason
    usage: TokenUsage | None = None


StreamEvent = Union[TextDelta, ToolCallDelta, TurnComplete]


class Transport(Protocol):
    """Interface every model backend adapter satisfies."""

    def send(
        self,
        transcript: Sequence[Message],
        tool_catalog: Sequence[ToolDefinition],
        *,
        streaming: bool = True,
        stop_event: threading.Event | None = None,
    ) -> Iterator[StreamEvent]:
        ...


__all__ = [
    "FinishReason",
    "LLMSettings",
    "StreamEvent",
    "TextDelta",
    "TokenUsage",
    "ToolCallDelta",
    "Transport",
    "TurnComplete",
]
