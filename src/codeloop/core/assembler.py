"""Reassembly of one model turn from incremental transport events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from codeloop.core.llm.types import FinishReason, StreamEvent, TextDelta, TokenUsage, ToolCallDelta, TurnComplete
from codeloop.core.messages import ToolCallRef

logger = logging.getLogger(__name__)


class AssemblyError(RuntimeError):
    """Raised when the fragment sequence of a turn is contradictory or malformed."""


@dataclass(slots=True)
class _ToolCallAccumulator:
    index: int
    id: str | None = None
    name: str | None = None
    argument_parts: list[str] = field(default_factory=list)

    def finalize(self, call_id: str) -> ToolCallRef:
        if not self.name:
            raise AssemblyError(f"Tool call at index {self.index} never received a name")
        return ToolCallRef(
            id=call_id,
            name=self.name,
            arguments_text="".join(self.argument_parts),
        )


@dataclass(frozen=True, slots=True)
class AssembledTurn:
    """A complete logical model turn."""

    text: str
    tool_calls: tuple[ToolCallRef, ...]
    finish_reason: FinishReason
    truncated: bool = False
    usage: TokenUsage | None = None


class ResponseAssembler:
    """Collects the events of a single turn.

    Tool-call fragments are keyed by their position index, which is only
    meaningful within one turn; create a new assembler for every request.
    """

    def __init__(self) -> None:
        self._text_parts: list[str] = []
        self._calls: dict[int, _ToolCallAccumulator] = {}
        self._ids: dict[str, int] = {}
        self._finish_reason: FinishReason | None = None
        self._usage: TokenUsage | None = None
        self._turn: AssembledTurn | None = None

    def feed(self, event: StreamEvent) -> None:
        if self._finish_reason is not None:
            raise AssemblyError("Received a fragment after the turn completed")
        if isinstance(event, TextDelta):
            self._text_parts.append(event.text)
        elif isinstance(event, ToolCallDelta):
            self._feed_tool_call(event)
        elif isinstance(event, TurnComplete):
            self._finish_reason = event.finish_reason
            self._usage = event.usage
        else:
            raise AssemblyError(f"Unsupported transport event: {event!r}")

    def is_complete(self) -> bool:
        return self._finish_reason is not None

    def finalize(self) -> AssembledTurn:
        if self._finish_reason is None:
            raise AssemblyError("Turn finalized before its completion signal")
        if self._turn is not None:
            return self._turn
        tool_calls = self._finalize_calls()
        finish_reason = self._finish_reason
        truncated = finish_reason == "length"
        if finish_reason == "stop" and tool_calls:
            logger.debug("Backend reported 'stop' alongside %d tool call(s)", len(tool_calls))
            finish_reason = "tool-calls"
        elif finish_reason == "tool-calls" and not tool_calls:
            logger.warning("Backend reported tool calls but none were streamed")
            finish_reason = "stop"
        self._turn = AssembledTurn(
            text="".join(self._text_parts),
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            truncated=truncated,
            usage=self._usage,
        )
        return self._turn

    def _finalize_calls(self) -> tuple[ToolCallRef, ...]:
        calls: list[ToolCallRef] = []
        for index in sorted(self._calls):
            accumulator = self._calls[index]
            call_id = accumulator.id
            if call_id is None:
                call_id = f"call_{index}"
                suffix = 1
                while call_id in self._ids:
                    call_id = f"call_{index}_{suffix}"
                    suffix += 1
                self._ids[call_id] = index
            calls.append(accumulator.finalize(call_id))
        return tuple(calls)

    def _feed_tool_call(self, delta: ToolCallDelta) -> None:
        if delta.index < 0:
            raise AssemblyError(f"Negative tool call index {delta.index}")
        accumulator = self._calls.get(delta.index)
        if accumulator is None:
            accumulator = _ToolCallAccumulator(index=delta.index)
            self._calls[delta.index] = accumulator
        if delta.id is not None:
            if accumulator.id is not None and accumulator.id != delta.id:
                raise AssemblyError(
                    f"Tool call index {delta.index} changed id from {accumulator.id!r} to {delta.id!r}"
                )
            owner = self._ids.get(delta.id)
            if owner is not None and owner != delta.index:
                raise AssemblyError(f"Tool call id {delta.id!r} reused by indices {owner} and {delta.index}")
            accumulator.id = delta.id
            self._ids[delta.id] = delta.index
        if delta.name is not None:
            if accumulator.name is not None and accumulator.name != delta.name:
                raise AssemblyError(
                    f"Tool call index {delta.index} renamed from {accumulator.name!r} to {delta.name!r}"
                )
            accumulator.name = delta.name
        if delta.arguments:
            accumulator.argument_parts.append(delta.arguments)


__all__ = ["AssembledTurn", "AssemblyError", "ResponseAssembler"]
