"""Offline transport used when no API key is configured."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

from .types import StreamEvent, TextDelta, TurnComplete

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.messages import Message, ToolDefinition


def offline_response(prompt: str) -> str:
    """Return a deterministic stub reply for offline mode."""

    trimmed = prompt.strip()
    if not trimmed:
        return "[offline stub] No prompt provided."
    if len(trimmed) > 160:
        trimmed = f"{trimmed[:157]}…"
    return f"[offline stub] {trimmed}"


class OfflineTransport:
    """Answers every request with a single text turn and never calls tools."""

    def __init__(self) -> None:
        self.calls = 0

    def send(
        self,
        transcript: Sequence[Message],
        tool_catalog: Sequence[ToolDefinition],
        *,
        streaming: bool = True,
        stop_event: object | None = None,
    ) -> Iterator[StreamEvent]:
        self.calls += 1
        prompt = ""
        for message in reversed(transcript):
            if message.role == "user" and message.content:
                prompt = message.content
                break
        yield TextDelta(offline_response(prompt))
        yield TurnComplete("stop")


__all__ = ["OfflineTransport", "offline_response"]
