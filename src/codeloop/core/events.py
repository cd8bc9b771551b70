"""Observer interfaces for the agent loop."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.agent_loop import LoopStatus
    from codeloop.core.messages import Message, ToolResult

logger = logging.getLogger(__name__)


class PersistenceSink(Protocol):
    """Receives every finalized transcript message."""

    def on_message_appended(self, session_id: str, message: Message) -> None:
        ...


class LoopObserver:
    """Base class for loop listeners; override the hooks you need.

    Observers are notified on the loop thread and only ever see finalized,
    immutable messages.
    """

    def on_message_appended(self, session_id: str, message: Message) -> None:
        pass

    def on_status_changed(self, session_id: str, status: LoopStatus) -> None:
        pass

    def on_tool_result(self, session_id: str, result: ToolResult) -> None:
        """Called after the result message for ``result`` has been appended."""

    def on_text_delta(self, session_id: str, text: str) -> None:
        pass

    def on_retry(self, session_id: str, attempt: int, delay: float, error: Exception) -> None:
        pass


class ObserverHub:
    """Fans loop events out to observers and persistence sinks.

    Listener failures are logged and swallowed so they never affect the loop.
    """

    def __init__(
        self,
        observers: Iterable[LoopObserver] = (),
        sinks: Iterable[PersistenceSink] = (),
    ) -> None:
        self.observers = list(observers)
        self.sinks = list(sinks)

    def message_appended(self, session_id: str, message: Message) -> None:
        for sink in self.sinks:
            try:
                sink.on_message_appended(session_id, message)
            except Exception as exc:  # noqa: BLE001
                logger.error("Persistence sink %r failed: %s", sink, exc)
        for observer in self.observers:
            try:
                observer.on_message_appended(session_id, message)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Observer %r failed on message: %s", observer, exc)

    def status_changed(self, session_id: str, status: LoopStatus) -> None:
        for observer in self.observers:
            try:
                observer.on_status_changed(session_id, status)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Observer %r failed on status change: %s", observer, exc)

    def tool_result(self, session_id: str, result: ToolResult) -> None:
        for observer in self.observers:
            try:
                observer.on_tool_result(session_id, result)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Observer %r failed on tool result: %s", observer, exc)

    def text_delta(self, session_id: str, text: str) -> None:
        for observer in self.observers:
            try:
                observer.on_text_delta(session_id, text)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Observer %r failed on text delta: %s", observer, exc)

    def retry(self, session_id: str, attempt: int, delay: float, error: Exception) -> None:
        for observer in self.observers:
            try:
                observer.on_retry(session_id, attempt, delay, error)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Observer %r failed on retry: %s", observer, exc)


__all__ = ["LoopObserver", "ObserverHub", "PersistenceSink"]
