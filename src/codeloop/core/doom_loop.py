"""Detection of repeated, denied tool invocations."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque

logger = logging.getLogger(__name__)

DOOM_LOOP_WINDOW = 3


@dataclass(slots=True)
class _Attempt:
    name: str
    key: str
    denied: bool = False


def normalize_arguments(arguments_text: str) -> str:
    """Return a canonical form of tool arguments for comparison.

    JSON arguments are re-serialised with sorted keys and compact separators so
    formatting differences do not hide a repeat. Anything else compares
    verbatim.
    """
    try:
        parsed = json.loads(arguments_text)
    except (json.JSONDecodeError, TypeError):
        return arguments_text
    return json.dumps(parsed, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class DoomLoopDetector:
    """Flags three identical consecutive invocations when the last was denied."""

    def __init__(self, window: int = DOOM_LOOP_WINDOW) -> None:
        self.window_size = max(window, 2)
        self._window: Deque[_Attempt] = deque(maxlen=self.window_size)

    def observe(self, name: str, arguments_text: str) -> bool:
        """Record an attempted invocation; return ``True`` when it completes a doom loop."""
        key = normalize_arguments(arguments_text)
        previous = list(self._window)
        streak = self.window_size - 1
        matches = len(previous) >= streak and all(
            attempt.name == name and attempt.key == key for attempt in previous[-streak:]
        )
        triggered = matches and previous[-1].denied
        if previous and not (previous[-1].name == name and previous[-1].key == key):
            self._window.clear()
        self._window.append(_Attempt(name=name, key=key))
        if triggered:
            logger.warning("Doom loop detected for tool '%s'", name)
        return triggered

    def record_denial(self) -> None:
        """Mark the most recent invocation as denied by the permission gate."""
        if self._window:
            self._window[-1].denied = True

    def reset(self) -> None:
        self._window.clear()

    def recent(self) -> list[tuple[str, str]]:
        return [(attempt.name, attempt.key) for attempt in self._window]


__all__ = ["DOOM_LOOP_WINDOW", "DoomLoopDetector", "normalize_arguments"]
