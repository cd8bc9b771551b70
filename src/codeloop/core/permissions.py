"""Permission policy for tools that change external state."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

STRICT_DENIAL_MESSAGE = "denied by strict safety mode"
USER_DENIAL_MESSAGE = "denied by user"
NO_PROMPTER_DENIAL_MESSAGE = "denied: no permission prompter is available"


class SafetyMode(str, Enum):
    ASK = "ask"
    ALWAYS_ALLOW = "always-allow"
    STRICT = "strict"


class PermissionDecision(str, Enum):
    ALLOW_ONCE = "allow-once"
    ALLOW_FOR_SESSION = "allow-for-session"
    DENY = "deny"


class PermissionPrompter(Protocol):
    """Collaborator that asks a human to confirm a mutating action."""

    def request_confirmation(
        self,
        tool_name: str,
        target_description: str,
        preview_text: str,
    ) -> PermissionDecision:
        ...


@dataclass(frozen=True, slots=True)
class PermissionScope:
    """Approval scope: a tool, optionally narrowed to one target."""

    tool_name: str
    target: str | None = None

    def describe(self) -> str:
        return f"{self.tool_name} {self.target}" if self.target else self.tool_name


@dataclass(frozen=True, slots=True)
class GateVerdict:
    allowed: bool
    message: str | None = None
    prompted: bool = False
    cached: bool = False


class PermissionGate:
    """Applies the configured safety mode to mutating tool invocations.

    Session approvals are cached per :class:`PermissionScope` and live as long
    as the gate. The shell keeps one gate per session so approvals carry over
    between tasks.
    """

    def __init__(
        self,
        mode: SafetyMode | str = SafetyMode.ASK,
        prompter: PermissionPrompter | None = None,
    ) -> None:
        self._mode = SafetyMode(mode)
        self._prompter = prompter
        self._approved: set[PermissionScope] = set()
        self._lock = threading.Lock()

    @property
    def mode(self) -> SafetyMode:
        return self._mode

    @mode.setter
    def mode(self, value: SafetyMode | str) -> None:
        self._mode = SafetyMode(value)

    @property
    def prompter(self) -> PermissionPrompter | None:
        return self._prompter

    def check(
        self,
        scope: PermissionScope,
        target_description: str,
        preview: str | Callable[[], str] = "",
    ) -> GateVerdict:
        """Return whether the invocation described by ``scope`` may proceed.

        ``preview`` may be a callable so that expensive diffs are only built
        when a prompt is actually shown.
        """
        if self._mode is SafetyMode.STRICT:
            logger.info("Strict mode denied %s", scope.describe())
            return GateVerdict(allowed=False, message=STRICT_DENIAL_MESSAGE)
        if self._mode is SafetyMode.ALWAYS_ALLOW:
            return GateVerdict(allowed=True)

        with self._lock:
            if scope in self._approved:
                logger.debug("Session approval reused for %s", scope.describe())
                return GateVerdict(allowed=True, cached=True)

        if self._prompter is None:
            logger.warning("No permission prompter configured; denying %s", scope.describe())
            return GateVerdict(allowed=False, message=NO_PROMPTER_DENIAL_MESSAGE)

        try:
            preview_text = preview() if callable(preview) else preview
            decision = PermissionDecision(
                self._prompter.request_confirmation(scope.tool_name, target_description, preview_text)
            )
        except EOFError:
            logger.info("Permission prompt closed; denying %s", scope.describe())
            decision = PermissionDecision.DENY
        except Exception as exc:  # noqa: BLE001
            logger.warning("Permission prompt failed for %s: %s", scope.describe(), exc, exc_info=True)
            decision = PermissionDecision.DENY

        if decision is PermissionDecision.DENY:
            return GateVerdict(allowed=False, message=USER_DENIAL_MESSAGE, prompted=True)
        if decision is PermissionDecision.ALLOW_FOR_SESSION:
            with self._lock:
                self._approved.add(scope)
        return GateVerdict(allowed=True, prompted=True)

    def session_approvals(self) -> frozenset[PermissionScope]:
        with self._lock:
            return frozenset(self._approved)

    def clear(self) -> None:
        with self._lock:
            self._approved.clear()


__all__ = [
    "GateVerdict",
    "NO_PROMPTER_DENIAL_MESSAGE",
    "PermissionDecision",
    "PermissionGate",
    "PermissionPrompter",
    "PermissionScope",
    "STRICT_DENIAL_MESSAGE",
    "SafetyMode",
    "USER_DENIAL_MESSAGE",
]
