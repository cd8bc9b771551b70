"""Interactive permission prompts for mutating tools."""

from __future__ import annotations

import logging
from typing import Callable

from rich.console import Console

from codeloop.cli.branding import create_preview_panel
from codeloop.core.permissions import PermissionDecision

logger = logging.getLogger(__name__)

_ANSWERS = {
    "y": PermissionDecision.ALLOW_ONCE,
    "yes": PermissionDecision.ALLOW_ONCE,
    "a": PermissionDecision.ALLOW_FOR_SESSION,
    "always": PermissionDecision.ALLOW_FOR_SESSION,
    "n": PermissionDecision.DENY,
    "no": PermissionDecision.DENY,
    "": PermissionDecision.DENY,
}
MAX_PROMPT_ATTEMPTS = 3


class ConsolePermissionPrompter:
    """Shows the preview and asks ``[y]es once / [a]lways this session / [n]o``."""

    def __init__(
        self,
        console: Console,
        input_fn: Callable[[str], str] | None = None,
    ) -> None:
        self.console = console
        self._input = input_fn or console.input

    def request_confirmation(
        self,
        tool_name: str,
        target_description: str,
        preview_text: str,
    ) -> PermissionDecision:
        self.console.print(create_preview_panel(tool_name, target_description, preview_text))
        for _ in range(MAX_PROMPT_ATTEMPTS):
            try:
                answer = self._input("Allow? [y]es once / [a]lways this session / [n]o: ")
            except EOFError:
                logger.info("Permission prompt closed; denying %s", tool_name)
                return PermissionDecision.DENY
            decision = _ANSWERS.get(answer.strip().lower())
            if decision is not None:
                return decision
            self.console.print("Please answer y, a or n.")
        return PermissionDecision.DENY


__all__ = ["ConsolePermissionPrompter"]
