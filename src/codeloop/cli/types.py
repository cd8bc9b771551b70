"""Slash command plumbing for the interactive shell."""

from __future__ import annotations

import difflib
import logging
import shlex
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp


logger = logging.getLogger(__name__)

# (role, text) pairs; roles are "agent", "system", "warning", "error" or "success".
RenderedMessage = tuple[str, str]


@dataclass
class CommandResponse:
    """What the shell should print after handling one line, and whether to keep going."""

    messages: list[RenderedMessage] = field(default_factory=list)
    continue_loop: bool = True


CommandHandler = Callable[["CLIApp", list[str]], CommandResponse]


@dataclass(slots=True)
class SlashCommand:
    name: str
    handler: CommandHandler
    help_text: str
    aliases: tuple[str, ...] = ()


class CommandRouter:
    """Resolves ``/name args...`` lines to registered commands."""

    def __init__(self) -> None:
        self._commands: dict[str, SlashCommand] = {}
        self._aliases: dict[str, str] = {}

    def register(self, command: SlashCommand) -> None:
        logger.debug("Registering /%s", command.name)
        self._commands[command.name] = command
        for alias in command.aliases:
            self._aliases[alias] = command.name

    def available_commands(self) -> Iterable[SlashCommand]:
        return self._commands.values()

    def resolve(self, name: str) -> SlashCommand | None:
        key = name.lower()
        return self._commands.get(self._aliases.get(key, key))

    def dispatch(self, app: CLIApp, raw_line: str) -> CommandResponse:
        try:
            parts = shlex.split(raw_line)
        except ValueError as exc:
            return CommandResponse(messages=[("system", f"Could not parse command: {exc}.")])
        if not parts:
            return CommandResponse()
        name, *args = parts
        command = self.resolve(name)
        if command is None:
            logger.info("Unknown command: /%s", name)
            message = f"Unknown command '/{name}'."
            close = difflib.get_close_matches(name.lower(), list(self._commands), n=1)
            if close:
                message += f" Did you mean /{close[0]}?"
            return CommandResponse(messages=[("system", f"{message} Type /help for a list of commands.")])
        logger.debug("Dispatching /%s with args %s", command.name, args)
        return command.handler(app, args)


__all__ = ["CommandHandler", "CommandResponse", "CommandRouter", "RenderedMessage", "SlashCommand"]
