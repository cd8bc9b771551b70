"""Help command for codeloop CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codeloop.cli.types import CommandResponse, CommandRouter, SlashCommand

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp


def register(app: CLIApp, router: CommandRouter) -> None:
    """Register the /help command."""

    def handle(_app: CLIApp, _args: list[str]) -> CommandResponse:
        commands = sorted(router.available_commands(), key=lambda cmd: cmd.name)
        lines = ["Available commands:"]
        for command in commands:
            aliases = "".join(f", /{alias}" for alias in command.aliases)
            lines.append(f"/{command.name}{aliases}\t{command.help_text}")
        lines.append("Anything else is sent to the agent as a task.")
        return CommandResponse(messages=[("system", "\n".join(lines))])

    router.register(SlashCommand("help", handle, "Show available commands", aliases=("?",)))


__all__ = ["register"]
