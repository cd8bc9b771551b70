"""Quit command for codeloop CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codeloop.cli.types import CommandResponse, CommandRouter, SlashCommand

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp


def register(_app: CLIApp, router: CommandRouter) -> None:
    """Register the /quit command."""

    def handle(_app: CLIApp, _args: list[str]) -> CommandResponse:
        return CommandResponse(messages=[("system", "Exiting codeloop. Bye!")], continue_loop=False)

    router.register(SlashCommand("quit", handle, "Exit codeloop", aliases=("exit", "q")))


__all__ = ["register"]
