"""Builtin CLI command registration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codeloop.cli.commands import logs, mode, session, toolkits
from codeloop.cli.commands import help as help_cmd
from codeloop.cli.commands import quit as quit_cmd
from codeloop.cli.types import CommandRouter

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp


def register_builtin_commands(app: CLIApp, router: CommandRouter) -> None:
    """Attach all builtin slash commands to the router."""

    help_cmd.register(app, router)
    quit_cmd.register(app, router)
    mode.register(app, router)
    toolkits.register(app, router)
    session.register(app, router)
    logs.register(app, router)


__all__ = ["register_builtin_commands"]
