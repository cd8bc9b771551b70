"""Toolkit listing commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codeloop.cli.types import CommandResponse, CommandRouter, SlashCommand

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp


def register(app: CLIApp, router: CommandRouter) -> None:
    """Register the /tools command."""

    def handle(app: CLIApp, args: list[str]) -> CommandResponse:
        toolkits = app.tool_registry.available_toolkits()
        if not toolkits:
            return CommandResponse(messages=[("system", "No tools registered.")])
        if args:
            toolkit = toolkits.get(args[0])
            if toolkit is None:
                return CommandResponse(messages=[("system", f"Toolkit '{args[0]}' not found.")])
            selected = [toolkit]
        else:
            selected = [toolkits[name] for name in sorted(toolkits)]

        lines: list[str] = []
        for toolkit in selected:
            lines.append(f"{toolkit.name} v{toolkit.version}: {toolkit.description}")
            for tool in toolkit.tools:
                flag = " [asks]" if tool.mutating else ""
                lines.append(f"  {tool.name}{flag}\t{tool.description}")
        return CommandResponse(messages=[("system", "\n".join(lines))])

    router.register(SlashCommand("tools", handle, "List toolkits and their tools", aliases=("toolkits",)))


__all__ = ["register"]
