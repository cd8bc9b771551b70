"""Logs command for viewing recent loop activity."""

from __future__ import annotations

from typing import TYPE_CHECKING

from codeloop.cli.types import CommandResponse, CommandRouter, SlashCommand
from codeloop.core.logs import VALID_CATEGORIES

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp

DEFAULT_LOG_LIMIT = 20


def register(app: CLIApp, router: CommandRouter) -> None:
    """Register the /logs command."""

    def handle(app: CLIApp, args: list[str]) -> CommandResponse:
        category_filter: str | None = None
        limit = DEFAULT_LOG_LIMIT
        for arg in args:
            if arg.isdigit():
                limit = max(int(arg), 1)
                continue
            candidate = arg.lower()
            if candidate not in VALID_CATEGORIES:
                allowed = ", ".join(sorted(VALID_CATEGORIES))
                return CommandResponse(
                    messages=[("system", f"Unknown log category '{candidate}'. Choose from: {allowed}.")],
                )
            category_filter = candidate

        entries = app.log_buffer.recent(category=category_filter, limit=limit)
        if not entries:
            suffix = f" for '{category_filter}'" if category_filter else ""
            return CommandResponse(messages=[("system", f"No log entries{suffix} yet.")])

        lines = [
            f"{entry.timestamp:%H:%M:%S} {entry.category:<10} {entry.severity.upper():<7} {entry.message}"
            for entry in entries
        ]
        counts = app.log_buffer.severity_counts()
        if counts["warning"] or counts["error"]:
            lines.append(f"({counts['warning']} warning(s), {counts['error']} error(s) in buffer)")
        return CommandResponse(messages=[("system", "\n".join(lines))])

    router.register(SlashCommand("logs", handle, "Show recent activity: /logs [category] [limit]"))


__all__ = ["register"]
