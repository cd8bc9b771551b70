"""Session-related commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from codeloop.cli.types import CommandResponse, CommandRouter, SlashCommand
from codeloop.session import SessionLoadError
from codeloop.session.manager import MAX_SESSIONS

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.cli.app import CLIApp

USAGE = "Usage: /session list | /session export <id> | /session info"


def register(app: CLIApp, router: CommandRouter) -> None:
    """Register the /session command."""

    def handle(app: CLIApp, args: list[str]) -> CommandResponse:
        if not args:
            return CommandResponse(messages=[("system", USAGE)])

        command, *rest = args
        command = command.lower()
        if command == "list":
            sessions = app.session_manager.list_sessions()
            if not sessions:
                return CommandResponse(messages=[("system", "No saved sessions.")])
            lines = []
            for metadata in sessions:
                marker = "*" if metadata.session_id == app.session_context.session_id else " "
                updated = metadata.updated_at.strftime("%Y-%m-%d %H:%M")
                last = metadata.last_termination or "-"
                lines.append(
                    f"{marker} {metadata.session_id}  {updated}  tasks={metadata.task_count}  last={last}"
                )
            return CommandResponse(messages=[("system", "\n".join(lines))])

        if command == "info":
            metadata = app.session_context.metadata
            lines = [
                f"Session: {metadata.session_id}",
                f"Model: {metadata.model or '-'}",
                f"Workspace: {metadata.workspace or '-'}",
                f"Tasks: {metadata.task_count}",
                f"Steps: {metadata.step_count}",
                f"Last termination: {metadata.last_termination or '-'}",
                f"Tokens: {metadata.input_tokens} in, {metadata.output_tokens} out",
                f"Messages: {len(app.session_context.transcript)}",
            ]
            return CommandResponse(messages=[("system", "\n".join(lines))])

        if command == "export":
            if not rest:
                return CommandResponse(messages=[("system", "Usage: /session export <id>")])
            session_id = rest[0]
            try:
                export_data = app.session_manager.export_session(session_id, redact_secrets=True)
            except FileNotFoundError:
                message = (
                    f"Session '{session_id}' not found. Only the most recent {MAX_SESSIONS} sessions are retained."
                )
                app.log_event("system", message, severity="warning")
                return CommandResponse(messages=[("system", message)])
            except SessionLoadError as exc:
                app.log_event("system", f"Failed to load session {session_id}: {exc}", severity="error")
                return CommandResponse(messages=[("system", f"Failed to load session: {exc}")])
            app.log_event("system", f"Exported session {session_id}")
            return CommandResponse(messages=[("system", json.dumps(export_data, indent=2))])

        return CommandResponse(messages=[("system", f"Unknown session command. {USAGE}")])

    router.register(SlashCommand("session", handle, "Session utilities"))


__all__ = ["register"]
