from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Any

from codeloop.core.tools.base import Tool, ToolInvocationError, Toolkit, ToolOutput, Workspace

logger = logging.getLogger(__name__)

_MAX_PREVIEW_LINES = 40
_POLL_SECONDS = 0.1


def _truncate_preview(text: str, *, max_lines: int = _MAX_PREVIEW_LINES) -> str:
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    truncated = "\n".join(lines[:max_lines])
    remaining = len(lines) - max_lines
    return f"{truncated}\n... ({remaining} more lines truncated)"


def _kill_process_group(process: subprocess.Popen[str]) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:  # pragma: no cover - non-POSIX
            process.kill()
    except ProcessLookupError:
        pass
    process.communicate()


def run_command(
    command: str,
    *,
    cwd: os.PathLike[str] | str,
    timeout: float,
    cancel_event: threading.Event | None = None,
) -> tuple[int, str, str]:
    """Run ``command`` in its own process group, killing the group on timeout or cancel."""
    try:
        process = subprocess.Popen(  # noqa: S602 - commands are approved by the permission gate
            command,
            shell=True,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        raise ToolInvocationError(f"Failed to execute command: {exc}") from exc

    waited = 0.0
    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
            return process.returncode, stdout, stderr
        except subprocess.TimeoutExpired:
            waited += _POLL_SECONDS
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Killing cancelled command: %s", command)
            _kill_process_group(process)
            raise ToolInvocationError("Command cancelled.")
        if waited >= timeout:
            logger.info("Killing command after %.1fs timeout: %s", timeout, command)
            _kill_process_group(process)
            raise ToolInvocationError(f"Command timed out after {timeout:g} seconds.")


def _command_tool(workspace: Workspace) -> Tool:
    def handler(payload: dict[str, Any], cancel_event: threading.Event | None = None) -> ToolOutput:
        command = payload.get("command")
        if not command or not isinstance(command, str):
            raise ToolInvocationError("Payload must include 'command' as a string.")

        timeout = payload.get("timeout")
        try:
            timeout_value = float(timeout) if timeout is not None else workspace.shell_timeout_seconds
        except (TypeError, ValueError):
            raise ToolInvocationError("Timeout must be numeric if provided.") from None
        timeout_value = min(timeout_value, max(workspace.shell_timeout_seconds, 1.0) * 10)

        returncode, stdout, stderr = run_command(
            command, cwd=workspace.root, timeout=timeout_value, cancel_event=cancel_event
        )
        stdout = stdout.strip()
        stderr = stderr.strip()
        content_lines = [
            f"$ {command}",
            f"(exit code {returncode})",
            "",
            _truncate_preview(stdout) if stdout else "(no stdout)",
        ]
        if stderr:
            content_lines.extend(["", "stderr:", _truncate_preview(stderr)])

        return ToolOutput(
            content=workspace.clip("\n".join(content_lines)),
            summary=f"Command exited with {returncode}",
            data={
                "command": command,
                "returncode": returncode,
            },
        )

    def preview(payload: dict[str, Any]) -> str:
        command = payload.get("command")
        return f"$ {command}\n(cwd: {workspace.root})"

    return Tool(
        name="run_shell_command",
        description="Run a shell command in the workspace root and capture its output.",
        input_schema={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to execute.",
                },
                "timeout": {
                    "type": "number",
                    "description": "Optional timeout in seconds.",
                },
            },
            "required": ["command"],
        },
        handler=handler,
        mutating=True,
        preview=preview,
        cancellable=True,
    )


def command_toolkit(workspace: Workspace) -> Toolkit:
    return Toolkit(
        name="codeloop.command",
        version="1.0.0",
        description="Shell command execution inside the workspace.",
        tools=[_command_tool(workspace)],
    )


__all__ = ["command_toolkit", "run_command"]
