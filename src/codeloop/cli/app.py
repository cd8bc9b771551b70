"""Interactive CLI shell for codeloop."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.text import Text

from codeloop.cli.branding import (
    CODELOOP_THEME,
    create_chat_panel,
    create_semantic_panel,
    render_banner,
    themed_console,
)
from codeloop.cli.commands import register_builtin_commands
from codeloop.cli.permission_prompt import ConsolePermissionPrompter
from codeloop.cli.types import CommandResponse, CommandRouter
from codeloop.core import ConfigContext, ConfigManager
from codeloop.core.agent_loop import (
    AgentLoop,
    AgentLoopError,
    AgentRunResult,
    AgentState,
    LoopSettings,
    LoopStatus,
    TerminationReason,
    build_system_prompt,
    sanitize_history,
)
from codeloop.core.config import CodeloopConfig
from codeloop.core.events import LoopObserver
from codeloop.core.instructions import collect_instructions
from codeloop.core.llm import OfflineTransport, Transport
from codeloop.core.logs import LogBuffer, LogBufferHandler, LogEntry
from codeloop.core.messages import Message, ToolResult
from codeloop.core.permissions import PermissionGate, PermissionPrompter, SafetyMode
from codeloop.core.tool_registry import ToolRegistry, Workspace, build_default_registry
from codeloop.session import SessionContext, SessionManager, SessionPersistenceSink

logger = logging.getLogger(__name__)

_TERMINATION_PANELS = {
    TerminationReason.FORCED_FINAL: ("warning", "Step budget reached"),
    TerminationReason.DOOM_LOOP: ("error", "Stopped: repeated denied tool call"),
    TerminationReason.PROTOCOL_ERROR: ("error", "Stopped: malformed model response"),
    TerminationReason.TRANSPORT_FATAL: ("error", "Stopped: model request failed"),
    TerminationReason.TRANSPORT_EXHAUSTED: ("error", "Stopped: model unreachable after retries"),
    TerminationReason.CANCELLED: ("warning", "Cancelled"),
}
_ARGUMENT_PREVIEW_CHARS = 120


class _ShellObserver(LoopObserver):
    """Mirrors loop activity to the console and the shell's log buffer."""

    def __init__(self, app: CLIApp) -> None:
        self._app = app

    def on_message_appended(self, session_id: str, message: Message) -> None:
        if message.role == "assistant" and message.tool_calls:
            for call in message.tool_calls:
                arguments = call.arguments_text.strip()
                if len(arguments) > _ARGUMENT_PREVIEW_CHARS:
                    arguments = f"{arguments[:_ARGUMENT_PREVIEW_CHARS]}…"
                self._app.console.print(
                    Text(f"→ {call.name} {arguments}", style="codeloop.text.secondary")
                )
                self._app.log_event("tool", f"{call.name} requested ({call.id})")

    def on_tool_result(self, session_id: str, result: ToolResult) -> None:
        text = result.output_text.strip()
        first_line = text.splitlines()[0] if text else ""
        style = "codeloop.tool.error" if result.is_error else "codeloop.tool.ok"
        marker = "✗" if result.is_error else "✓"
        self._app.console.print(Text(f"  {marker} {first_line[:160]}", style=style))
        self._app.log_event(
            "tool",
            f"{result.tool_call_id}: {first_line[:200]}",
            severity="warning" if result.is_error else "info",
        )

    def on_status_changed(self, session_id: str, status: LoopStatus) -> None:
        if status in (LoopStatus.FINISHED, LoopStatus.ABORTED):
            self._app.log_event("agent", f"Loop {status.value}")

    def on_retry(self, session_id: str, attempt: int, delay: float, error: Exception) -> None:
        self._app.console.print(
            Text(f"Model request failed ({error}); retrying in {delay:.1f}s", style="codeloop.warning.text")
        )


class CLIApp:
    """Interactive shell that runs one agent loop per user task."""

    def __init__(
        self,
        console: Console | None = None,
        history_path: Path | None = None,
        transport: Transport | None = None,
        config_context: ConfigContext | None = None,
        config_manager: ConfigManager | None = None,
        session_context: SessionContext | None = None,
        session_manager: SessionManager | None = None,
        tool_registry: ToolRegistry | None = None,
        workspace: Workspace | None = None,
        prompter: PermissionPrompter | None = None,
    ) -> None:
        base_console = console or CLIApp._default_console()
        if console is not None:
            base_console.push_theme(CODELOOP_THEME)
        self.console = base_console
        self.config_context = config_context
        self.config_manager = config_manager
        self.config: CodeloopConfig = config_context.config if config_context else CodeloopConfig()
        api_key = config_context.llm_api_key if config_context else None
        self.workspace = workspace or Workspace(
            root=Path.cwd(),
            shell_timeout_seconds=self.config.shell_timeout_seconds,
            web_search_url=self.config.web_search_url,
            api_key=api_key,
        )
        self.tool_registry = tool_registry or build_default_registry(self.workspace)
        self.transport: Transport = transport or OfflineTransport()
        self.prompter = prompter or ConsolePermissionPrompter(self.console)
        self.gate = PermissionGate(self.config.safety_mode, self.prompter)
        self.session_manager = session_manager or SessionManager()
        self.session_context = session_context or self.session_manager.start(
            model=self.config.llm_model,
            workspace=str(self.workspace.root),
        )
        self.log_buffer = LogBuffer()
        self.command_router = CommandRouter()
        register_builtin_commands(self, self.command_router)
        self._history_path = history_path or (
            self.session_manager.root / self.session_context.session_id / "history"
        )
        self._prompt_session: PromptSession | None = None
        self._active_loop: AgentLoop | None = None
        self._awaiting_ctrl_c_confirm = False
        self.last_result: AgentRunResult | None = None
        self.log_event(
            "system",
            f"Session {self.session_context.session_id} initialised "
            f"(model={self.config.llm_model}, mode={self.gate.mode.value})",
        )
        logger.debug(
            "CLIApp initialized with history file %s for session %s",
            self._history_path,
            self.session_context.session_id,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(self) -> None:
        """Start the interactive REPL."""
        render_banner(self.console)
        offline = self.config_context is None or self.config_context.offline
        lines = [
            f"Session: {self.session_context.session_id}",
            f"Workspace: {self.workspace.root}",
            f"Model: {'offline stub' if offline else self.config.llm_model}",
            f"Safety mode: {self.gate.mode.value}",
            "Type /help for commands, Ctrl-C twice to exit.",
        ]
        self.console.print(create_semantic_panel("\n".join(lines), title="codeloop"))
        self.console.print()
        with patch_stdout(raw=True):
            while True:
                try:
                    user_input = self.prompt_session.prompt("➤ ")
                    self._awaiting_ctrl_c_confirm = False
                except KeyboardInterrupt:
                    if self._awaiting_ctrl_c_confirm:
                        self.console.print("Exiting codeloop. Bye!")
                        break
                    self._awaiting_ctrl_c_confirm = True
                    logger.debug("KeyboardInterrupt detected; awaiting confirmation")
                    self.console.print("Press Ctrl-C again to exit codeloop.")
                    continue
                except EOFError:
                    self.console.print("Exiting codeloop. Bye!")
                    break

                response = self.handle_line(user_input)
                for role, message in response.messages:
                    self.render_message(role, message)

                if not response.continue_loop:
                    break

        self._persist()

    def handle_line(self, raw_line: str) -> CommandResponse:
        """Handle a single line of user input (used by tests and run loop)."""
        raw_line = raw_line.rstrip()
        if not raw_line:
            return CommandResponse(messages=[])

        if raw_line.startswith("/"):
            logger.debug("Processing slash command: %s", raw_line)
            return self.command_router.dispatch(self, raw_line[1:])
        logger.debug("Routing task to the agent loop")
        return self.run_task(raw_line)

    def run_task(self, task: str) -> CommandResponse:
        """Run ``task`` through a fresh agent loop seeded with the session history."""
        context = self.session_context
        loop = AgentLoop(
            self.transport,
            self.tool_registry,
            settings=LoopSettings.from_config(self.config),
            state=AgentState(session_id=context.session_id),
            system_prompt=build_system_prompt(
                (definition.name for definition in self.tool_registry.tool_catalog()),
                str(self.workspace.root),
                self._instructions(),
            ),
            history=sanitize_history(context.transcript),
            gate=self.gate,
            observers=[_ShellObserver(self)],
            sinks=[SessionPersistenceSink(self.session_manager, context)],
        )
        self._active_loop = loop
        self.log_event("agent", f"Task started: {task[:80]}")
        package_logger = logging.getLogger("codeloop")
        bridge = LogBufferHandler(self.log_buffer)
        package_logger.addHandler(bridge)
        try:
            result = loop.run(task)
        except AgentLoopError as exc:
            logger.error("Agent loop error: %s", exc)
            return CommandResponse(messages=[("system", f"Agent loop error: {exc}")])
        finally:
            package_logger.removeHandler(bridge)
            self._active_loop = None

        self.last_result = result
        metadata = context.metadata
        metadata.task_count += 1
        metadata.step_count += result.step_count
        metadata.last_termination = result.reason.value
        metadata.input_tokens += result.usage.input_tokens
        metadata.output_tokens += result.usage.output_tokens
        self._persist()
        severity = "info" if result.ok else "warning"
        self.log_event(
            "agent",
            f"Task ended: {result.reason.value} after {result.step_count} step(s)",
            severity=severity,
        )
        return self._result_response(result)

    def _instructions(self) -> str | None:
        if not self.config.load_instructions:
            return None
        global_dir = self.config_manager.config_dir if self.config_manager else None
        return collect_instructions(
            self.workspace.root,
            global_dir=global_dir,
            extra_paths=self.config.instructions,
        )

    def set_safety_mode(self, mode: SafetyMode | str) -> None:
        self.gate.mode = SafetyMode(mode)
        self.config = self.config.model_copy(update={"safety_mode": self.gate.mode})
        self.log_event("permission", f"Safety mode set to {self.gate.mode.value}")

    def cancel(self) -> None:
        loop = self._active_loop
        if loop is not None:
            loop.cancel()

    def log_event(
        self, category: str, message: str, *, severity: str = "info"
    ) -> LogEntry:
        """Record an operational event in the shared log buffer."""
        return self.log_buffer.record(category, message, severity=severity)

    @property
    def prompt_session(self) -> PromptSession:
        if self._prompt_session is None:
            self._history_path.parent.mkdir(parents=True, exist_ok=True)
            self._prompt_session = PromptSession(history=FileHistory(str(self._history_path)))
        return self._prompt_session

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    def _result_response(self, result: AgentRunResult) -> CommandResponse:
        messages: list[tuple[str, str]] = []
        if result.reason is TerminationReason.COMPLETED:
            if result.final_text:
                messages.append(("agent", result.final_text))
            if result.truncated:
                messages.append(("warning", "The answer was cut off by the model's output limit."))
            return CommandResponse(messages=messages)

        panel_type, title = _TERMINATION_PANELS[result.reason]
        if result.final_text:
            messages.append(("agent", result.final_text))
        details = [f"{title} after {result.step_count} step(s)."]
        if result.error:
            details.append(result.error)
        if result.final_text is None and result.last_text:
            details.append(f"Last model output:\n{result.last_text}")
        messages.append((panel_type, "\n".join(details)))
        return CommandResponse(messages=messages)

    def render_message(self, role: str, message: str) -> None:
        if role in ("warning", "error", "success"):
            self.console.print(create_semantic_panel(message, panel_type=role))
            return
        use_markdown = role == "agent" and ("```" in message or "**" in message or "`" in message)
        self.console.print(create_chat_panel(role, message, use_markdown=use_markdown))

    def _persist(self) -> None:
        try:
            self.session_manager.save(self.session_context)
        except OSError as exc:
            logger.error("Failed to save session %s: %s", self.session_context.session_id, exc)
            self.log_event("system", f"Failed to save session: {exc}", severity="error")

    @staticmethod
    def _default_console() -> Console:
        no_color = (
            os.environ.get("CODELOOP_NO_COLOR") is not None
            or os.environ.get("NO_COLOR") is not None
        )
        if os.environ.get("CODELOOP_FORCE_COLOR"):
            return themed_console(force_terminal=True)
        if no_color or not sys.stdout.isatty():
            return themed_console(no_color=True, force_terminal=False, color_system=None)
        return themed_console()


__all__ = ["CLIApp"]
