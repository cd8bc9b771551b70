"""CLI package for codeloop."""

from __future__ import annotations

import json
import logging
import os
import sys
from importlib import metadata
from pathlib import Path

import typer

from codeloop.core import ConfigContext, ConfigManager, ConfigurationError
from codeloop.core.config import CONFIG_FILENAME, default_config_dir
from codeloop.core.llm import LLMClient, LLMSettings, OfflineTransport, Transport
from codeloop.core.permissions import SafetyMode
from codeloop.core.tool_registry import Workspace
from codeloop.session import SessionContext, SessionLoadError, SessionManager
from codeloop.session.manager import MAX_SESSIONS

from .app import CLIApp
from .branding import create_semantic_panel, themed_console

app = typer.Typer(invoke_without_command=True, help="codeloop terminal coding agent", no_args_is_help=False)

CLI_CONSOLE = themed_console()


def styled_echo(message: str = "", *, nl: bool = True) -> None:
    """Print using the codeloop themed console."""
    CLI_CONSOLE.print(message, end="" if not nl else "\n")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"", "0", "false", "no"}


def _configure_logging(verbose: bool, log_dir: Path | None) -> None:
    root_logger = logging.getLogger()
    if verbose:
        if not root_logger.handlers:
            logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        root_logger.setLevel(logging.DEBUG)
    else:
        if root_logger.handlers:
            root_logger.setLevel(logging.WARNING)
        else:
            logging.basicConfig(level=logging.WARNING, format="%(message)s")
    if verbose and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / "codeloop.log", encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)
    # Keep HTTP request lines out of the shell unless debugging.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _resolve_project_paths() -> tuple[Path, Path, Path]:
    project_root = Path.cwd()
    project_home = project_root / ".codeloop"
    project_home.mkdir(parents=True, exist_ok=True)
    global_home = default_config_dir()
    global_home.mkdir(parents=True, exist_ok=True)
    return project_root, project_home, global_home


def _build_config_manager(project_home: Path, global_home: Path, config_file: Path | None) -> ConfigManager:
    config_override_path: Path | None = None
    if config_file is not None:
        config_override_path = config_file.expanduser()
        if not config_override_path.exists():
            styled_echo(f"❌ Config file '{config_override_path}' not found.")
            raise typer.Exit(code=1)
        config_override_path = config_override_path.resolve()

    project_config_path: Path | None = None
    if config_override_path is None:
        candidate = project_home / CONFIG_FILENAME
        if candidate.exists():
            project_config_path = candidate

    return ConfigManager(
        config_dir=global_home,
        echo_fn=styled_echo,
        project_config_path=project_config_path,
        override_config_path=config_override_path,
    )


def _prepare_transport(config_context: ConfigContext) -> Transport:
    if config_context.offline:
        return OfflineTransport()
    config = config_context.config
    settings = LLMSettings(
        base_url=config.llm_base_url,
        model=config.llm_model,
        api_key=config_context.llm_api_key,
        timeout_seconds=config.llm_timeout_seconds,
        max_output_tokens=config.llm_max_output_tokens,
    )
    return LLMClient(settings)


def _start_session(
    session_manager: SessionManager,
    session: str | None,
    new_session: bool,
    *,
    model: str,
    workspace: str,
) -> SessionContext:
    resume_id = None if new_session else session
    if resume_id:
        try:
            return session_manager.start(resume_id, model=model)
        except FileNotFoundError:
            styled_echo(f"⚠️  Session '{resume_id}' not found; starting a new session.")
        except SessionLoadError as exc:
            styled_echo(f"⚠️  {exc}. Starting a new session.")
    return session_manager.start(model=model, workspace=workspace)


def _launch_shell(
    verbose: bool,
    session: str | None,
    new_session: bool,
    config_file: Path | None,
    *,
    safety_mode: SafetyMode | None = None,
    max_steps: int | None = None,
    continue_on_deny: bool | None = None,
    api_key: str | None = None,
    offline_mode: bool = False,
    prompt: str | None = None,
) -> None:
    project_root, project_home, global_home = _resolve_project_paths()
    _configure_logging(verbose, log_dir=project_home / "logs")

    config_manager = _build_config_manager(project_home, global_home, config_file)
    overrides = {
        "safety_mode": safety_mode.value if safety_mode is not None else None,
        "max_steps": max_steps,
        "continue_loop_on_deny": continue_on_deny,
    }
    try:
        config_context = config_manager.ensure(
            llm_api_key=api_key,
            offline_mode=offline_mode,
            overrides=overrides,
        )
    except ConfigurationError as exc:
        styled_echo(f"❌ {exc}")
        raise typer.Exit(code=1) from exc

    if config_context.offline:
        cause = "forced" if offline_mode else "no API key"
        styled_echo(f"⚠️  Offline mode ({cause}); replies come from the offline stub.")
    transport = _prepare_transport(config_context)
    config = config_context.config
    workspace = Workspace(
        root=project_root,
        shell_timeout_seconds=config.shell_timeout_seconds,
        web_search_url=config.web_search_url,
        api_key=config_context.llm_api_key,
    )
    session_manager = SessionManager(root=project_home / "sessions")
    session_context = _start_session(
        session_manager,
        session,
        new_session,
        model=config.llm_model,
        workspace=str(workspace.root),
    )

    shell = CLIApp(
        transport=transport,
        config_context=config_context,
        config_manager=config_manager,
        session_context=session_context,
        session_manager=session_manager,
        workspace=workspace,
    )
    try:
        if prompt is not None:
            response = shell.run_task(prompt)
            for role, message in response.messages:
                shell.render_message(role, message)
            result = shell.last_result
            if result is None or not result.ok:
                raise typer.Exit(code=1)
            return
        shell.run()
    finally:
        if isinstance(transport, LLMClient):
            transport.close()
        session_manager.save(session_context)


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),  # noqa: B008
    session: str | None = typer.Option(None, "--session", help="Resume the given session ID"),  # noqa: B008
    new_session: bool = typer.Option(False, "--new-session", help="Start a fresh session"),  # noqa: B008
    config: Path | None = typer.Option(None, "--config", help="Use an alternate config file and skip project overrides"),  # noqa: B008
    safety_mode: SafetyMode | None = typer.Option(None, "--safety-mode", help="ask, always-allow or strict"),  # noqa: B008
    max_steps: int | None = typer.Option(None, "--max-steps", help="Step budget per task (0 for unbounded)"),  # noqa: B008
    continue_on_deny: bool | None = typer.Option(None, "--continue-on-deny/--stop-on-deny", help="Keep going after a repeated denied call"),  # noqa: B008
    api_key: str | None = typer.Option(None, "--api-key", help="Use this API key for the current run without persisting it"),  # noqa: B008
    offline_mode: bool = typer.Option(False, "--offline", help="Force offline stubbed model responses", is_flag=True),  # noqa: B008
    prompt: str | None = typer.Option(None, "--prompt", "-p", help="Run a single task and exit"),  # noqa: B008
) -> None:
    """Launch the codeloop interactive shell."""
    _launch_shell(
        verbose or _env_flag("CODELOOP_DEBUG"),
        session,
        new_session,
        config,
        safety_mode=safety_mode,
        max_steps=max_steps,
        continue_on_deny=continue_on_deny,
        api_key=api_key,
        offline_mode=offline_mode,
        prompt=prompt,
    )


@app.command()
def version() -> None:
    """Show CLI version."""
    try:
        pkg_version = metadata.version("codeloop")
    except metadata.PackageNotFoundError:
        pkg_version = "0.0.0"
    styled_echo(f"codeloop version {pkg_version}")


@app.command()
def sessions() -> None:
    """List saved sessions for the current project."""
    manager = SessionManager(root=Path.cwd() / ".codeloop" / "sessions")
    items = manager.list_sessions()
    if not items:
        styled_echo("No saved sessions.")
        return
    for item in items:
        styled_echo(
            f"{item.session_id}  {item.updated_at:%Y-%m-%d %H:%M}  "
            f"tasks={item.task_count}  last={item.last_termination or '-'}"
        )


@app.command()
def export(
    session_id: str = typer.Argument(..., help="Session to export"),  # noqa: B008
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the export to this file"),  # noqa: B008
) -> None:
    """Export a session transcript as JSON with secrets redacted."""
    manager = SessionManager(root=Path.cwd() / ".codeloop" / "sessions")
    try:
        export_data = manager.export_session(session_id, redact_secrets=True)
    except FileNotFoundError:
        styled_echo(
            f"⚠️ Session '{session_id}' not found. Only the most recent {MAX_SESSIONS} sessions are retained."
        )
        raise typer.Exit(code=1)
    except SessionLoadError as exc:
        styled_echo(f"❌ Failed to load session '{session_id}': {exc}")
        raise typer.Exit(code=1)

    payload = json.dumps(export_data, indent=2)
    if output is None:
        CLI_CONSOLE.print(payload, markup=False, highlight=False)
        return
    destination = output.expanduser()
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(payload)
    try:
        os.chmod(destination, 0o600)
    except PermissionError:
        pass
    CLI_CONSOLE.print(create_semantic_panel(f"Session {session_id} exported to {destination}", panel_type="success"))


def main() -> None:
    """Console script entrypoint."""
    args = sys.argv[1:]
    if not args:
        _launch_shell(_env_flag("CODELOOP_DEBUG"), None, False, None)
        return
    if args[0] in {"--version", "-V"}:
        app(args=["version"])
        return
    if args[0].startswith("-") and args[0] not in {"--help", "-h"}:
        app(args=["run", *args])
        return
    app(args=args)


__all__ = ["CLIApp", "app", "main"]
