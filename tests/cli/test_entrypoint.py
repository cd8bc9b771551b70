from __future__ import annotations

import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

import codeloop.cli as cli_mod

runner = CliRunner()


def test_version_command_runs() -> None:
    result = runner.invoke(cli_mod.app, ["version"])
    assert result.exit_code == 0
    assert "codeloop version" in result.stdout


def test_main_launches_shell_without_command(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def fake_launch(verbose: bool, session: str | None, new_session: bool, config_file: Path | None, **kwargs: object) -> None:
        called["args"] = (verbose, session, new_session, config_file)

    monkeypatch.setenv("CODELOOP_DEBUG", "1")
    monkeypatch.setattr(cli_mod, "_launch_shell", fake_launch)
    monkeypatch.setattr(sys, "argv", ["codeloop"])

    cli_mod.main()

    assert called["args"] == (True, None, False, None)


def test_main_routes_run_options(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []

    def fake_launch(verbose: bool, session: str | None, new_session: bool, config_file: Path | None, **kwargs: object) -> None:
        calls.append({"verbose": verbose, "session": session, **kwargs})

    monkeypatch.delenv("CODELOOP_DEBUG", raising=False)
    monkeypatch.setattr(cli_mod, "_launch_shell", fake_launch)
    monkeypatch.setattr(
        sys,
        "argv",
        ["codeloop", "--session", "abc123", "--safety-mode", "strict", "--max-steps", "7", "--stop-on-deny"],
    )

    with pytest.raises(SystemExit) as excinfo:
        cli_mod.main()

    assert excinfo.value.code == 0
    assert len(calls) == 1
    call = calls[0]
    assert call["verbose"] is False
    assert call["session"] == "abc123"
    assert call["safety_mode"] is cli_mod.SafetyMode.STRICT
    assert call["max_steps"] == 7
    assert call["continue_on_deny"] is False


def test_sessions_command_lists_saved_sessions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from codeloop.session import SessionManager

    monkeypatch.chdir(tmp_path)
    context = SessionManager(root=tmp_path / ".codeloop" / "sessions").start()

    result = runner.invoke(cli_mod.app, ["sessions"])

    assert result.exit_code == 0
    assert context.session_id in result.stdout


def test_export_command_writes_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from codeloop.core.messages import Message
    from codeloop.session import SessionManager

    monkeypatch.chdir(tmp_path)
    manager = SessionManager(root=tmp_path / ".codeloop" / "sessions")
    context = manager.start()
    context.append(Message.user("token sk-abcdefgh12345678"))
    manager.save(context)
    destination = tmp_path / "out" / "export.json"

    result = runner.invoke(cli_mod.app, ["export", context.session_id, "--output", str(destination)])

    assert result.exit_code == 0
    assert destination.exists()
    assert "sk-abcdefgh12345678" not in destination.read_text()


def test_export_command_missing_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(cli_mod.app, ["export", "missing"])
    assert result.exit_code == 1
