from __future__ import annotations

from io import StringIO

import pytest

from codeloop.cli.branding import (
    create_preview_panel,
    create_semantic_panel,
    render_banner,
    themed_console,
)


def render(renderable) -> str:
    stream = StringIO()
    console = themed_console(file=stream, force_terminal=False, color_system=None, width=100)
    console.print(renderable)
    return stream.getvalue()


def test_render_banner_respects_disable(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = StringIO()
    console = themed_console(file=stream, color_system=None)
    monkeypatch.setenv("CODELOOP_DISABLE_BANNER", "1")
    render_banner(console)
    assert stream.getvalue() == ""


def test_render_banner_prints_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = StringIO()
    console = themed_console(file=stream, color_system=None, width=100)
    monkeypatch.delenv("CODELOOP_DISABLE_BANNER", raising=False)
    render_banner(console)
    assert "|_|" in stream.getvalue()


def test_semantic_panel_falls_back_to_info() -> None:
    output = render(create_semantic_panel("hello", panel_type="unknown"))
    assert "Info" in output
    assert "hello" in output


def test_preview_panel_shows_target_and_diff() -> None:
    diff = "--- a/x.txt\n+++ b/x.txt\n@@ -1 +1 @@\n-old\n+new\n"
    output = render(create_preview_panel("edit_file", "x.txt", diff))
    assert "Approve edit_file: x.txt" in output
    assert "+new" in output


def test_preview_panel_without_preview() -> None:
    output = render(create_preview_panel("run_command", "ls", ""))
    assert "(no preview)" in output
