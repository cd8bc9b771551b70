"""codeloop CLI branding helpers and styling."""

from __future__ import annotations

import os
from collections.abc import Iterable
from typing import Any

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text
from rich.theme import Theme

CODELOOP_THEME = Theme(
    {
        "codeloop.banner": "bold #38BDF8",
        "codeloop.prompt": "bold #38BDF8",

        # Chat panels
        "codeloop.user.border": "#A855F7",
        "codeloop.user.text": "#E6FFFA",
        "codeloop.user.header": "bold #A855F7",
        "codeloop.agent.border": "#38BDF8",
        "codeloop.agent.text": "#E6FFFA",
        "codeloop.agent.header": "bold #38BDF8",

        # Semantic states
        "codeloop.info.border": "#38BDF8",
        "codeloop.info.text": "#E6FFFA",
        "codeloop.info.header": "bold #38BDF8",
        "codeloop.success.border": "#14F195",
        "codeloop.success.text": "#E6FFFA",
        "codeloop.success.header": "bold #14F195",
        "codeloop.warning.border": "#FBBF24",
        "codeloop.warning.text": "#FEF3C7",
        "codeloop.warning.header": "bold #FBBF24",
        "codeloop.error.border": "#FB7185",
        "codeloop.error.text": "#FEE2E2",
        "codeloop.error.header": "bold #FB7185",

        # Tool activity
        "codeloop.tool.ok": "#14F195",
        "codeloop.tool.error": "#FB7185",
        "codeloop.text.secondary": "#94A3B8",
        "codeloop.text.dim": "dim #64748B",
    }
)

BANNER_LINES: tuple[str, ...] = (
    "[codeloop.banner]  ___ ___  __| | ___| | ___   ___  _ __  ",
    "[codeloop.banner] / __/ _ \\/ _` |/ _ \\ |/ _ \\ / _ \\| '_ \\ ",
    "[codeloop.banner]| (_| (_) | (_| |  __/ | (_) | (_) | |_) |",
    "[codeloop.banner] \\___\\___/ \\__,_|\\___|_|\\___/ \\___/| .__/ ",
    "[codeloop.banner]                                   |_|    ",
)

_SEMANTIC_TITLES = {
    "info": "Info",
    "success": "Success",
    "warning": "Warning",
    "error": "Error",
}


def themed_console(**kwargs: Any) -> Console:
    """Return a Console configured with the codeloop theme."""
    return Console(theme=CODELOOP_THEME, **kwargs)


def banner_lines() -> Iterable[Text]:
    for line in BANNER_LINES:
        yield Text.from_markup(line)


def render_banner(console: Console) -> None:
    if os.environ.get("CODELOOP_DISABLE_BANNER"):
        return
    for line in banner_lines():
        console.print(line, overflow="ignore", crop=False)
    console.print()


def create_chat_panel(
    role: str,
    message: str,
    *,
    use_markdown: bool = False,
) -> Panel:
    """Create a chat panel for user, agent, or system messages."""
    if role == "user":
        header = "You"
        style = "codeloop.user"
    elif role == "agent":
        header = "codeloop"
        style = "codeloop.agent"
    else:
        header = role.title()
        style = "codeloop.info"

    if use_markdown and role == "agent":
        content: Any = Markdown(message, code_theme="monokai")
    else:
        content = Text(message, style=f"{style}.text")

    return Panel(
        content,
        title=f"[{style}.header]{header}[/]",
        title_align="left",
        border_style=f"{style}.border",
        box=box.ROUNDED,
        padding=(1, 2),
        expand=False,
    )


def create_semantic_panel(
    message: str,
    *,
    panel_type: str = "info",
    title: str | None = None,
) -> Panel:
    """Create a panel for info, success, warning, or error messages."""
    if panel_type not in _SEMANTIC_TITLES:
        panel_type = "info"
    style = f"codeloop.{panel_type}"
    header = title or _SEMANTIC_TITLES[panel_type]
    return Panel(
        Text(message, style=f"{style}.text"),
        title=f"[{style}.header]{header}[/]",
        title_align="left",
        border_style=f"{style}.border",
        box=box.ROUNDED,
        padding=(1, 2),
        expand=False,
    )


def create_preview_panel(tool_name: str, target: str, preview: str) -> Panel:
    """Render a tool preview; unified diffs are syntax highlighted."""
    is_diff = preview.startswith("--- ") or "\n@@ " in preview
    content: Any
    if is_diff:
        content = Syntax(preview, "diff", theme="monokai", word_wrap=True)
    else:
        content = Text(preview or "(no preview)", style="codeloop.warning.text")
    return Panel(
        content,
        title=f"[codeloop.warning.header]Approve {tool_name}: {target}[/]",
        title_align="left",
        border_style="codeloop.warning.border",
        box=box.ROUNDED,
        padding=(0, 1),
        expand=False,
    )


__all__ = [
    "BANNER_LINES",
    "CODELOOP_THEME",
    "create_chat_panel",
    "create_preview_panel",
    "create_semantic_panel",
    "render_banner",
    "themed_console",
]
