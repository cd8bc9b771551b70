"""Project and user instruction files appended to the system prompt."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from codeloop.core.config import default_config_dir

logger = logging.getLogger(__name__)

# Checked in order; the first name found anywhere between the workspace and
# the stop directory wins.
PROJECT_INSTRUCTION_FILES: tuple[str, ...] = ("AGENTS.md", "CLAUDE.md", "CONTEXT.md")
GLOBAL_INSTRUCTION_FILES: tuple[str, ...] = ("AGENTS.md", "CLAUDE.md")
MAX_INSTRUCTION_CHARS = 10_000


@dataclass(frozen=True, slots=True)
class InstructionFile:
    path: Path
    content: str

    def render(self) -> str:
        return f"Instructions from: {self.path}\n{self.content}"


def find_stop_directory(start: Path) -> Path:
    """Git root above ``start``, else the home directory when ``start`` is inside it, else ``start``."""
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists():
            return candidate
    home = Path.home().resolve()
    if start == home or home in start.parents:
        return home
    return start


def find_up(name: str, start: Path, stop: Path) -> list[Path]:
    """Every ``name`` file from ``start`` up to ``stop`` inclusive, nearest first."""
    found: list[Path] = []
    current = start
    while True:
        candidate = current / name
        if candidate.is_file():
            found.append(candidate)
        if current == stop or current.parent == current:
            return found
        current = current.parent


def detect_instruction_files(
    workspace: Path,
    *,
    global_dir: Path | None = None,
    extra_paths: Iterable[str] = (),
    stop: Path | None = None,
) -> list[Path]:
    """Instruction files for ``workspace``, outermost project file first, then global, then extras."""
    start = workspace.expanduser().resolve()
    stop = stop.resolve() if stop is not None else find_stop_directory(start)
    paths: list[Path] = []

    for name in PROJECT_INSTRUCTION_FILES:
        matches = find_up(name, start, stop)
        if matches:
            paths.extend(reversed(matches))
            break

    global_dir = global_dir or default_config_dir()
    for name in GLOBAL_INSTRUCTION_FILES:
        candidate = global_dir.expanduser() / name
        if candidate.is_file():
            paths.append(candidate)
            break

    for raw in extra_paths:
        candidate = Path(raw).expanduser()
        if not candidate.is_absolute():
            candidate = start / candidate
        if candidate.is_file():
            paths.append(candidate)
        else:
            logger.warning("Instruction file %s not found", candidate)

    unique: list[Path] = []
    for path in paths:
        resolved = path.resolve()
        if resolved not in unique:
            unique.append(resolved)
    return unique


def load_instruction_files(paths: Iterable[Path]) -> list[InstructionFile]:
    loaded: list[InstructionFile] = []
    for path in paths:
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Failed to read instruction file %s: %s", path, exc)
            continue
        if len(content) > MAX_INSTRUCTION_CHARS:
            content = (
                content[:MAX_INSTRUCTION_CHARS]
                + f"\n[truncated: {path.name} exceeds {MAX_INSTRUCTION_CHARS} characters]"
            )
        logger.debug("Loaded instructions from %s (%d chars)", path, len(content))
        loaded.append(InstructionFile(path=path, content=content.strip()))
    return loaded


def collect_instructions(
    workspace: Path,
    *,
    global_dir: Path | None = None,
    extra_paths: Iterable[str] = (),
    stop: Path | None = None,
) -> str | None:
    """Rendered instruction text for the system prompt, or ``None`` when there is none."""
    paths = detect_instruction_files(workspace, global_dir=global_dir, extra_paths=extra_paths, stop=stop)
    files = [item for item in load_instruction_files(paths) if item.content]
    if not files:
        return None
    return "\n\n".join(item.render() for item in files)


__all__ = [
    "GLOBAL_INSTRUCTION_FILES",
    "InstructionFile",
    "MAX_INSTRUCTION_CHARS",
    "PROJECT_INSTRUCTION_FILES",
    "collect_instructions",
    "detect_instruction_files",
    "find_stop_directory",
    "find_up",
    "load_instruction_files",
]
