"""Content and filename search tools."""

from __future__ import annotations

import fnmatch
import re
from pathlib import Path
from typing import Any, Iterator

from codeloop.core.tools.base import Tool, ToolInvocationError, Toolkit, ToolOutput, Workspace

_MAX_MATCHES = 200
_SKIPPED_DIRECTORIES = {".git", "__pycache__", ".venv", "node_modules", ".codeloop"}


def _iter_files(workspace: Workspace, base: Path) -> Iterator[Path]:
    if base.is_file():
        yield base
        return
    for candidate in sorted(base.rglob("*")):
        parts = candidate.relative_to(workspace.root).parts
        if any(part in _SKIPPED_DIRECTORIES for part in parts):
            continue
        if candidate.is_file():
            yield candidate


def _grep_tool(workspace: Workspace) -> Tool:
    def handler(payload: dict[str, Any]) -> ToolOutput:
        pattern = payload.get("pattern")
        if not isinstance(pattern, str) or not pattern:
            raise ToolInvocationError("Payload must include 'pattern' as a string.")
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ToolInvocationError(f"Invalid regular expression: {exc}") from exc
        base = workspace.resolve(payload.get("path"), default=".")
        glob_filter = payload.get("glob")
        matches: list[str] = []
        truncated = False
        for file_path in _iter_files(workspace, base):
            if isinstance(glob_filter, str) and glob_filter and not fnmatch.fnmatch(file_path.name, glob_filter):
                continue
            try:
                text = file_path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{workspace.relative(file_path)}:{line_number}: {line.strip()}")
                    if len(matches) >= _MAX_MATCHES:
                        truncated = True
                        break
            if truncated:
                break
        if not matches:
            return ToolOutput(content=f"No matches for /{pattern}/.", summary="No matches")
        content = "\n".join(matches)
        if truncated:
            content += f"\n... (stopped after {_MAX_MATCHES} matches)"
        return ToolOutput(content=workspace.clip(content), summary=f"{len(matches)} matches")

    return Tool(
        name="grep",
        description="Search workspace files for lines matching a regular expression.",
        input_schema={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression to search for."},
                "path": {"type": "string", "description": "File or directory to search (default: root)."},
                "glob": {"type": "string", "description": "Only search files whose name matches this glob."},
            },
            "required": ["pattern"],
        },
        handler=handler,
    )


def _glob_tool(workspace: Workspace) -> Tool:
    def handler(payload: dict[str, Any]) -> ToolOutput:
        pattern = payload.get("pattern")
        if not isinstance(pattern, str) or not pattern:
            raise ToolInvocationError("Payload must include 'pattern' as a string.")
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise ToolInvocationError("Glob patterns must stay inside the workspace.")
        found: list[str] = []
        for candidate in sorted(workspace.root.glob(pattern)):
            parts = candidate.relative_to(workspace.root).parts
            if any(part in _SKIPPED_DIRECTORIES for part in parts):
                continue
            found.append(workspace.relative(candidate))
            if len(found) >= _MAX_MATCHES:
                break
        if not found:
            return ToolOutput(content=f"No files match '{pattern}'.", summary="No files")
        return ToolOutput(content="\n".join(found), summary=f"{len(found)} files")

    return Tool(
        name="glob",
        description="Find workspace files by glob pattern, e.g. '**/*.py'.",
        input_schema={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern relative to the workspace root."},
            },
            "required": ["pattern"],
        },
        handler=handler,
    )


def search_toolkit(workspace: Workspace) -> Toolkit:
    return Toolkit(
        name="codeloop.search",
        version="1.0.0",
        description="Search file names and contents inside the workspace.",
        tools=[_grep_tool(workspace), _glob_tool(workspace)],
    )


__all__ = ["search_toolkit"]
