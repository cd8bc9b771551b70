"""File reading and editing tools confined to the workspace."""

from __future__ import annotations

import difflib
import logging
from pathlib import Path
from typing import Any

from codeloop.core.tools.base import Tool, ToolInvocationError, Toolkit, ToolOutput, Workspace

logger = logging.getLogger(__name__)

_MAX_LIST_ENTRIES = 500
_SKIPPED_DIRECTORIES = {".git", "__pycache__", ".venv", "node_modules", ".codeloop"}


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        raise ToolInvocationError(f"File not found: {path}") from None
    except IsADirectoryError:
        raise ToolInvocationError(f"Path is a directory: {path}") from None


def _as_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ToolInvocationError(f"'{key}' must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ToolInvocationError(f"'{key}' must be an integer.") from None


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ToolInvocationError(f"Payload must include '{key}' as a string.")
    return value


def unified_diff(before: str, after: str, label: str) -> str:
    diff = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{label}",
        tofile=f"b/{label}",
    )
    text = "".join(line if line.endswith("\n") else f"{line}\n" for line in diff)
    return text.rstrip("\n") or "(no changes)"


def _read_file_tool(workspace: Workspace) -> Tool:
    def handler(payload: dict[str, Any]) -> ToolOutput:
        path = workspace.resolve(payload.get("path"))
        text = _read_text(path)
        offset = _as_int(payload, "offset")
        limit = _as_int(payload, "limit")
        if offset is not None or limit is not None:
            lines = text.splitlines(keepends=True)
            start = max((offset or 1) - 1, 0)
            end = start + limit if limit is not None and limit >= 0 else None
            text = "".join(lines[start:end])
        relative = workspace.relative(path)
        return ToolOutput(
            content=workspace.clip(text),
            summary=f"Read {relative}",
            data={"path": relative, "characters": len(text)},
        )

    return Tool(
        name="read_file",
        description="Read the content of a file in the workspace.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root."},
                "offset": {"type": "integer", "description": "First line to return (1-based)."},
                "limit": {"type": "integer", "description": "Maximum number of lines to return."},
            },
            "required": ["path"],
        },
        handler=handler,
    )


def _list_files_tool(workspace: Workspace) -> Tool:
    def handler(payload: dict[str, Any]) -> ToolOutput:
        directory = workspace.resolve(payload.get("path"), default=".")
        if not directory.is_dir():
            raise ToolInvocationError(f"Not a directory: {workspace.relative(directory)}")
        recursive = bool(payload.get("recursive", False))
        iterator = directory.rglob("*") if recursive else directory.iterdir()
        entries: list[str] = []
        for entry in sorted(iterator):
            relative_parts = entry.relative_to(directory).parts
            if any(part in _SKIPPED_DIRECTORIES for part in relative_parts):
                continue
            label = workspace.relative(entry)
            entries.append(f"{label}/" if entry.is_dir() else label)
            if len(entries) >= _MAX_LIST_ENTRIES:
                entries.append(f"... (listing truncated at {_MAX_LIST_ENTRIES} entries)")
                break
        content = "\n".join(entries) if entries else "(empty directory)"
        return ToolOutput(content=content, summary=f"Listed {len(entries)} entries")

    return Tool(
        name="list_files",
        description="List files in a workspace directory.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path (default: workspace root)."},
                "recursive": {"type": "boolean", "description": "List files recursively (default: false)."},
            },
            "required": [],
        },
        handler=handler,
    )


def _write_file_tool(workspace: Workspace) -> Tool:
    def preview(payload: dict[str, Any]) -> str:
        path = workspace.resolve(payload.get("path"))
        content = payload.get("content")
        new_text = content if isinstance(content, str) else ""
        if not path.exists():
            return f"New file {workspace.relative(path)}:\n{new_text}"
        return unified_diff(_read_text(path), new_text, workspace.relative(path))

    def handler(payload: dict[str, Any]) -> ToolOutput:
        path = workspace.resolve(payload.get("path"))
        content = _require_str(payload, "content")
        if path.is_dir():
            raise ToolInvocationError(f"Path is a directory: {workspace.relative(path)}")
        created = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        relative = workspace.relative(path)
        verb = "Created" if created else "Wrote"
        logger.debug("%s %s (%d characters)", verb, relative, len(content))
        return ToolOutput(
            content=f"{verb} {relative} ({len(content)} characters).",
            summary=f"{verb} {relative}",
            data={"path": relative, "created": created},
        )

    return Tool(
        name="write_file",
        description="Create or overwrite a file in the workspace with the given content.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root."},
                "content": {"type": "string", "description": "Full content to write."},
            },
            "required": ["path", "content"],
        },
        handler=handler,
        mutating=True,
        target_argument="path",
        preview=preview,
    )


def _apply_edit(original: str, payload: dict[str, Any]) -> tuple[str, int]:
    old = _require_str(payload, "old_string")
    new = _require_str(payload, "new_string")
    if not old:
        raise ToolInvocationError("'old_string' must not be empty.")
    if old == new:
        raise ToolInvocationError("'old_string' and 'new_string' must be different.")
    occurrences = original.count(old)
    if occurrences == 0:
        raise ToolInvocationError("'old_string' was not found in the file.")
    if payload.get("replace_all"):
        return original.replace(old, new), occurrences
    if occurrences > 1:
        raise ToolInvocationError(
            f"'old_string' occurs {occurrences} times; add context or set replace_all."
        )
    return original.replace(old, new, 1), 1


def _edit_file_tool(workspace: Workspace) -> Tool:
    def preview(payload: dict[str, Any]) -> str:
        path = workspace.resolve(payload.get("path"))
        original = _read_text(path)
        try:
            updated, _ = _apply_edit(original, payload)
        except ToolInvocationError as exc:
            return f"(edit cannot be applied: {exc})"
        return unified_diff(original, updated, workspace.relative(path))

    def handler(payload: dict[str, Any]) -> ToolOutput:
        path = workspace.resolve(payload.get("path"))
        original = _read_text(path)
        updated, replacements = _apply_edit(original, payload)
        path.write_text(updated, encoding="utf-8")
        relative = workspace.relative(path)
        noun = "replacement" if replacements == 1 else "replacements"
        return ToolOutput(
            content=f"Edited {relative}: {replacements} {noun}.",
            summary=f"Edited {relative}",
            data={"path": relative, "replacements": replacements},
        )

    return Tool(
        name="edit_file",
        description=(
            "Replace an exact string in a workspace file. The old string must occur "
            "exactly once unless replace_all is set."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root."},
                "old_string": {"type": "string", "description": "Exact text to replace."},
                "new_string": {"type": "string", "description": "Replacement text."},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence."},
            },
            "required": ["path", "old_string", "new_string"],
        },
        handler=handler,
        mutating=True,
        target_argument="path",
        preview=preview,
    )


def files_toolkit(workspace: Workspace) -> Toolkit:
    return Toolkit(
        name="codeloop.files",
        version="1.0.0",
        description="Read, list and edit files inside the workspace.",
        tools=[
            _read_file_tool(workspace),
            _list_files_tool(workspace),
            _write_file_tool(workspace),
            _edit_file_tool(workspace),
        ],
    )


__all__ = ["files_toolkit", "unified_diff"]
