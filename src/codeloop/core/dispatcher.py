"""Turns finalized tool calls into tool results."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from codeloop.core.messages import ToolCallRef, ToolResult
from codeloop.core.permissions import PermissionGate, PermissionScope
from codeloop.core.tool_registry import ToolRegistry
from codeloop.core.tools.base import Tool, ToolInvocationError, ToolNotFoundError

logger = logging.getLogger(__name__)


class ArgumentParseError(ValueError):
    """Raised when tool call arguments cannot be parsed into a payload."""


@dataclass(slots=True)
class PreparedCall:
    """A tool call after lookup, parsing and (optionally) authorization.

    ``result`` is set as soon as the call is settled without execution, for
    example on a parse error or a permission denial.
    """

    call: ToolCallRef
    tool: Tool | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    result: ToolResult | None = None
    denied: bool = False

    @property
    def settled(self) -> bool:
        return self.result is not None

    @property
    def mutating(self) -> bool:
        return self.tool is not None and self.tool.mutating


def parse_arguments(arguments_text: str, tool: Tool | None = None) -> dict[str, Any]:
    if not arguments_text or not arguments_text.strip():
        payload: Any = {}
    else:
        try:
            payload = json.loads(arguments_text)
        except json.JSONDecodeError as exc:
            raise ArgumentParseError(
                f"arguments are not valid JSON ({exc.msg} at line {exc.lineno} column {exc.colno})"
            ) from exc
    if not isinstance(payload, dict):
        raise ArgumentParseError(
            f"arguments must be a JSON object, got {type(payload).__name__}"
        )
    if tool is not None:
        missing = [key for key in tool.required_arguments() if key not in payload]
        if missing:
            raise ArgumentParseError(f"missing required argument(s): {', '.join(missing)}")
    return payload


class ToolDispatcher:
    """Looks up, authorizes and executes tool calls.

    Failures never escape: every path ends in a :class:`ToolResult`, with
    ``is_error`` set when the tool did not run successfully.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        gate: PermissionGate,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.cancel_event = cancel_event

    def dispatch(self, call: ToolCallRef) -> ToolResult:
        prepared = self.authorize(self.prepare(call))
        if prepared.result is not None:
            return prepared.result
        return self.execute(prepared)

    def prepare(self, call: ToolCallRef) -> PreparedCall:
        prepared = PreparedCall(call=call)
        try:
            prepared.tool = self.registry.get(call.name)
        except ToolNotFoundError:
            logger.warning("Model requested unknown tool '%s'", call.name)
            prepared.result = error_result(call, f"tool not found: {call.name}")
            return prepared
        try:
            prepared.payload = parse_arguments(call.arguments_text, prepared.tool)
        except ArgumentParseError as exc:
            logger.debug("Rejected arguments for %s: %s", call.name, exc)
            prepared.result = error_result(call, f"Error: invalid arguments for {call.name}: {exc}")
        return prepared

    def authorize(self, prepared: PreparedCall) -> PreparedCall:
        if prepared.settled or prepared.tool is None or not prepared.tool.mutating:
            return prepared
        tool = prepared.tool
        payload = prepared.payload
        try:
            target_description = tool.describe_target(payload)
        except ToolInvocationError as exc:
            prepared.result = error_result(prepared.call, f"Error: {exc}")
            return prepared
        scope = PermissionScope(tool.name, tool.scope_target(payload))

        def preview() -> str:
            try:
                return tool.render_preview(payload)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Preview for %s failed: %s", tool.name, exc)
                return f"(preview unavailable: {exc})"

        verdict = self.gate.check(scope, target_description, preview)
        if not verdict.allowed:
            prepared.result = error_result(prepared.call, verdict.message or "denied")
            prepared.denied = True
        return prepared

    def execute(self, prepared: PreparedCall) -> ToolResult:
        if prepared.result is not None:
            return prepared.result
        call = prepared.call
        logger.debug("Executing tool %s (%s)", call.name, call.id)
        try:
            output = self.registry.invoke(call.name, prepared.payload, cancel_event=self.cancel_event)
        except ToolInvocationError as exc:
            logger.info("Tool %s failed: %s", call.name, exc)
            return error_result(call, f"Error: {exc}")
        except ToolNotFoundError:
            return error_result(call, f"tool not found: {call.name}")
        return ToolResult(tool_call_id=call.id, output_text=output.content)

    def refuse(self, call: ToolCallRef, message: str) -> ToolResult:
        return error_result(call, message)

    def is_mutating(self, name: str) -> bool:
        try:
            return self.registry.get(name).mutating
        except ToolNotFoundError:
            return False


def error_result(call: ToolCallRef, message: str) -> ToolResult:
    return ToolResult(tool_call_id=call.id, output_text=message, is_error=True)


__all__ = [
    "ArgumentParseError",
    "PreparedCall",
    "ToolDispatcher",
    "error_result",
    "parse_arguments",
]
