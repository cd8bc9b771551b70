"""HTTP wire helpers for OpenAI-compatible chat completion backends."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Any

from .errors import TransportError
from .types import FinishReason, LLMSettings, StreamEvent, TextDelta, TokenUsage, ToolCallDelta, TurnComplete

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.messages import Message, ToolDefinition

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "end_turn": "stop",
    "content_filter": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
    "max_tokens": "length",
}


def build_endpoint(settings: LLMSettings) -> str:
    return f"{settings.base_url.rstrip('/')}/chat/completions"


def build_headers(settings: LLMSettings) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return headers


def build_payload(
    settings: LLMSettings,
    transcript: Sequence[Message],
    tool_catalog: Sequence[ToolDefinition],
    *,
    streaming: bool,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "model": settings.model,
        "messages": [message.to_wire() for message in transcript],
        "stream": streaming,
        "max_tokens": max(settings.max_output_tokens, 1),
    }
    if streaming:
        payload["stream_options"] = {"include_usage": True}
    if tool_catalog:
        payload["tools"] = [definition.to_wire() for definition in tool_catalog]
    return payload


def map_finish_reason(raw: object, *, saw_tool_calls: bool) -> FinishReason:
    if isinstance(raw, str) and raw in _FINISH_REASONS:
        return _FINISH_REASONS[raw]
    if raw is not None:
        logger.debug("Unknown finish_reason %r; inferring from content", raw)
    return "tool-calls" if saw_tool_calls else "stop"


def parse_usage(raw: object) -> TokenUsage | None:
    """Read an OpenAI-style ``usage`` object; ``None`` when absent or malformed."""
    if not isinstance(raw, dict):
        return None
    prompt = raw.get("prompt_tokens", raw.get("input_tokens"))
    completion = raw.get("completion_tokens", raw.get("output_tokens"))
    if not isinstance(prompt, int) and not isinstance(completion, int):
        return None
    return TokenUsage(
        input_tokens=prompt if isinstance(prompt, int) else 0,
        output_tokens=completion if isinstance(completion, int) else 0,
    )


def iter_stream_events(lines: Iterable[str]) -> Iterator[StreamEvent]:
    """Translate server-sent event lines into transport events.

    The completion signal is held back until ``[DONE]`` or the end of the
    stream, because backends send the usage chunk after the finish reason.
    Raises ``TransportError`` when the backend reports an error in-band or when
    the stream ends before a completion signal arrives.
    """
    saw_tool_calls = False
    finish_reason: FinishReason | None = None
    usage: TokenUsage | None = None
    for raw_line in lines:
        if not raw_line:
            continue
        if raw_line.startswith(":"):
            continue
        if raw_line.startswith("data:"):
            data = raw_line.partition("data:")[2].strip()
        else:
            data = raw_line.strip()
        if not data:
            continue
        if data == "[DONE]":
            if finish_reason is None:
                finish_reason = map_finish_reason(None, saw_tool_calls=saw_tool_calls)
            yield TurnComplete(finish_reason, usage)
            return
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON LLM payload: %s", data)
            continue
        if not isinstance(parsed, dict):
            continue
        _raise_for_inline_error(parsed)
        usage = parse_usage(parsed.get("usage")) or usage
        if finish_reason is not None:
            continue
        choices = parsed.get("choices")
        if not isinstance(choices, list) or not choices:
            continue
        choice = choices[0]
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                yield TextDelta(content)
            for fragment in delta.get("tool_calls") or []:
                event = _tool_call_delta(fragment)
                if event is not None:
                    saw_tool_calls = True
                    yield event
        raw_reason = choice.get("finish_reason")
        if raw_reason:
            finish_reason = map_finish_reason(raw_reason, saw_tool_calls=saw_tool_calls)
    if finish_reason is None:
        raise TransportError("LLM stream ended before the turn completed", retryable=True)
    yield TurnComplete(finish_reason, usage)


def response_to_events(payload: dict[str, Any]) -> Iterator[StreamEvent]:
    """Expand a non-streaming completion into the equivalent event sequence."""
    _raise_for_inline_error(payload)
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise TransportError("LLM response did not include any choices")
    choice = choices[0]
    message = choice.get("message")
    if not isinstance(message, dict):
        raise TransportError("LLM response choice is missing a message")
    content = message.get("content")
    if isinstance(content, str) and content:
        yield TextDelta(content)
    tool_calls = message.get("tool_calls") or []
    for position, call in enumerate(tool_calls):
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        yield ToolCallDelta(
            index=position,
            id=call.get("id"),
            name=function.get("name"),
            arguments=arguments if isinstance(arguments, str) else None,
        )
    yield TurnComplete(
        map_finish_reason(choice.get("finish_reason"), saw_tool_calls=bool(tool_calls)),
        parse_usage(payload.get("usage")),
    )


def _tool_call_delta(fragment: object) -> ToolCallDelta | None:
    if not isinstance(fragment, dict):
        return None
    index = fragment.get("index", 0)
    if not isinstance(index, int):
        raise TransportError(f"Malformed tool call fragment index: {index!r}")
    function = fragment.get("function") or {}
    name = function.get("name") if isinstance(function, dict) else None
    arguments = function.get("arguments") if isinstance(function, dict) else None
    call_id = fragment.get("id")
    return ToolCallDelta(
        index=index,
        id=call_id if isinstance(call_id, str) and call_id else None,
        name=name if isinstance(name, str) and name else None,
        arguments=arguments if isinstance(arguments, str) else None,
    )


def _raise_for_inline_error(payload: dict[str, Any]) -> None:
    error = payload.get("error")
    if not error:
        return
    if isinstance(error, dict):
        message = error.get("message") or json.dumps(error)
        code = error.get("code")
    else:
        message = str(error)
        code = None
    status_code = code if isinstance(code, int) else None
    if status_code is not None:
        raise TransportError.from_status(status_code, message)
    raise TransportError(f"LLM backend error: {message}")


__all__ = [
    "build_endpoint",
    "build_headers",
    "build_payload",
    "iter_stream_events",
    "map_finish_reason",
    "parse_usage",
    "response_to_events",
]
