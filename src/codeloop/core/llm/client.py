"""Concrete HTTP transport for OpenAI-compatible chat completion backends."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

import httpx

from .errors import TransportError
from .transport import (
    build_endpoint,
    build_headers,
    build_payload,
    iter_stream_events,
    response_to_events,
)
from .types import LLMSettings, StreamEvent

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.messages import Message, ToolDefinition

logger = logging.getLogger(__name__)


class LLMClient:
    """Streaming chat-completions client.

    Failures are classified into retryable and fatal ``TransportError``s; the
    agent loop owns the retry policy so a partially streamed turn is never
    stitched onto a retried one.
    """

    def __init__(
        self,
        settings: LLMSettings,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)

    @property
    def settings(self) -> LLMSettings:
        return self._settings

    def send(
        self,
        transcript: Sequence[Message],
        tool_catalog: Sequence[ToolDefinition],
        *,
        streaming: bool = True,
        stop_event: threading.Event | None = None,
    ) -> Iterator[StreamEvent]:
        """Send the conversation and yield transport events as they arrive."""

        url = build_endpoint(self._settings)
        headers = build_headers(self._settings)
        payload = build_payload(self._settings, transcript, tool_catalog, streaming=streaming)
        logger.debug(
            "LLM request (model=%s, messages=%d, tools=%d, streaming=%s)",
            self._settings.model,
            len(transcript),
            len(tool_catalog),
            streaming,
        )
        try:
            if streaming:
                yield from self._send_streaming(url, headers, payload, stop_event)
            else:
                yield from self._send_blocking(url, headers, payload)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("LLM transport failure: %s", type(exc).__name__)
            raise TransportError(f"LLM request failed: {exc}", retryable=True) from exc
        except httpx.HTTPError as exc:
            logger.error("Unexpected HTTP failure talking to the LLM: %s", exc)
            raise TransportError(f"LLM request failed: {exc}") from exc

    def close(self) -> None:
        """Dispose the underlying HTTP client if owned by this instance."""

        if self._owns_client:
            self._client.close()

    def _send_streaming(
        self,
        url: str,
        headers: dict[str, str],
        payload: dict[str, object],
        stop_event: threading.Event | None,
    ) -> Iterator[StreamEvent]:
        with self._client.stream("POST", url, headers=headers, json=payload) as response:
            if response.status_code >= 400:
                response.read()
                raise TransportError.from_status(response.status_code, _error_detail(response))
            for event in iter_stream_events(response.iter_lines()):
                if stop_event is not None and stop_event.is_set():
                    logger.debug("LLM stream cancelled; closing connection")
                    return
                yield event

    def _send_blocking(
        self,
        url: str,
        headers: dict[str, str],
        payload: dict[str, object],
    ) -> Iterator[StreamEvent]:
        response = self._client.post(url, headers=headers, json=payload)
        if response.status_code >= 400:
            raise TransportError.from_status(response.status_code, _error_detail(response))
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise TransportError("LLM returned a non-JSON response") from exc
        if not isinstance(body, dict):
            raise TransportError("LLM returned an unexpected response shape")
        yield from response_to_events(body)


def _error_detail(response: httpx.Response) -> str:
    raw = response.content
    if not raw:
        return response.reason_phrase
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return text


__all__ = ["LLMClient"]
