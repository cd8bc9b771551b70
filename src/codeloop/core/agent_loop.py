"""Agent loop orchestration: request, assemble, dispatch, repeat."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from codeloop.core.assembler import AssembledTurn, AssemblyError, ResponseAssembler
from codeloop.core.budget import FORCED_FINAL_DIRECTIVE, StepBudget
from codeloop.core.dispatcher import PreparedCall, ToolDispatcher, error_result
from codeloop.core.doom_loop import DoomLoopDetector
from codeloop.core.events import LoopObserver, ObserverHub, PersistenceSink
from codeloop.core.llm.errors import TransportError
from codeloop.core.llm.types import StreamEvent, TextDelta, TokenUsage, Transport
from codeloop.core.messages import Message, ToolCallRef, ToolDefinition, ToolResult
from codeloop.core.permissions import PermissionGate, PermissionPrompter, SafetyMode
from codeloop.core.tool_registry import ToolRegistry

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.config import CodeloopConfig

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1
EVENT_QUEUE_SIZE = 256
CANCEL_GRACE_SECONDS = 0.5
DOOM_LOOP_ABORT_MESSAGE = (
    "refused: this exact call was denied repeatedly; the task has been stopped"
)
DOOM_LOOP_CONTINUE_MESSAGE = (
    "refused: this exact call was denied repeatedly; try a different approach"
)
SKIPPED_MESSAGE = "skipped: the loop terminated before this call ran"


class LoopStatus(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    ASSEMBLING = "assembling"
    DISPATCHING = "dispatching"
    FINISHED = "finished"
    ABORTED = "aborted"


class TerminationReason(str, Enum):
    COMPLETED = "completed"
    FORCED_FINAL = "forced-final"
    DOOM_LOOP = "doom-loop"
    PROTOCOL_ERROR = "protocol-error"
    TRANSPORT_FATAL = "transport-fatal"
    TRANSPORT_EXHAUSTED = "transport-exhausted"
    CANCELLED = "cancelled"


class AgentLoopError(RuntimeError):
    """Raised when the loop is driven incorrectly (re-entered or restarted)."""


class CancellationToken:
    """Thread-safe cancellation flag shared with the surrounding UI."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    @property
    def event(self) -> threading.Event:
        """The underlying event, handed to cancellable tools."""
        return self._event


@dataclass(slots=True)
class AgentState:
    """Mutable state of one task, owned by exactly one :class:`AgentLoop`."""

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    transcript: list[Message] = field(default_factory=list)
    step_count: int = 0
    doom_loop: DoomLoopDetector = field(default_factory=DoomLoopDetector)
    status: LoopStatus = LoopStatus.IDLE
    termination_reason: TerminationReason | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def terminated(self) -> bool:
        return self.status in (LoopStatus.FINISHED, LoopStatus.ABORTED)

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self.transcript)


@dataclass(frozen=True, slots=True)
class AgentRunResult:
    """Outcome of :meth:`AgentLoop.run`."""

    session_id: str
    status: LoopStatus
    reason: TerminationReason
    final_text: str | None
    step_count: int
    transcript: tuple[Message, ...]
    error: str | None = None
    last_text: str | None = None
    truncated: bool = False
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def ok(self) -> bool:
        return self.status is LoopStatus.FINISHED


@dataclass(frozen=True, slots=True)
class LoopSettings:
    max_steps: int | None = None
    continue_loop_on_deny: bool = False
    streaming: bool = True
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    turn_timeout_seconds: float | None = 300.0
    max_parallel_tools: int = 4
    poll_interval: float = DEFAULT_POLL_INTERVAL
    tools_enabled: bool = True

    @classmethod
    def from_config(cls, config: CodeloopConfig) -> LoopSettings:
        return cls(
            max_steps=config.max_steps,
            continue_loop_on_deny=config.continue_loop_on_deny,
            streaming=config.streaming,
            max_attempts=config.llm_max_attempts,
            retry_base_delay=config.retry_base_delay,
            turn_timeout_seconds=config.turn_timeout_seconds,
            max_parallel_tools=config.max_parallel_tools,
        )


def build_system_prompt(
    tool_names: Iterable[str] = (),
    workspace: str | None = None,
    instructions: str | None = None,
) -> str:
    names = ", ".join(tool_names) or "none"
    lines = [
        "You are codeloop, a coding assistant working inside the user's terminal.",
        "Work step by step. Use the provided tools to inspect and change the workspace "
        "instead of guessing file contents.",
        "Read a file before editing it. Prefer small, targeted edits.",
        "Mutating tools may require the user's approval; if a call is denied, do not "
        "repeat it unchanged. Adjust your approach or ask the user.",
        "When the task is done, reply with a concise plain-text summary and no tool calls.",
        f"Available tools: {names}.",
    ]
    if workspace:
        lines.append(f"Workspace root: {workspace}")
    if instructions:
        lines.extend(["", instructions])
    return "\n".join(lines)


def sanitize_history(messages: Sequence[Message]) -> list[Message]:
    """Strip a stored transcript down to what a new task may replay.

    System prompts and forced-final directives belong to the task that produced
    them. Tool-call blocks without every result are dropped, since a stored
    transcript may end in the middle of a cancelled turn.
    """
    kept: list[Message] = []
    index = 0
    while index < len(messages):
        message = messages[index]
        if message.role in ("system", "tool"):
            index += 1
            continue
        if message.role == "user" and message.content == FORCED_FINAL_DIRECTIVE:
            index += 1
            continue
        if message.role == "assistant" and message.tool_calls:
            follow = index + 1
            block: list[Message] = []
            while follow < len(messages) and messages[follow].role == "tool":
                block.append(messages[follow])
                follow += 1
            call_ids = {call.id for call in message.tool_calls}
            answered = {item.tool_call_id for item in block}
            if call_ids <= answered:
                kept.append(message)
                kept.extend(item for item in block if item.tool_call_id in call_ids)
            index = follow
            continue
        kept.append(message)
        index += 1
    return kept


# ----------------------------------------------------------------------
# Transport pump
# ----------------------------------------------------------------------
class _PumpDone:
    pass


@dataclass(slots=True)
class _PumpFailure:
    error: BaseException


_DONE = _PumpDone()


class _TransportPump(threading.Thread):
    """Consumes a transport call on a background thread.

    Events are pushed into a bounded queue read by the loop thread. Setting
    ``stop_event`` makes both the pump and a cooperating transport stop early.
    """

    def __init__(
        self,
        transport: Transport,
        transcript: Sequence[Message],
        catalog: Sequence[ToolDefinition],
        *,
        streaming: bool,
        poll_interval: float,
    ) -> None:
        super().__init__(name="codeloop-transport", daemon=True)
        self._transport = transport
        self._transcript = tuple(transcript)
        self._catalog = tuple(catalog)
        self._streaming = streaming
        self._poll_interval = poll_interval
        self.events: queue.Queue[StreamEvent | _PumpDone | _PumpFailure] = queue.Queue(
            maxsize=EVENT_QUEUE_SIZE
        )
        self.stop_event = threading.Event()

    def run(self) -> None:
        try:
            stream = self._transport.send(
                self._transcript,
                self._catalog,
                streaming=self._streaming,
                stop_event=self.stop_event,
            )
            for event in stream:
                if not self._put(event):
                    return
        except BaseException as exc:  # noqa: BLE001 - handed to the loop thread
            self._put(_PumpFailure(exc))
            return
        self._put(_DONE)

    def stop(self) -> None:
        self.stop_event.set()

    def _put(self, item: StreamEvent | _PumpDone | _PumpFailure) -> bool:
        while not self.stop_event.is_set():
            try:
                self.events.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False


class _Cancelled(Exception):
    pass


class _Abort(Exception):
    def __init__(self, reason: TerminationReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


# ----------------------------------------------------------------------
# Agent loop
# ----------------------------------------------------------------------
class AgentLoop:
    """Drives one task from the user's request to a final answer or an abort."""

    def __init__(
        self,
        transport: Transport,
        registry: ToolRegistry,
        *,
        settings: LoopSettings | None = None,
        state: AgentState | None = None,
        system_prompt: str | None = None,
        history: Sequence[Message] = (),
        gate: PermissionGate | None = None,
        safety_mode: SafetyMode | str = SafetyMode.ASK,
        prompter: PermissionPrompter | None = None,
        observers: Iterable[LoopObserver] = (),
        sinks: Iterable[PersistenceSink] = (),
        cancellation: CancellationToken | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.settings = settings or LoopSettings()
        self.state = state or AgentState()
        self.gate = gate or PermissionGate(safety_mode, prompter)
        self.cancellation = cancellation or CancellationToken()
        self.dispatcher = ToolDispatcher(registry, self.gate, cancel_event=self.cancellation.event)
        self.budget = StepBudget(self.settings.max_steps)
        self.hub = ObserverHub(observers, sinks)
        self._sleep = sleep
        self._catalog: tuple[ToolDefinition, ...] = (
            registry.tool_catalog() if self.settings.tools_enabled else ()
        )
        self._run_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._forced_final = False
        self._last_text: str | None = None
        if not self.state.transcript:
            prompt = system_prompt or build_system_prompt(
                definition.name for definition in self._catalog
            )
            self.state.transcript.append(Message.system(prompt))
            self.state.transcript.extend(history)

    @property
    def tool_catalog(self) -> tuple[ToolDefinition, ...]:
        return self._catalog

    def cancel(self) -> None:
        self.cancellation.cancel()

    def run(self, task: str | None = None) -> AgentRunResult:
        """Run the task to completion. The loop instance is single use."""
        if not self._run_lock.acquire(blocking=False):
            raise AgentLoopError("Agent loop is already running")
        try:
            if self.state.terminated:
                raise AgentLoopError(
                    f"Agent loop already terminated ({self.state.termination_reason})"
                )
            if self.state.status is not LoopStatus.IDLE:
                raise AgentLoopError(f"Agent loop cannot start from status {self.state.status.value}")
            if task is not None:
                self._append(Message.user(task))
            if not any(message.role == "user" for message in self.state.transcript):
                raise AgentLoopError("Agent loop requires a user message to start")
            self._executor = ThreadPoolExecutor(
                max_workers=max(self.settings.max_parallel_tools, 1),
                thread_name_prefix="codeloop-tool",
            )
            return self._drive()
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
            self._run_lock.release()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _drive(self) -> AgentRunResult:
        try:
            while True:
                self._check_cancelled()
                catalog = self._catalog
                if self.budget.force_final(self.state.step_count):
                    catalog = ()
                    if not self._forced_final:
                        logger.info(
                            "Step budget reached (%d/%s); requesting a final summary",
                            self.state.step_count,
                            self.settings.max_steps,
                        )
                        self._forced_final = True
                        self._append(Message.user(FORCED_FINAL_DIRECTIVE))

                turn = self._request_with_retries(catalog)
                self._last_text = turn.text or self._last_text

                if self._forced_final and turn.tool_calls:
                    logger.warning(
                        "Discarding %d tool call(s) returned on the forced-final turn",
                        len(turn.tool_calls),
                    )
                if self._forced_final or not turn.tool_calls:
                    self._append(Message.assistant(turn.text))
                    self.state.step_count += 1
                    reason = (
                        TerminationReason.FORCED_FINAL
                        if self._forced_final
                        else TerminationReason.COMPLETED
                    )
                    return self._finish(reason, final_text=turn.text, truncated=turn.truncated)

                self._append(Message.assistant(turn.text or None, turn.tool_calls))
                self._set_status(LoopStatus.DISPATCHING)
                results, abort_reason = self._dispatch_turn(turn.tool_calls)
                for result in results:
                    self._append(Message.tool(result))
                    self.hub.tool_result(self.state.session_id, result)
                if abort_reason is not None:
                    return self._abort(abort_reason, "Repeated denied tool call detected")
                self.state.step_count += 1
        except _Cancelled:
            return self._abort(TerminationReason.CANCELLED, "Cancelled by user")
        except KeyboardInterrupt:
            self.cancellation.cancel()
            return self._abort(TerminationReason.CANCELLED, "Interrupted by user")
        except _Abort as exc:
            return self._abort(exc.reason, str(exc))

    def _request_with_retries(self, catalog: Sequence[ToolDefinition]) -> AssembledTurn:
        max_attempts = max(self.settings.max_attempts, 1)
        attempt = 0
        while True:
            attempt += 1
            self._set_status(LoopStatus.REQUESTING)
            try:
                return self._request_turn(catalog)
            except AssemblyError as exc:
                logger.error("Protocol error while assembling the model turn: %s", exc)
                raise _Abort(TerminationReason.PROTOCOL_ERROR, str(exc)) from exc
            except TransportError as exc:
                if not exc.retryable:
                    logger.error("Transport failed: %s", exc)
                    raise _Abort(TerminationReason.TRANSPORT_FATAL, str(exc)) from exc
                if attempt >= max_attempts:
                    logger.error("Transport failed after %d attempts: %s", attempt, exc)
                    raise _Abort(
                        TerminationReason.TRANSPORT_EXHAUSTED,
                        f"{exc} (after {attempt} attempts)",
                    ) from exc
                delay = self.settings.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Transport attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                self.hub.retry(self.state.session_id, attempt, delay, exc)
                self._pause(delay)

    def _request_turn(self, catalog: Sequence[ToolDefinition]) -> AssembledTurn:
        pump = _TransportPump(
            self.transport,
            self.state.transcript,
            catalog,
            streaming=self.settings.streaming,
            poll_interval=self.settings.poll_interval,
        )
        assembler = ResponseAssembler()
        timeout = self.settings.turn_timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None
        pump.start()
        try:
            while True:
                self._check_cancelled()
                if deadline is not None and time.monotonic() >= deadline:
                    raise TransportError(
                        f"Model turn exceeded {timeout:g}s", retryable=True
                    )
                try:
                    item = pump.events.get(timeout=self.settings.poll_interval)
                except queue.Empty:
                    continue
                if isinstance(item, _PumpDone):
                    break
                if isinstance(item, _PumpFailure):
                    error = item.error
                    if isinstance(error, (TransportError, AssemblyError, KeyboardInterrupt)):
                        raise error
                    logger.exception("Transport raised an unexpected error", exc_info=error)
                    raise TransportError(f"Transport failed: {error}") from error
                if self.state.status is LoopStatus.REQUESTING:
                    self._set_status(LoopStatus.ASSEMBLING)
                assembler.feed(item)
                if isinstance(item, TextDelta) and item.text:
                    self.hub.text_delta(self.state.session_id, item.text)
        finally:
            pump.stop()
        if not assembler.is_complete():
            raise TransportError("Model stream ended before the turn completed", retryable=True)
        turn = assembler.finalize()
        if turn.usage is not None:
            self.state.usage += turn.usage
        return turn

    def _dispatch_turn(
        self, calls: Sequence[ToolCallRef]
    ) -> tuple[list[ToolResult], TerminationReason | None]:
        """Resolve every call of a turn, returning results in call order."""
        results: dict[int, ToolResult] = {}
        batch: list[tuple[int, PreparedCall]] = []
        detector = self.state.doom_loop
        abort_reason: TerminationReason | None = None

        for position, call in enumerate(calls):
            self._check_cancelled()
            if detector.observe(call.name, call.arguments_text):
                self._run_batch(batch, results)
                if not self.settings.continue_loop_on_deny:
                    results[position] = error_result(call, DOOM_LOOP_ABORT_MESSAGE)
                    for skipped_position in range(position + 1, len(calls)):
                        results[skipped_position] = error_result(calls[skipped_position], SKIPPED_MESSAGE)
                    abort_reason = TerminationReason.DOOM_LOOP
                    break
                detector.record_denial()
                results[position] = self.dispatcher.refuse(call, DOOM_LOOP_CONTINUE_MESSAGE)
                continue

            prepared = self.dispatcher.prepare(call)
            if prepared.result is not None:
                results[position] = prepared.result
                continue
            if not prepared.mutating:
                batch.append((position, prepared))
                continue

            self._run_batch(batch, results)
            prepared = self.dispatcher.authorize(prepared)
            if prepared.denied:
                detector.record_denial()
            if prepared.result is not None:
                results[position] = prepared.result
                continue
            results[position] = self._await_single(prepared)

        self._run_batch(batch, results)
        return [results[position] for position in range(len(calls))], abort_reason

    def _run_batch(self, batch: list[tuple[int, PreparedCall]], results: dict[int, ToolResult]) -> None:
        if not batch:
            return
        assert self._executor is not None
        futures = {
            self._executor.submit(self.dispatcher.execute, prepared): position
            for position, prepared in batch
        }
        batch.clear()
        self._await_futures(list(futures))
        for future, position in futures.items():
            results[position] = future.result()

    def _await_single(self, prepared: PreparedCall) -> ToolResult:
        assert self._executor is not None
        future = self._executor.submit(self.dispatcher.execute, prepared)
        self._await_futures([future])
        return future.result()

    def _await_futures(self, futures: list[Future[ToolResult]]) -> None:
        pending = set(futures)
        while pending:
            if self.cancellation.cancelled:
                for future in pending:
                    future.cancel()
                # Give cancellable tools a moment to stop their subprocesses.
                wait(pending, timeout=CANCEL_GRACE_SECONDS)
                raise _Cancelled()
            _, pending = wait(pending, timeout=self.settings.poll_interval, return_when=FIRST_COMPLETED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _append(self, message: Message) -> None:
        self.state.transcript.append(message)
        self.hub.message_appended(self.state.session_id, message)

    def _set_status(self, status: LoopStatus) -> None:
        if self.state.status is status:
            return
        self.state.status = status
        logger.debug("Session %s status -> %s", self.state.session_id, status.value)
        self.hub.status_changed(self.state.session_id, status)

    def _check_cancelled(self) -> None:
        if self.cancellation.cancelled:
            raise _Cancelled()

    def _pause(self, delay: float) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        else:
            self.cancellation.wait(delay)
        self._check_cancelled()

    def _finish(
        self,
        reason: TerminationReason,
        *,
        final_text: str,
        truncated: bool = False,
    ) -> AgentRunResult:
        self.state.termination_reason = reason
        self._set_status(LoopStatus.FINISHED)
        if truncated:
            logger.warning("Final answer was truncated by the backend")
        return AgentRunResult(
            session_id=self.state.session_id,
            status=LoopStatus.FINISHED,
            reason=reason,
            final_text=final_text,
            step_count=self.state.step_count,
            transcript=self.state.snapshot(),
            last_text=final_text or self._last_text,
            truncated=truncated,
            usage=self.state.usage,
        )

    def _abort(self, reason: TerminationReason, message: str) -> AgentRunResult:
        self.state.termination_reason = reason
        self._set_status(LoopStatus.ABORTED)
        logger.info("Session %s aborted (%s): %s", self.state.session_id, reason.value, message)
        return AgentRunResult(
            session_id=self.state.session_id,
            status=LoopStatus.ABORTED,
            reason=reason,
            final_text=None,
            step_count=self.state.step_count,
            transcript=self.state.snapshot(),
            error=message,
            last_text=self._last_text,
            usage=self.state.usage,
        )


__all__ = [
    "AgentLoop",
    "AgentLoopError",
    "AgentRunResult",
    "AgentState",
    "CancellationToken",
    "LoopSettings",
    "LoopStatus",
    "TerminationReason",
    "build_system_prompt",
    "sanitize_history",
]
