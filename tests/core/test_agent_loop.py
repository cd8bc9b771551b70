from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from codeloop.core.agent_loop import (
    DOOM_LOOP_ABORT_MESSAGE,
    DOOM_LOOP_CONTINUE_MESSAGE,
    AgentLoop,
    AgentLoopError,
    LoopSettings,
    LoopStatus,
    TerminationReason,
    sanitize_history,
)
from codeloop.core.budget import FORCED_FINAL_DIRECTIVE
from codeloop.core.events import LoopObserver
from codeloop.core.llm import TextDelta, TokenUsage, ToolCallDelta, TransportError, TurnComplete
from codeloop.core.messages import Message, ToolCallRef, ToolResult
from codeloop.core.permissions import PermissionDecision, SafetyMode
from codeloop.core.tool_registry import Tool, Toolkit, ToolOutput, ToolRegistry, build_default_registry


class ScriptedTransport:
    """Plays back one scripted turn per request and records what was sent."""

    def __init__(self, *turns: object) -> None:
        self.turns = list(turns)
        self.requests: list[dict] = []
        self.loop: AgentLoop | None = None

    def send(self, transcript, tool_catalog, *, streaming=True, stop_event=None):
        self.requests.append(
            {
                "transcript": tuple(transcript),
                "catalog": tuple(tool_catalog),
                "step_count": self.loop.state.step_count if self.loop else None,
            }
        )
        turn = self.turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        if callable(turn):
            yield from turn(stop_event)
            return
        for event in turn:
            if isinstance(event, BaseException):
                raise event
            yield event


class RecordingPrompter:
    def __init__(self, decision: PermissionDecision = PermissionDecision.ALLOW_ONCE) -> None:
        self.decision = decision
        self.calls: list[tuple[str, str, str]] = []

    def request_confirmation(self, tool_name: str, target_description: str, preview_text: str) -> PermissionDecision:
        self.calls.append((tool_name, target_description, preview_text))
        return self.decision


def _text(text: str, reason: str = "stop") -> list:
    return [TextDelta(text), TurnComplete(reason)]


def _calls(*calls: tuple[str, str, str]) -> list:
    events: list = [
        ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments)
        for index, (call_id, name, arguments) in enumerate(calls)
    ]
    events.append(TurnComplete("tool-calls"))
    return events


def _settings(**overrides) -> LoopSettings:
    values = {"poll_interval": 0.01, "retry_base_delay": 1.0}
    values.update(overrides)
    return LoopSettings(**values)


def _loop(transport: ScriptedTransport, registry: ToolRegistry, **kwargs) -> AgentLoop:
    sleeps: list[float] = kwargs.pop("sleeps", [])
    kwargs.setdefault("settings", _settings())
    loop = AgentLoop(transport, registry, sleep=sleeps.append, **kwargs)
    transport.loop = loop
    return loop


def _assert_results_follow_calls(transcript: tuple[Message, ...]) -> None:
    for position, message in enumerate(transcript):
        if message.role != "assistant" or not message.tool_calls:
            continue
        following = transcript[position + 1 : position + 1 + len(message.tool_calls)]
        assert [item.role for item in following] == ["tool"] * len(message.tool_calls)
        assert [item.tool_call_id for item in following] == [call.id for call in message.tool_calls]


def test_plain_answer_finishes_in_one_step(tmp_path: Path) -> None:
    transport = ScriptedTransport(_text("All done."))
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("say hi")

    assert result.status is LoopStatus.FINISHED
    assert result.reason is TerminationReason.COMPLETED
    assert result.final_text == "All done."
    assert result.step_count == 1
    assert [message.role for message in result.transcript] == ["system", "user", "assistant"]
    assert transport.requests[0]["catalog"]


def test_read_then_write_scenario(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("hello\n")
    prompter = RecordingPrompter(PermissionDecision.ALLOW_ONCE)
    transport = ScriptedTransport(
        _calls(
            ("c1", "read_file", '{"path": "a.txt"}'),
            ("c2", "write_file", '{"path": "b.txt", "content": "x"}'),
        ),
        _text("Copied."),
    )
    loop = _loop(transport, build_default_registry(tmp_path), safety_mode=SafetyMode.ASK, prompter=prompter)

    result = loop.run("copy a into b")

    assert result.reason is TerminationReason.COMPLETED
    assert [call[0] for call in prompter.calls] == ["write_file"]
    assert (tmp_path / "b.txt").read_text() == "x"
    second_request = transport.requests[1]
    assert second_request["step_count"] == 1
    tail = second_request["transcript"][-2:]
    assert [message.tool_call_id for message in tail] == ["c1", "c2"]
    assert "hello" in (tail[0].content or "")
    _assert_results_follow_calls(result.transcript)


def test_step_budget_forces_a_final_summary(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("data")
    read = ("r", "read_file", '{"path": "a.txt"}')
    transport = ScriptedTransport(
        _calls(read),
        _calls(read),
        [ToolCallDelta(index=0, id="late", name="read_file", arguments="{}"), TextDelta("Summary."), TurnComplete("tool-calls")],
    )
    loop = _loop(transport, build_default_registry(tmp_path), settings=_settings(max_steps=3))

    result = loop.run("inspect a.txt")

    assert len(transport.requests) == 3
    assert transport.requests[0]["catalog"] and transport.requests[1]["catalog"]
    assert transport.requests[2]["catalog"] == ()
    assert transport.requests[2]["transcript"][-1] == Message.user(FORCED_FINAL_DIRECTIVE)
    assert result.status is LoopStatus.FINISHED
    assert result.reason is TerminationReason.FORCED_FINAL
    assert result.final_text == "Summary."
    assert result.transcript[-1] == Message.assistant("Summary.")


def test_unbounded_budget_never_injects_the_directive(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("data")
    read = ("r", "read_file", '{"path": "a.txt"}')
    transport = ScriptedTransport(_calls(read), _calls(read), _calls(read), _text("ok"))
    loop = _loop(transport, build_default_registry(tmp_path), settings=_settings(max_steps=None))

    result = loop.run("read it a lot")

    assert result.reason is TerminationReason.COMPLETED
    assert all(request["catalog"] for request in transport.requests)
    assert Message.user(FORCED_FINAL_DIRECTIVE) not in result.transcript


def test_strict_mode_denies_without_asking(tmp_path: Path) -> None:
    prompter = RecordingPrompter(PermissionDecision.ALLOW_ONCE)
    transport = ScriptedTransport(
        _calls(("w", "write_file", '{"path": "b.txt", "content": "x"}')),
        _text("Could not write."),
    )
    loop = _loop(transport, build_default_registry(tmp_path), safety_mode=SafetyMode.STRICT, prompter=prompter)

    result = loop.run("write b")

    tool_messages = [message for message in result.transcript if message.role == "tool"]
    assert tool_messages[0].content == "denied by strict safety mode"
    assert prompter.calls == []
    assert not (tmp_path / "b.txt").exists()


@pytest.mark.parametrize(
    ("mode", "prompter"),
    [
        (SafetyMode.STRICT, None),
        (SafetyMode.ASK, RecordingPrompter(PermissionDecision.DENY)),
    ],
)
def test_repeated_denied_call_aborts_with_doom_loop(tmp_path: Path, mode: SafetyMode, prompter) -> None:
    call = ("w", "write_file", '{"path": "b.txt", "content": "x"}')
    transport = ScriptedTransport(_calls(call), _calls(call), _calls(call), _text("never requested"))
    loop = _loop(transport, build_default_registry(tmp_path), safety_mode=mode, prompter=prompter)

    result = loop.run("write b")

    assert result.status is LoopStatus.ABORTED
    assert result.reason is TerminationReason.DOOM_LOOP
    assert len(transport.requests) == 3
    assert result.transcript[-1].role == "tool"
    assert result.transcript[-1].content == DOOM_LOOP_ABORT_MESSAGE
    _assert_results_follow_calls(result.transcript)
    if prompter is not None:
        assert len(prompter.calls) == 2


def test_doom_loop_can_continue_when_configured(tmp_path: Path) -> None:
    call = ("w", "write_file", '{"path": "b.txt", "content": "x"}')
    transport = ScriptedTransport(_calls(call), _calls(call), _calls(call), _text("Changing approach."))
    loop = _loop(
        transport,
        build_default_registry(tmp_path),
        settings=_settings(continue_loop_on_deny=True),
        safety_mode=SafetyMode.STRICT,
    )

    result = loop.run("write b")

    assert result.reason is TerminationReason.COMPLETED
    assert len(transport.requests) == 4
    refusals = [message.content for message in result.transcript if message.role == "tool"]
    assert refusals[-1] == DOOM_LOOP_CONTINUE_MESSAGE


def test_every_call_gets_exactly_one_result(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("data")
    transport = ScriptedTransport(
        _calls(
            ("c1", "read_file", '{"path": "a.txt"}'),
            ("c2", "no_such_tool", "{}"),
            ("c3", "read_file", '{"path": '),
            ("c4", "list_files", "{}"),
        ),
        _text("done"),
    )
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("look around")

    _assert_results_follow_calls(transport.requests[1]["transcript"])
    results = {message.tool_call_id: message.content for message in result.transcript if message.role == "tool"}
    assert results["c2"] == "tool not found: no_such_tool"
    assert "invalid arguments" in (results["c3"] or "")
    assert result.reason is TerminationReason.COMPLETED


def test_independent_reads_run_concurrently() -> None:
    barrier = threading.Barrier(2, timeout=2)

    def wait_for_peer(_payload: dict) -> ToolOutput:
        barrier.wait()
        return ToolOutput(content="met")

    registry = ToolRegistry(
        toolkits=[
            Toolkit(
                name="sync",
                version="0",
                description="",
                tools=[Tool(name="meet", description="", input_schema={}, handler=wait_for_peer)],
            )
        ]
    )
    transport = ScriptedTransport(_calls(("a", "meet", "{}"), ("b", "meet", '{"again": true}')), _text("ok"))
    loop = _loop(transport, registry)

    result = loop.run("meet twice")

    contents = [message.content for message in result.transcript if message.role == "tool"]
    assert contents == ["met", "met"]


def test_mutating_calls_are_prompted_in_model_order(tmp_path: Path) -> None:
    prompter = RecordingPrompter(PermissionDecision.ALLOW_ONCE)
    transport = ScriptedTransport(
        _calls(
            ("w1", "write_file", '{"path": "one.txt", "content": "1"}'),
            ("w2", "write_file", '{"path": "two.txt", "content": "2"}'),
        ),
        _text("ok"),
    )
    loop = _loop(transport, build_default_registry(tmp_path), prompter=prompter)

    loop.run("write two files")

    assert [call[1] for call in prompter.calls] == ["one.txt", "two.txt"]


def test_session_approval_skips_later_prompts(tmp_path: Path) -> None:
    prompter = RecordingPrompter(PermissionDecision.ALLOW_FOR_SESSION)
    write = ("w", "write_file", '{"path": "b.txt", "content": "x"}')
    transport = ScriptedTransport(_calls(write), _calls(write), _text("ok"))
    loop = _loop(transport, build_default_registry(tmp_path), prompter=prompter)

    loop.run("write twice")

    assert len(prompter.calls) == 1


def test_retryable_errors_back_off_and_discard_partial_output(tmp_path: Path) -> None:
    sleeps: list[float] = []
    transport = ScriptedTransport(
        [TextDelta("partial "), TransportError("reset", retryable=True)],
        TransportError("429", status_code=429, retryable=True),
        _text("clean answer"),
    )
    loop = _loop(transport, build_default_registry(tmp_path), sleeps=sleeps)

    result = loop.run("hi")

    assert result.reason is TerminationReason.COMPLETED
    assert result.final_text == "clean answer"
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_abort(tmp_path: Path) -> None:
    sleeps: list[float] = []
    transport = ScriptedTransport(*(TransportError("503", status_code=503, retryable=True) for _ in range(3)))
    loop = _loop(transport, build_default_registry(tmp_path), sleeps=sleeps)

    result = loop.run("hi")

    assert result.status is LoopStatus.ABORTED
    assert result.reason is TerminationReason.TRANSPORT_EXHAUSTED
    assert len(transport.requests) == 3
    assert sleeps == [1.0, 2.0]
    assert result.error


def test_fatal_transport_error_is_not_retried(tmp_path: Path) -> None:
    sleeps: list[float] = []
    transport = ScriptedTransport(TransportError.from_status(401, "bad key"), _text("unused"))
    loop = _loop(transport, build_default_registry(tmp_path), sleeps=sleeps)

    result = loop.run("hi")

    assert result.reason is TerminationReason.TRANSPORT_FATAL
    assert len(transport.requests) == 1
    assert sleeps == []


def test_stream_without_completion_is_retried(tmp_path: Path) -> None:
    transport = ScriptedTransport([TextDelta("cut")], _text("whole"))
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("hi")

    assert result.final_text == "whole"
    assert len(transport.requests) == 2


def test_conflicting_fragments_abort_with_protocol_error(tmp_path: Path) -> None:
    transport = ScriptedTransport(
        [
            ToolCallDelta(index=0, id="a", name="read_file"),
            ToolCallDelta(index=0, name="write_file"),
            TurnComplete("tool-calls"),
        ]
    )
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("hi")

    assert result.reason is TerminationReason.PROTOCOL_ERROR
    assert [message.role for message in result.transcript] == ["system", "user"]


def test_turn_timeout_counts_as_transport_error(tmp_path: Path) -> None:
    def stall(stop_event):
        stop_event.wait(2)
        yield from ()

    transport = ScriptedTransport(stall)
    loop = _loop(
        transport,
        build_default_registry(tmp_path),
        settings=_settings(turn_timeout_seconds=0.05, max_attempts=1),
    )

    result = loop.run("hi")

    assert result.reason is TerminationReason.TRANSPORT_EXHAUSTED


def test_cancel_during_streaming_keeps_committed_transcript(tmp_path: Path) -> None:
    def slow(stop_event):
        yield TextDelta("thinking")
        stop_event.wait(5)

    transport = ScriptedTransport(slow)
    loop = _loop(transport, build_default_registry(tmp_path))
    threading.Timer(0.1, loop.cancel).start()

    started = time.monotonic()
    result = loop.run("hi")

    assert time.monotonic() - started < 2
    assert result.status is LoopStatus.ABORTED
    assert result.reason is TerminationReason.CANCELLED
    assert [message.role for message in result.transcript] == ["system", "user"]


def test_cancel_during_tool_execution(tmp_path: Path) -> None:
    release = threading.Event()
    entered = threading.Event()

    def block(_payload: dict) -> ToolOutput:
        entered.set()
        release.wait(5)
        return ToolOutput(content="late")

    registry = ToolRegistry(
        toolkits=[
            Toolkit(
                name="slow",
                version="0",
                description="",
                tools=[Tool(name="block", description="", input_schema={}, handler=block)],
            )
        ]
    )
    transport = ScriptedTransport(_calls(("b", "block", "{}")))
    loop = _loop(transport, registry)

    def cancel_when_running() -> None:
        entered.wait(2)
        loop.cancel()

    threading.Thread(target=cancel_when_running, daemon=True).start()
    try:
        result = loop.run("hi")
    finally:
        release.set()

    assert result.reason is TerminationReason.CANCELLED
    assert result.transcript[-1].role == "assistant"
    assert all(message.role != "tool" for message in result.transcript)


def test_loop_is_single_use(tmp_path: Path) -> None:
    transport = ScriptedTransport(_text("one"))
    loop = _loop(transport, build_default_registry(tmp_path))
    loop.run("first")

    with pytest.raises(AgentLoopError):
        loop.run("second")


def test_observers_see_finalized_messages_and_failures_are_contained(tmp_path: Path) -> None:
    seen: list[str] = []
    statuses: list[LoopStatus] = []

    class Recorder(LoopObserver):
        def on_message_appended(self, session_id: str, message: Message) -> None:
            seen.append(message.role)

        def on_status_changed(self, session_id: str, status: LoopStatus) -> None:
            statuses.append(status)

    class BrokenSink:
        def on_message_appended(self, session_id: str, message: Message) -> None:
            raise OSError("disk full")

    transport = ScriptedTransport(_text("ok"))
    loop = _loop(
        transport,
        build_default_registry(tmp_path),
        observers=[Recorder()],
        sinks=[BrokenSink()],
        history=[Message.user("earlier"), Message.assistant("reply")],
    )

    result = loop.run("hi")

    assert result.reason is TerminationReason.COMPLETED
    assert seen == ["user", "assistant"]
    assert statuses[0] is LoopStatus.REQUESTING
    assert statuses[-1] is LoopStatus.FINISHED
    assert transport.requests[0]["transcript"][1] == Message.user("earlier")


def test_tools_disabled_sends_empty_catalog(tmp_path: Path) -> None:
    transport = ScriptedTransport(_text("ok"))
    loop = _loop(transport, build_default_registry(tmp_path), settings=_settings(tools_enabled=False))

    loop.run("hi")

    assert transport.requests[0]["catalog"] == ()


def test_sanitize_history_drops_incomplete_tool_blocks() -> None:
    complete = Message.assistant(None, [ToolCallRef(id="a", name="read_file")])
    dangling = Message.assistant(None, [ToolCallRef(id="b", name="read_file"), ToolCallRef(id="c", name="glob")])
    messages = [
        Message.system("old prompt"),
        Message.user("task"),
        complete,
        Message.tool(ToolResult(tool_call_id="a", output_text="data")),
        Message.user("next"),
        dangling,
        Message.tool(ToolResult(tool_call_id="b", output_text="partial")),
    ]

    cleaned = sanitize_history(messages)

    assert [message.role for message in cleaned] == ["user", "assistant", "tool", "user"]
    assert cleaned[1] is complete


def test_cancel_stops_a_running_shell_command(tmp_path: Path) -> None:
    transport = ScriptedTransport(
        _calls(("c", "run_shell_command", '{"command": "sleep 1; touch marker"}'))
    )
    loop = _loop(transport, build_default_registry(tmp_path), safety_mode=SafetyMode.ALWAYS_ALLOW)
    threading.Timer(0.3, loop.cancel).start()

    result = loop.run("touch a marker slowly")

    assert result.reason is TerminationReason.CANCELLED
    time.sleep(1.5)
    assert not (tmp_path / "marker").exists()


def test_failing_prompter_denies_instead_of_crashing(tmp_path: Path) -> None:
    class BrokenPrompter:
        def request_confirmation(self, tool_name: str, target_description: str, preview_text: str) -> PermissionDecision:
            raise OSError("terminal went away")

    transport = ScriptedTransport(
        _calls(("w", "write_file", '{"path": "a.txt", "content": "x"}')),
        _text("could not write"),
    )
    loop = _loop(transport, build_default_registry(tmp_path), prompter=BrokenPrompter())

    result = loop.run("write a.txt")

    assert result.status is LoopStatus.FINISHED
    assert not (tmp_path / "a.txt").exists()
    tool_message = result.transcript[3]
    assert tool_message.role == "tool"
    assert tool_message.content == "denied by user"


def test_empty_turn_finishes_with_empty_text(tmp_path: Path) -> None:
    transport = ScriptedTransport([TurnComplete("stop")])
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("say nothing")

    assert result.status is LoopStatus.FINISHED
    assert result.reason is TerminationReason.COMPLETED
    assert result.final_text == ""
    assert result.truncated is False


def test_length_finish_marks_the_answer_truncated(tmp_path: Path) -> None:
    transport = ScriptedTransport(_text("a long answer that was cu", reason="length"))
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("explain everything")

    assert result.reason is TerminationReason.COMPLETED
    assert result.final_text == "a long answer that was cu"
    assert result.truncated is True


def test_usage_is_summed_over_turns(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("hello\n")
    transport = ScriptedTransport(
        [
            ToolCallDelta(index=0, id="r", name="read_file", arguments='{"path": "a.txt"}'),
            TurnComplete("tool-calls", TokenUsage(input_tokens=50, output_tokens=10)),
        ],
        [TextDelta("It says hello."), TurnComplete("stop", TokenUsage(input_tokens=70, output_tokens=4))],
    )
    loop = _loop(transport, build_default_registry(tmp_path))

    result = loop.run("what is in a.txt?")

    assert result.usage == TokenUsage(input_tokens=120, output_tokens=14)
    assert result.usage.total_tokens == 134


def test_turns_without_usage_leave_totals_at_zero(tmp_path: Path) -> None:
    loop = _loop(ScriptedTransport(_text("ok")), build_default_registry(tmp_path))

    assert loop.run("hi").usage == TokenUsage()


def test_observers_receive_tool_results_with_error_flag(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("error: this is just file content\n")
    flags: list[tuple[str, bool]] = []

    class Recorder(LoopObserver):
        def on_tool_result(self, session_id: str, result: ToolResult) -> None:
            flags.append((result.tool_call_id, result.is_error))

    transport = ScriptedTransport(
        _calls(("good", "read_file", '{"path": "a.txt"}'), ("bad", "read_file", '{"path": "nope.txt"}')),
        _text("done"),
    )
    loop = _loop(transport, build_default_registry(tmp_path), observers=[Recorder()])

    loop.run("read both")

    assert flags == [("good", False), ("bad", True)]


def test_sanitize_history_drops_forced_final_directive() -> None:
    messages = [
        Message.user("task"),
        Message.user(FORCED_FINAL_DIRECTIVE),
        Message.assistant("summary"),
        Message.user("follow-up"),
    ]

    cleaned = sanitize_history(messages)

    assert [message.content for message in cleaned] == ["task", "summary", "follow-up"]
