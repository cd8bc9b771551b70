from __future__ import annotations

from codeloop.core.doom_loop import DoomLoopDetector, normalize_arguments


def test_triggers_on_third_identical_call_after_denial() -> None:
    detector = DoomLoopDetector()

    assert detector.observe("write_file", '{"path": "a"}') is False
    detector.record_denial()
    assert detector.observe("write_file", '{"path": "a"}') is False
    detector.record_denial()
    assert detector.observe("write_file", '{"path": "a"}') is True


def test_does_not_trigger_when_last_call_was_allowed() -> None:
    detector = DoomLoopDetector()

    detector.observe("read_file", '{"path": "a"}')
    detector.observe("read_file", '{"path": "a"}')

    assert detector.observe("read_file", '{"path": "a"}') is False


def test_non_matching_call_resets_the_streak() -> None:
    detector = DoomLoopDetector()

    detector.observe("write_file", '{"path": "a"}')
    detector.record_denial()
    detector.observe("write_file", '{"path": "a"}')
    detector.record_denial()
    detector.observe("write_file", '{"path": "b"}')
    detector.record_denial()

    assert detector.recent() == [("write_file", '{"path":"b"}')]
    assert detector.observe("write_file", '{"path": "a"}') is False


def test_key_order_and_whitespace_do_not_hide_a_repeat() -> None:
    detector = DoomLoopDetector()

    detector.observe("edit_file", '{"path": "a", "new_string": "x"}')
    detector.record_denial()
    detector.observe("edit_file", '{"new_string":"x","path":"a"}')
    detector.record_denial()

    assert detector.observe("edit_file", '{ "path" : "a" , "new_string" : "x" }') is True


def test_unparseable_arguments_compare_verbatim() -> None:
    assert normalize_arguments("not json") == "not json"
    assert normalize_arguments('{"b": 1, "a": 2}') == '{"a":2,"b":1}'


def test_keeps_triggering_while_the_streak_continues() -> None:
    detector = DoomLoopDetector()
    for _ in range(2):
        detector.observe("run_shell_command", '{"command": "rm -rf build"}')
        detector.record_denial()

    assert detector.observe("run_shell_command", '{"command": "rm -rf build"}') is True
    detector.record_denial()
    assert detector.observe("run_shell_command", '{"command": "rm -rf build"}') is True


def test_reset_clears_the_window() -> None:
    detector = DoomLoopDetector()
    detector.observe("write_file", "{}")
    detector.reset()

    assert detector.recent() == []
