from __future__ import annotations

from pathlib import Path

import pytest

from codeloop.core.tool_registry import (
    Tool,
    ToolAlreadyRegisteredError,
    Toolkit,
    ToolkitAlreadyRegisteredError,
    ToolInvocationError,
    ToolNotFoundError,
    ToolOutput,
    ToolRegistry,
    build_default_registry,
)


def _echo_tool(name: str = "echo") -> Tool:
    def handler(payload: dict[str, str]) -> ToolOutput:
        return ToolOutput(content=f"Echo: {payload['text']}")

    return Tool(name=name, description="Echo tool", input_schema={"type": "object"}, handler=handler)


def test_register_and_invoke_tool() -> None:
    registry = ToolRegistry()
    registry.register(_echo_tool())

    result = registry.invoke("echo", {"text": "hello"})

    assert result.content == "Echo: hello"


def test_duplicate_registration_raises() -> None:
    registry = ToolRegistry()
    registry.register(_echo_tool())

    with pytest.raises(ToolAlreadyRegisteredError):
        registry.register(_echo_tool())


def test_toolkit_registration_rolls_back_on_conflict() -> None:
    registry = ToolRegistry()
    registry.register(_echo_tool("taken"))
    toolkit = Toolkit(name="demo", version="1", description="", tools=[_echo_tool("fresh"), _echo_tool("taken")])

    with pytest.raises(ToolAlreadyRegisteredError):
        registry.add_toolkit(toolkit)

    assert "fresh" not in registry.available_tools()
    assert "demo" not in registry.available_toolkits()


def test_toolkit_cannot_be_added_twice() -> None:
    registry = ToolRegistry()
    toolkit = Toolkit(name="demo", version="1", description="", tools=[_echo_tool()])
    registry.add_toolkit(toolkit)

    with pytest.raises(ToolkitAlreadyRegisteredError):
        registry.add_toolkit(toolkit)
    registry.add_toolkit(toolkit, overwrite=True)


def test_unknown_tool_raises() -> None:
    with pytest.raises(ToolNotFoundError):
        ToolRegistry().invoke("missing")


def test_handler_exceptions_are_wrapped() -> None:
    def boom(_payload: dict) -> ToolOutput:
        raise RuntimeError("kaput")

    registry = ToolRegistry()
    registry.register(Tool(name="boom", description="", input_schema={}, handler=boom))

    with pytest.raises(ToolInvocationError, match="kaput"):
        registry.invoke("boom")


def test_default_registry_catalog(tmp_path: Path) -> None:
    registry = build_default_registry(tmp_path)
    names = [definition.name for definition in registry.tool_catalog()]

    assert names == [
        "read_file",
        "list_files",
        "write_file",
        "edit_file",
        "grep",
        "glob",
        "run_shell_command",
        "web_search",
    ]
    mutating = {name for name, tool in registry.available_tools().items() if tool.mutating}
    assert mutating == {"write_file", "edit_file", "run_shell_command"}
    wire = registry.tool_catalog()[0].to_wire()
    assert wire["type"] == "function"
    assert wire["function"]["parameters"]["required"] == ["path"]


def test_remove_toolkit_drops_its_tools() -> None:
    registry = ToolRegistry()
    registry.add_toolkit(Toolkit(name="demo", version="1", description="", tools=[_echo_tool("a"), _echo_tool("b")]))
    assert registry.toolkit_for("a") == "demo"
    catalog = registry.tool_catalog()

    registry.remove_toolkit("demo")

    assert registry.available_tools() == {}
    assert registry.toolkit_for("a") is None
    assert registry.tool_catalog() == ()
    assert len(catalog) == 2


def test_duplicate_names_inside_toolkit_are_rejected() -> None:
    registry = ToolRegistry()
    toolkit = Toolkit(name="demo", version="1", description="", tools=[_echo_tool("a"), _echo_tool("a")])

    with pytest.raises(ToolAlreadyRegisteredError):
        registry.add_toolkit(toolkit)
    assert registry.available_tools() == {}
