"""Registry of the tools the agent loop may call."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from codeloop.core.messages import ToolDefinition
from codeloop.core.tools import DEFAULT_TOOLKIT_FACTORIES
from codeloop.core.tools.base import (
    Tool,
    ToolAlreadyRegisteredError,
    ToolInvocationError,
    Toolkit,
    ToolkitAlreadyRegisteredError,
    ToolNotFoundError,
    ToolOutput,
    ToolRegistryError,
    Workspace,
)

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Maps tool names to handlers and remembers which toolkit owns each tool.

    Toolkits are added atomically: every name is checked before anything is
    registered, so a conflict leaves the registry unchanged. The catalog keeps
    registration order, which is the order advertised to the model.
    """

    def __init__(self, toolkits: list[Toolkit] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self._owners: dict[str, str] = {}
        self._toolkits: dict[str, Toolkit] = {}
        self._catalog: tuple[ToolDefinition, ...] | None = None
        self._lock = threading.RLock()
        for toolkit in toolkits or []:
            self.add_toolkit(toolkit)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def add_toolkit(self, toolkit: Toolkit, *, overwrite: bool = False) -> None:
        with self._lock:
            if toolkit.name in self._toolkits:
                if not overwrite:
                    raise ToolkitAlreadyRegisteredError(f"Toolkit '{toolkit.name}' already registered")
                self.remove_toolkit(toolkit.name)
            seen: set[str] = set()
            for tool in toolkit.tools:
                if tool.name in seen or (tool.name in self._tools and not overwrite):
                    raise ToolAlreadyRegisteredError(f"Tool '{tool.name}' already registered")
                seen.add(tool.name)
            for tool in toolkit.tools:
                self._put(tool, owner=toolkit.name)
            self._toolkits[toolkit.name] = toolkit
            logger.debug("Registered toolkit %s (%d tools)", toolkit.name, len(toolkit.tools))

    def remove_toolkit(self, name: str) -> None:
        with self._lock:
            toolkit = self._toolkits.pop(name, None)
            if toolkit is None:
                return
            for tool in toolkit.tools:
                if self._owners.get(tool.name) == name:
                    self.unregister(tool.name)

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        """Register a standalone tool that belongs to no toolkit."""
        with self._lock:
            if tool.name in self._tools and not overwrite:
                raise ToolAlreadyRegisteredError(f"Tool '{tool.name}' already registered")
            self._put(tool, owner=None)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._tools.pop(name, None)
            self._owners.pop(name, None)
            self._catalog = None

    def _put(self, tool: Tool, *, owner: str | None) -> None:
        self._tools[tool.name] = tool
        if owner is None:
            self._owners.pop(tool.name, None)
        else:
            self._owners[tool.name] = owner
        self._catalog = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Unknown tool '{name}'")
        return tool

    def toolkit_for(self, tool_name: str) -> str | None:
        return self._owners.get(tool_name)

    def available_tools(self) -> dict[str, Tool]:
        with self._lock:
            return dict(self._tools)

    def available_toolkits(self) -> dict[str, Toolkit]:
        with self._lock:
            return dict(self._toolkits)

    def tool_catalog(self) -> tuple[ToolDefinition, ...]:
        with self._lock:
            if self._catalog is None:
                self._catalog = tuple(tool.definition() for tool in self._tools.values())
            return self._catalog

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------
    def invoke(
        self,
        name: str,
        payload: dict[str, Any] | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ToolOutput:
        """Run ``name`` with ``payload``; handler failures surface as ToolInvocationError."""
        tool = self.get(name)
        try:
            if tool.cancellable:
                return tool.handler(payload or {}, cancel_event)
            return tool.handler(payload or {})
        except ToolInvocationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("Tool %s raised", name, exc_info=True)
            raise ToolInvocationError(f"Tool '{name}' failed: {exc}") from exc


def build_default_registry(workspace: Workspace | Path | str | None = None) -> ToolRegistry:
    """Registry with the file, search, command and web toolkits bound to ``workspace``."""
    if not isinstance(workspace, Workspace):
        workspace = Workspace(root=Path(workspace) if workspace is not None else Path.cwd())
    return ToolRegistry(toolkits=[factory(workspace) for factory in DEFAULT_TOOLKIT_FACTORIES])


__all__ = [
    "Tool",
    "ToolAlreadyRegisteredError",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolOutput",
    "ToolRegistry",
    "ToolRegistryError",
    "Toolkit",
    "ToolkitAlreadyRegisteredError",
    "Workspace",
    "build_default_registry",
]
