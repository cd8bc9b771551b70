"""Core services for codeloop."""

from .config import (
    CodeloopConfig,
    ConfigContext,
    ConfigManager,
    ConfigurationError,
)
from .agent_loop import (
    AgentLoop,
    AgentLoopError,
    AgentRunResult,
    AgentState,
    CancellationToken,
    LoopSettings,
    LoopStatus,
    TerminationReason,
)
from .assembler import AssembledTurn, AssemblyError, ResponseAssembler
from .budget import FORCED_FINAL_DIRECTIVE, StepBudget
from .dispatcher import ArgumentParseError, ToolDispatcher
from .doom_loop import DoomLoopDetector
from .events import LoopObserver, PersistenceSink
from .logs import LogBuffer, LogEntry
from .messages import Message, ToolCallRef, ToolDefinition, ToolResult
from .permissions import PermissionDecision, PermissionGate, PermissionPrompter, SafetyMode
from .tool_registry import (
    ToolRegistry,
    ToolRegistryError,
    Toolkit,
    ToolkitAlreadyRegisteredError,
    Workspace,
    build_default_registry,
)

__all__ = [
    "AgentLoop",
    "AgentLoopError",
    "AgentRunResult",
    "AgentState",
    "ArgumentParseError",
    "AssembledTurn",
    "AssemblyError",
    "CancellationToken",
    "CodeloopConfig",
    "ConfigContext",
    "ConfigManager",
    "ConfigurationError",
    "DoomLoopDetector",
    "FORCED_FINAL_DIRECTIVE",
    "LogBuffer",
    "LogEntry",
    "LoopObserver",
    "LoopSettings",
    "LoopStatus",
    "Message",
    "PermissionDecision",
    "PermissionGate",
    "PermissionPrompter",
    "PersistenceSink",
    "ResponseAssembler",
    "SafetyMode",
    "StepBudget",
    "TerminationReason",
    "ToolCallRef",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolRegistryError",
    "ToolResult",
    "Toolkit",
    "ToolkitAlreadyRegisteredError",
    "Workspace",
    "build_default_registry",
]
