"""Session management utilities for codeloop."""

from .manager import (
    MAX_SESSIONS,
    TRANSCRIPT_LIMIT,
    SessionContext,
    SessionLoadError,
    SessionManager,
    SessionMetadata,
    SessionPersistenceSink,
)

__all__ = [
    "MAX_SESSIONS",
    "SessionContext",
    "SessionLoadError",
    "SessionManager",
    "SessionMetadata",
    "SessionPersistenceSink",
    "TRANSCRIPT_LIMIT",
]
