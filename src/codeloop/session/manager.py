"""Session lifecycle utilities."""

from __future__ import annotations

import json
import logging
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from codeloop.core.config import default_config_dir
from codeloop.core.logs import redact
from codeloop.core.messages import Message

logger = logging.getLogger(__name__)

MAX_SESSIONS = 20
# Upper bound enforced when persisting session transcripts.
TRANSCRIPT_LIMIT = 1000


def _default_root() -> Path:
    return default_config_dir() / "sessions"


class SessionLoadError(RuntimeError):
    """Raised when a session directory exists but cannot be deserialized."""


class SessionMetadata(BaseModel):
    session_id: str
    created_at: datetime
    updated_at: datetime
    model: str | None = None
    workspace: str | None = None
    task_count: int = 0
    step_count: int = 0
    last_termination: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class SessionContext:
    metadata: SessionMetadata
    transcript: list[Message] = field(default_factory=list)
    timestamps: list[str] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.metadata.session_id

    def append(self, message: Message) -> None:
        self.transcript.append(message)
        self.timestamps.append(datetime.now(UTC).isoformat())


class SessionManager:
    def __init__(self, root: Path | None = None) -> None:
        self.root = root or _default_root()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def start(
        self,
        session_id: str | None = None,
        *,
        model: str | None = None,
        workspace: str | None = None,
    ) -> SessionContext:
        if session_id:
            context = self._load_existing(session_id)
            if model:
                context.metadata.model = model
            return context
        return self._create_new(model=model, workspace=workspace)

    def save(self, context: SessionContext) -> None:
        with self._lock:
            context.transcript = context.transcript[-TRANSCRIPT_LIMIT:]
            context.timestamps = context.timestamps[-TRANSCRIPT_LIMIT:]
            context.metadata.updated_at = datetime.now(UTC)
            session_dir = self.root / context.metadata.session_id
            session_dir.mkdir(parents=True, exist_ok=True)
            state_path = session_dir / "state.json"
            payload = json.dumps(
                {
                    "metadata": context.metadata.model_dump(mode="json"),
                    "transcript": self._serialize_transcript(context),
                },
                default=str,
                indent=2,
            )
            tmp_path = state_path.with_suffix(".json.tmp")
            tmp_path.write_text(payload)
            tmp_path.replace(state_path)
            self._enforce_rotation(keep=context.metadata.session_id)

    def list_sessions(self) -> list[SessionMetadata]:
        sessions: list[SessionMetadata] = []
        for state_path in self.root.glob("*/state.json"):
            try:
                data = json.loads(state_path.read_text())
                sessions.append(SessionMetadata(**data["metadata"]))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValidationError):
                logger.debug("Skipping unreadable session at %s", state_path.parent)
        return sorted(sessions, key=lambda item: item.updated_at, reverse=True)

    # ------------------------------------------------------------------
    def _create_new(self, *, model: str | None, workspace: str | None) -> SessionContext:
        session_id = uuid.uuid4().hex[:12]
        now = datetime.now(UTC)
        metadata = SessionMetadata(
            session_id=session_id,
            created_at=now,
            updated_at=now,
            model=model,
            workspace=workspace,
        )
        context = SessionContext(metadata=metadata)
        self.save(context)
        return context

    def _load_existing(self, session_id: str) -> SessionContext:
        session_dir = self.root / session_id
        state_path = session_dir / "state.json"
        if not state_path.exists():
            raise FileNotFoundError(f"Session '{session_id}' not found")
        try:
            data = json.loads(state_path.read_text())
        except json.JSONDecodeError as exc:
            raise SessionLoadError(f"Session '{session_id}' state is corrupted") from exc
        if not isinstance(data, dict):
            raise SessionLoadError(f"Session '{session_id}' state is corrupted")

        try:
            metadata = SessionMetadata(**data["metadata"])
        except (KeyError, TypeError, ValidationError) as exc:
            raise SessionLoadError(f"Session '{session_id}' metadata is invalid") from exc

        transcript_raw = data.get("transcript", [])
        if not isinstance(transcript_raw, list):
            raise SessionLoadError(f"Session '{session_id}' transcript is invalid")
        context = SessionContext(metadata=metadata)
        for entry in transcript_raw[-TRANSCRIPT_LIMIT:]:
            message = self._deserialize_entry(entry)
            if message is None:
                continue
            context.transcript.append(message)
            timestamp = entry.get("timestamp")
            context.timestamps.append(
                timestamp if isinstance(timestamp, str) else datetime.now(UTC).isoformat()
            )
        return context

    def _enforce_rotation(self, *, keep: str | None = None) -> None:
        sessions = sorted(
            (path for path in self.root.iterdir() if path.is_dir()),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for extra in sessions[MAX_SESSIONS:]:
            if extra.name == keep:
                continue
            shutil.rmtree(extra, ignore_errors=True)

    @staticmethod
    def _serialize_transcript(context: SessionContext) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for index, message in enumerate(context.transcript):
            record = message.to_wire()
            if index < len(context.timestamps):
                record["timestamp"] = context.timestamps[index]
            records.append(record)
        return records

    @staticmethod
    def _deserialize_entry(entry: Any) -> Message | None:
        if not isinstance(entry, dict) or not isinstance(entry.get("role"), str):
            return None
        try:
            return Message.from_wire(entry)
        except (KeyError, TypeError, ValueError, ValidationError):
            logger.debug("Dropping malformed transcript entry: %r", entry)
            return None

    # ------------------------------------------------------------------
    def export_session(self, session_id: str, *, redact_secrets: bool = True) -> dict[str, Any]:
        context = self._load_existing(session_id)
        metadata = context.metadata.model_dump(mode="json")
        transcript = self._serialize_transcript(context)
        if redact_secrets:
            metadata = self._redact_mapping(metadata)
            transcript = [self._redact_mapping(item) for item in transcript]
        return {
            "metadata": metadata,
            "transcript": transcript,
        }

    def _redact_mapping(self, mapping: dict[str, Any]) -> dict[str, Any]:
        redacted: dict[str, Any] = {}
        for key, value in mapping.items():
            if isinstance(value, str):
                redacted[key] = redact(value)
            elif isinstance(value, dict):
                redacted[key] = self._redact_mapping(value)
            elif isinstance(value, list):
                redacted[key] = [
                    self._redact_mapping(item) if isinstance(item, dict) else item for item in value
                ]
            else:
                redacted[key] = value
        return redacted


class SessionPersistenceSink:
    """Persists every finalized transcript message of the agent loop."""

    def __init__(self, manager: SessionManager, context: SessionContext) -> None:
        self.manager = manager
        self.context = context

    def on_message_appended(self, session_id: str, message: Message) -> None:
        if message.role == "system":
            return
        if session_id != self.context.session_id:
            logger.warning(
                "Message for session %s routed to sink of %s", session_id, self.context.session_id
            )
        self.context.append(message)
        self.manager.save(self.context)


__all__ = [
    "MAX_SESSIONS",
    "SessionContext",
    "SessionLoadError",
    "SessionManager",
    "SessionMetadata",
    "SessionPersistenceSink",
    "TRANSCRIPT_LIMIT",
]
