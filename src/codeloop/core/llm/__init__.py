"""LLM transport package.

This namespace hosts the HTTP ``LLMClient`` along with the event types
(`types.py`), wire helpers (`transport.py`), and the offline stub
(`offline.py`). Importing from this module keeps the public surface stable
while the implementation stays modular for testing.
"""

from .client import LLMClient
from .errors import TransportError
from .offline import OfflineTransport
from .types import (
    FinishReason,
    LLMSettings,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolCallDelta,
    Transport,
    TurnComplete,
)

__all__ = [
    "FinishReason",
    "LLMClient",
    "LLMSettings",
    "OfflineTransport",
    "StreamEvent",
    "TextDelta",
    "TokenUsage",
    "ToolCallDelta",
    "Transport",
    "TransportError",
    "TurnComplete",
]
