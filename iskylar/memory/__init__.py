"""Session memory: the cross-session summary contract and its adapters."""

from iskylar.memory.session_memory import (
    InMemorySessionMemory,
    JsonFileSessionMemory,
    SessionMemoryStore,
    SessionSummary,
    detect_circular_themes,
    extract_session_summary,
)

__all__ = [
    "InMemorySessionMemory",
    "JsonFileSessionMemory",
    "SessionMemoryStore",
    "SessionSummary",
    "detect_circular_themes",
    "extract_session_summary",
]
