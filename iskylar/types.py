"""
Core data types shared across iSkylar subsystems.

This module defines the conversation containers that cross subsystem
boundaries. They live here rather than in a specific subsystem to avoid
circular imports between the graph, the engine, and the tool layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Optional

Role = Literal["user", "assistant", "system", "tool"]

# Synthetic first input sent by clients when a session opens. It is trusted
# input, so the safety interceptor never sees it.
SESSION_START_SENTINEL = "ISKYLAR_SESSION_START"


@dataclass(frozen=True)
class ToolCallRequest:
    """A single tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}


@dataclass(frozen=True)
class Message:
    """One turn in the conversation. Never mutated after it is appended."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: Optional[str] = None  # tool role only
    name: Optional[str] = None          # tool role only: which tool produced it

    def __post_init__(self) -> None:
        if self.role not in ("user", "assistant", "system", "tool"):
            raise ValueError(f"Unknown message role: {self.role!r}")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("Only assistant messages may carry tool calls.")
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("Tool messages require a tool_call_id.")
        # Accept lists from callers but store an immutable tuple.
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def assistant(
        cls,
        content: str = "",
        tool_calls: Iterable[ToolCallRequest] = (),
    ) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, name: str, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


class ConversationState:
    """
    Ordered, append-only message history for one orchestration run.

    New message lists are concatenated onto the existing history; nothing is
    ever removed or reordered. ``append`` never awaits, so on a single event
    loop two appends cannot interleave. Each run owns its own instance.
    """

    def __init__(self, messages: Iterable[Message] = (), sender: Optional[str] = None):
        self._messages: list[Message] = list(messages)
        self.sender = sender

    def append(self, *messages: Message, sender: Optional[str] = None) -> None:
        for message in messages:
            if not isinstance(message, Message):
                raise TypeError(f"Expected Message, got {type(message).__name__}")
        self._messages.extend(messages)
        if sender is not None:
            self.sender = sender

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def since(self, index: int) -> tuple[Message, ...]:
        """Messages appended after position ``index``."""
        return tuple(self._messages[index:])

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(tuple(self._messages))

    def __repr__(self) -> str:
        return f"ConversationState(messages={len(self._messages)}, sender={self.sender!r})"
