"""Shared data models for the engine.

Turns are immutable once built. A Conversation is the append-only log for
one thread and enforces the ordering invariants on every append; trimming
and summarising always work on derived views, never on the stored log.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from maitre.errors import ErrorKind


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class Node(StrEnum):
    """State-machine nodes. END is terminal for the current external message."""

    AGENT = "agent"
    NARRATE = "narrate"
    TOOLS = "tools"
    END = "end"


def _now() -> datetime:
    return datetime.now(UTC)


class ToolCall(BaseModel):
    """A tool invocation requested by an assistant turn."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class Turn(BaseModel):
    """One message unit in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None  # role=tool only
    timestamp: datetime = Field(default_factory=_now)

    # Tool results
    payload: Any = None
    error: ToolError | None = None
    attempts: int = 1
    first_error: str | None = None

    # Assistant bookkeeping
    failed: bool = False
    error_kind: ErrorKind | None = None
    narration: bool = False
    usage: dict[str, int] | None = None

    @model_validator(mode="after")
    def _check_role_fields(self) -> Turn:
        if self.role == Role.TOOL and not self.tool_call_id:
            raise ValueError("tool turns require tool_call_id")
        if self.role != Role.TOOL and self.tool_call_id is not None:
            raise ValueError("tool_call_id is only valid on tool turns")
        if self.tool_calls and self.role != Role.ASSISTANT:
            raise ValueError("only assistant turns may carry tool_calls")
        return self

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(role=Role.USER, content=text)

    @classmethod
    def system(cls, text: str) -> Turn:
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def assistant(cls, text: str = "", tool_calls: list[ToolCall] | None = None, **extra: Any) -> Turn:
        return cls(role=Role.ASSISTANT, content=text, tool_calls=tuple(tool_calls or ()), **extra)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> Turn:
        """Terminal, user-visible failure turn."""
        return cls(role=Role.ASSISTANT, content=message, failed=True, error_kind=kind)

    @classmethod
    def tool_result(
        cls,
        call: ToolCall,
        payload: Any = None,
        error: ToolError | None = None,
        attempts: int = 1,
        first_error: str | None = None,
    ) -> Turn:
        if error is not None:
            content = f"{error.kind.value}: {error.message}"
        elif isinstance(payload, str):
            content = payload
        else:
            content = json.dumps(payload, ensure_ascii=False, default=str)
        return cls(
            role=Role.TOOL,
            content=content,
            tool_call_id=call.id,
            payload=payload if error is None else None,
            error=error,
            attempts=attempts,
            first_error=first_error,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_error(self) -> bool:
        return self.failed or self.error is not None

    def text_parts(self) -> list[str]:
        """Text pieces that count against the token budget."""
        parts = [self.content] if self.content else []
        for call in self.tool_calls:
            parts.append(call.name)
            parts.append(json.dumps(call.arguments, sort_keys=True, ensure_ascii=False))
        return parts


class Conversation(BaseModel):
    """Append-only turn log for one thread.

    Invariants checked on append:
      - a tool turn answers a ToolCall emitted by an earlier assistant turn
      - at most one tool turn per ToolCall
    """

    thread_id: str
    turns: list[Turn] = Field(default_factory=list)
    summary: str | None = None

    _call_ids: dict[str, ToolCall] = PrivateAttr(default_factory=dict)
    _answered: set[str] = PrivateAttr(default_factory=set)

    def model_post_init(self, __context: Any) -> None:
        for turn in self.turns:
            self._index(turn)

    def _index(self, turn: Turn) -> None:
        for call in turn.tool_calls:
            self._call_ids[call.id] = call
        if turn.role == Role.TOOL and turn.tool_call_id:
            self._answered.add(turn.tool_call_id)

    def _check(self, turn: Turn, call_ids: dict[str, ToolCall], answered: set[str]) -> None:
        if turn.role == Role.TOOL:
            if turn.tool_call_id not in call_ids:
                raise ValueError(f"tool turn references unknown tool call {turn.tool_call_id!r}")
            if turn.tool_call_id in answered:
                raise ValueError(f"tool call {turn.tool_call_id!r} already has a result")
        for call in turn.tool_calls:
            if call.id in call_ids:
                raise ValueError(f"duplicate tool call id {call.id!r}")

    def append(self, turn: Turn) -> Turn:
        self._check(turn, self._call_ids, self._answered)
        self.turns.append(turn)
        self._index(turn)
        return turn

    def extend(self, turns: list[Turn]) -> None:
        """Append several turns atomically: all of them or none."""
        call_ids = dict(self._call_ids)
        answered = set(self._answered)
        for turn in turns:
            self._check(turn, call_ids, answered)
            for call in turn.tool_calls:
                call_ids[call.id] = call
            if turn.role == Role.TOOL and turn.tool_call_id:
                answered.add(turn.tool_call_id)
        for turn in turns:
            self.turns.append(turn)
            self._index(turn)

    @property
    def last(self) -> Turn | None:
        return self.turns[-1] if self.turns else None

    def has_result(self, call_id: str) -> bool:
        return call_id in self._answered

    def pending_tool_calls(self) -> list[ToolCall]:
        """Unanswered calls of the most recent assistant turn that made any."""
        for turn in reversed(self.turns):
            if turn.role == Role.ASSISTANT and turn.tool_calls and not turn.failed:
                return [c for c in turn.tool_calls if c.id not in self._answered]
            if turn.role == Role.USER:
                break
        return []

    def __len__(self) -> int:
        return len(self.turns)


class Checkpoint(BaseModel):
    """Per-thread snapshot: conversation, current node, round trips so far."""

    thread_id: str
    conversation: Conversation
    node: Node = Node.AGENT
    round_trips: int = 0
    updated_at: datetime = Field(default_factory=_now)


class ModelResponse(BaseModel):
    """Complete response from the model for one invocation."""

    turn: Turn
    stop_reason: str = ""
    usage: dict[str, int] | None = None
