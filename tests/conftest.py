"""Shared fixtures: settings without network, a scripted model, an echo tool registry."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import pytest

from maitre.api.checkpoint import MemoryCheckpointer
from maitre.api.models import ModelResponse, ToolCall, Turn
from maitre.api.tools import ToolRegistry
from maitre.config import Settings
from maitre.errors import ModelError

# ---------------------------------------------------------------------------
# Scripted model invoker
# ---------------------------------------------------------------------------


def reply(text: str = "", *calls: ToolCall, usage: dict[str, int] | None = None) -> ModelResponse:
    """Canned model response: text plus optional tool calls."""
    turn = Turn.assistant(text, list(calls))
    return ModelResponse(
        turn=turn,
        stop_reason="tool_use" if calls else "end_turn",
        usage=usage,
    )


class ScriptedInvoker:
    """Plays back a fixed list of responses (or errors) and records prompts.

    stream() yields the response text word by word, then the response.
    An optional gate (asyncio.Event) blocks each call until it is set.
    """

    def __init__(self, script: Sequence[ModelResponse | ModelError]) -> None:
        self.script = list(script)
        self.prompts: list[list[Turn]] = []
        self.tools: list[Any] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def _next(self, prompt: Sequence[Turn], tools: Any) -> ModelResponse:
        self.prompts.append(list(prompt))
        self.tools.append(tools)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.script:
            raise AssertionError("model called more times than scripted")
        item = self.script.pop(0)
        if isinstance(item, ModelError):
            raise item
        return item

    async def invoke(
        self,
        prompt: Sequence[Turn],
        tools: Any = None,
        temperature: float | None = None,
    ) -> ModelResponse:
        return await self._next(prompt, tools)

    async def stream(
        self,
        prompt: Sequence[Turn],
        tools: Any = None,
        temperature: float | None = None,
    ) -> AsyncGenerator[str | ModelResponse, None]:
        response = await self._next(prompt, tools)
        words = response.turn.content.split(" ")
        for i, word in enumerate(words):
            if word:
                yield word if i == len(words) - 1 else f"{word} "
        yield response

    @property
    def calls(self) -> int:
        return len(self.prompts)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings that never touch the network or download encodings."""
    return Settings(
        ANTHROPIC_API_KEY="test-key-123",
        BACKEND_API_KEY="backend-key",
        backend_url="http://backend.test/graphql",
        token_counter="estimate",
        token_budget=1200,
        model_retry_backoff=0.0,
        max_round_trips=10,
        tool_timeout=5.0,
    )


@pytest.fixture
def checkpointer() -> MemoryCheckpointer:
    return MemoryCheckpointer()


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry with a lookup tool that echoes its arguments."""
    reg = ToolRegistry()
    reg.calls = []

    async def lookup(confirmationId: str) -> dict:
        reg.calls.append(confirmationId)
        return {"confirmationId": confirmationId, "status": "CONFIRMED", "partySize": 2}

    reg.register(
        "reservationLookup",
        lookup,
        {
            "type": "object",
            "description": "Look up a reservation.",
            "properties": {"confirmationId": {"type": "string", "minLength": 1}},
            "required": ["confirmationId"],
            "additionalProperties": False,
        },
        narration="Looking up reservation {confirmationId}...",
    )
    return reg


def char_counter(text: str) -> int:
    """One token per character, for exact budget arithmetic in tests."""
    return len(text)
