"""Agent runner -- executes the orchestration state machine per thread.

Each external message:
1. Load (or create) the thread's checkpoint, append the user turn
2. AGENT: trim + summarise the log into a prompt, invoke the model
3. NARRATE (optional): log a status turn describing the tool calls
4. TOOLS: execute pending tool calls in order, append all results at once
5. Repeat from AGENT until the model answers without tools -> END

A checkpoint is saved after every transition. Threads are serialised by a
per-thread lock; distinct threads share nothing but the checkpoint store.
"""

from __future__ import annotations

import logging
import weakref
from asyncio import Lock
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime

from maitre.api.checkpoint import Checkpointer
from maitre.api.compaction import (
    ChunkSummarizer,
    HistorySummarizer,
    TokenBudgeter,
    TokenCounter,
    TokenEstimator,
    build_counter,
)
from maitre.api.graph import (
    loop_bound_reached,
    narrate,
    narration_turn,
    route_after_agent,
    route_after_narrate,
    route_after_tools,
)
from maitre.api.llm import ModelInvoker
from maitre.api.models import Checkpoint, Conversation, ModelResponse, Node, Role, Turn
from maitre.api.streaming import EventType, StreamEvent
from maitre.api.tools import ToolExecutor, ToolRegistry
from maitre.config import Settings
from maitre.errors import BudgetUnsatisfiable, ErrorKind, LoopBoundExceeded, ModelError
from maitre.prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# User-facing text of terminal failure turns
_FAILURE_TEXT: dict[ErrorKind, str] = {
    ErrorKind.MODEL_TIMEOUT: "Sorry, I'm taking too long to respond right now. Please try again in a moment.",
    ErrorKind.MODEL_TRANSPORT_FAILURE: "Sorry, I couldn't reach the assistant service. Please try again in a moment.",
    ErrorKind.BUDGET_UNSATISFIABLE: "Sorry, that message is too long for me to handle. Could you shorten it?",
    ErrorKind.LOOP_BOUND_EXCEEDED: "Sorry, I got stuck working on that request. Could you rephrase it?",
}


@dataclass
class ChatResult:
    """Outcome of one non-streaming external message."""

    thread_id: str
    turn: Turn | None
    tool_results: list[Turn] = field(default_factory=list)


class AgentRunner:
    """Runs conversational turns for any number of threads.

    Constructed once at process start and shared; holds no per-thread
    state outside the checkpoint store and the per-thread locks.
    """

    def __init__(
        self,
        settings: Settings,
        invoker: ModelInvoker,
        registry: ToolRegistry,
        checkpointer: Checkpointer,
        summarizer: HistorySummarizer | None = None,
        counter: TokenCounter | None = None,
    ) -> None:
        self._settings = settings
        self._invoker = invoker
        self._registry = registry
        self._executor = ToolExecutor(registry, timeout=settings.tool_timeout)
        self._checkpointer = checkpointer
        self._counter = counter or build_counter(settings)
        self._budgeter = TokenBudgeter(settings.token_budget, self._counter)
        self._summarizer = summarizer or ChunkSummarizer(settings.summary_chunk_chars)
        self._system_prompt = settings.system_prompt or SYSTEM_PROMPT
        self._locks: weakref.WeakValueDictionary[str, Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, thread_id: str) -> Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = Lock()
            self._locks[thread_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        thread_id: str,
        message: str,
        stream: bool = True,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Run one external message through the state machine, yielding events.

        A new message always re-enters at AGENT with a fresh round-trip count.
        """
        lock = self._lock_for(thread_id)
        async with lock:
            checkpoint = await self._checkpointer.load(thread_id)
            if checkpoint is None:
                conversation = Conversation(thread_id=thread_id)
                logger.info("New thread %s", thread_id)
            else:
                conversation = checkpoint.conversation
            conversation.append(Turn.user(message))
            state = Checkpoint(thread_id=thread_id, conversation=conversation, node=Node.AGENT)
            await self._save(state)
            async for event in self._run(state, stream):
                yield event

    async def resume(self, thread_id: str, stream: bool = True) -> AsyncGenerator[StreamEvent, None]:
        """Continue an interrupted turn from its checkpointed node.

        Raises LookupError if the thread has no checkpoint.
        """
        lock = self._lock_for(thread_id)
        async with lock:
            state = await self._checkpointer.load(thread_id)
            if state is None:
                raise LookupError(f"No checkpoint for thread {thread_id}")
            if state.node == Node.END:
                last = state.conversation.last
                if last is None or last.is_error or route_after_agent(last, narrate=False) != Node.AGENT:
                    return
                state.node = Node.AGENT
            if state.node == Node.TOOLS and not state.conversation.pending_tool_calls():
                state.node = Node.AGENT
            logger.info("Resuming thread %s at %s (round trips=%d)", thread_id, state.node, state.round_trips)
            async for event in self._run(state, stream):
                yield event

    async def run_turn(self, thread_id: str, message: str) -> ChatResult:
        """Non-streaming turn: returns the final turn and this turn's tool results."""
        result = ChatResult(thread_id=thread_id, turn=None)
        async for event in self.stream_chat(thread_id, message, stream=False):
            if event.type in (EventType.TURN_COMPLETE, EventType.ERROR) and event.turn is not None:
                result.turn = event.turn
        checkpoint = await self._checkpointer.load(thread_id)
        if checkpoint is not None:
            result.tool_results = _tool_results_since_last_user(checkpoint.conversation)
        return result

    async def get_checkpoint(self, thread_id: str) -> Checkpoint | None:
        return await self._checkpointer.load(thread_id)

    async def retire(self, thread_id: str) -> bool:
        """Delete a thread's checkpoint once no turn is running on it."""
        async with self._lock_for(thread_id):
            return await self._checkpointer.delete(thread_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, state: Checkpoint, stream: bool) -> AsyncGenerator[StreamEvent, None]:
        while state.node != Node.END:
            if state.node == Node.AGENT:
                async for event in self._agent_step(state, stream):
                    yield event
            elif state.node == Node.NARRATE:
                self._narrate_step(state)
                await self._save(state)
            elif state.node == Node.TOOLS:
                async for event in self._tools_step(state):
                    yield event

    async def _agent_step(self, state: Checkpoint, stream: bool) -> AsyncGenerator[StreamEvent, None]:
        conversation = state.conversation
        thread_id = state.thread_id

        try:
            prompt = await self.assemble_prompt(conversation)
        except BudgetUnsatisfiable as e:
            logger.error("Budget unsatisfiable for thread %s: %s", thread_id, e)
            yield await self._fail(state, e.kind, e.message)
            return

        tools = self._registry.tool_definitions() or None
        response: ModelResponse | None = None
        try:
            if stream:
                async with aclosing(self._invoker.stream(prompt, tools)) as fragments:
                    async for item in fragments:
                        if isinstance(item, ModelResponse):
                            response = item
                        else:
                            yield StreamEvent(type=EventType.TOKEN, thread_id=thread_id, text=item)
            else:
                response = await self._invoker.invoke(prompt, tools)
        except ModelError as e:
            logger.error("Model call failed for thread %s: %s", thread_id, e)
            yield await self._fail(state, e.kind, e.message)
            return

        if response is None:
            yield await self._fail(state, ErrorKind.MODEL_TRANSPORT_FAILURE, "Model stream ended without a response")
            return

        self._calibrate(prompt, response)
        turn = response.turn
        next_node = route_after_agent(turn, narrate=self._settings.narration_enabled)

        if next_node in (Node.NARRATE, Node.TOOLS) and loop_bound_reached(
            state.round_trips, self._settings.max_round_trips
        ):
            logger.warning(
                "Thread %s hit max_round_trips=%d; refusing %d more tool call(s)",
                thread_id, self._settings.max_round_trips, len(turn.tool_calls),
            )
            bound = LoopBoundExceeded(f"Exceeded {self._settings.max_round_trips} tool round trips")
            yield await self._fail(state, bound.kind, bound.message, before=[turn])
            return

        conversation.append(turn)
        state.node = next_node
        await self._save(state)

        if state.node == Node.END:
            yield StreamEvent(type=EventType.TURN_COMPLETE, thread_id=thread_id, text=turn.content, turn=turn)

    def _narrate_step(self, state: Checkpoint) -> None:
        pending = state.conversation.pending_tool_calls()
        if pending:
            state.conversation.append(narration_turn(pending, self._registry))
        state.node = route_after_narrate()

    async def _tools_step(self, state: Checkpoint) -> AsyncGenerator[StreamEvent, None]:
        thread_id = state.thread_id
        results: list[Turn] = []
        for call in state.conversation.pending_tool_calls():
            yield StreamEvent(
                type=EventType.TOOL_STARTED,
                thread_id=thread_id,
                tool_name=call.name,
                tool_call_id=call.id,
                text=narrate(call, self._registry) if self._settings.narration_enabled else "",
            )
            result = await self._executor.invoke(call)
            results.append(result)
            yield StreamEvent(
                type=EventType.TOOL_RESULT,
                thread_id=thread_id,
                tool_name=call.name,
                tool_call_id=call.id,
                text=result.content,
                payload=result.payload,
                error_kind=result.error.kind if result.error else None,
                turn=result,
            )

        # Results and the transition are committed together
        state.conversation.extend(results)
        state.round_trips += 1
        state.node = route_after_tools()
        await self._save(state)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def assemble_prompt(self, conversation: Conversation) -> list[Turn]:
        """System instructions + stable summary prefix + trimmed window."""
        system = Turn.system(self._system_prompt)
        log = [t for t in conversation.turns if not (t.narration or t.failed)]
        trimmed = self._budgeter.trim([system, *log])
        window = trimmed.window[1:]
        if log and not any(t.role == Role.USER for t in window):
            raise BudgetUnsatisfiable(
                f"newest user turn does not fit the token budget ({self._budgeter.budget})"
            )

        summary = await self._summarizer.summarize(conversation.thread_id, trimmed.evicted)
        if (summary or None) != conversation.summary:
            logger.info(
                "Thread %s summary updated (%d evicted turns, %d chars)",
                conversation.thread_id, len(trimmed.evicted), len(summary),
            )
            conversation.summary = summary or None

        prefix = [system]
        if summary:
            prefix.append(Turn.system(summary))
        return [*prefix, *window]

    def _calibrate(self, prompt: list[Turn], response: ModelResponse) -> None:
        if not isinstance(self._counter, TokenEstimator) or not response.usage:
            return
        input_tokens = response.usage.get("input_tokens", 0)
        chars = sum(len(part) for turn in prompt for part in turn.text_parts())
        self._counter.calibrate(chars, input_tokens)

    async def _fail(
        self,
        state: Checkpoint,
        kind: ErrorKind,
        detail: str,
        before: list[Turn] | None = None,
    ) -> StreamEvent:
        turn = Turn.failure(kind, _FAILURE_TEXT.get(kind, "Sorry, something went wrong."))
        state.conversation.extend([*(before or []), turn])
        state.node = Node.END
        await self._save(state)
        return StreamEvent(
            type=EventType.ERROR,
            thread_id=state.thread_id,
            text=detail,
            error_kind=kind,
            turn=turn,
        )

    async def _save(self, state: Checkpoint) -> None:
        state.updated_at = datetime.now(UTC)
        await self._checkpointer.save(state.thread_id, state)


def _tool_results_since_last_user(conversation: Conversation) -> list[Turn]:
    results: list[Turn] = []
    for turn in reversed(conversation.turns):
        if turn.role == Role.USER:
            break
        if turn.role == Role.TOOL:
            results.append(turn)
    results.reverse()
    return results
