"""Ordered event delivery from a running turn to its callers.

A ChatStream pumps one turn's event generator in a background task and
fans each event out to every subscriber queue in arrival order. Cancelling
the stream cancels the pump task, which interrupts the turn at its current
await point (model or tool network call) and stops forwarding immediately.
The runner only commits complete turns, so a cancelled turn never leaves a
partial turn in the log.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from maitre.api.models import Turn
from maitre.errors import ErrorKind

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TOKEN = "token-fragment"
    TOOL_STARTED = "tool-started"
    TOOL_RESULT = "tool-result"
    TURN_COMPLETE = "turn-complete"
    ERROR = "error"


@dataclass
class StreamEvent:
    """A single caller-facing event."""

    type: EventType
    thread_id: str
    text: str = ""
    tool_name: str = ""
    tool_call_id: str = ""
    payload: Any = None
    error_kind: ErrorKind | None = None
    turn: Turn | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "thread_id": self.thread_id}
        if self.text:
            data["text"] = self.text
        if self.tool_name:
            data["tool_name"] = self.tool_name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.payload is not None:
            data["payload"] = self.payload
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind.value
        return data


_DONE = object()


class ChatStream:
    """One in-flight external message: ordered events plus cancellation."""

    def __init__(
        self,
        thread_id: str,
        source: AsyncGenerator[StreamEvent, None],
        on_done: Callable[[ChatStream], None] | None = None,
    ) -> None:
        self.thread_id = thread_id
        self._source = source
        self._on_done = on_done
        self._subscribers: list[asyncio.Queue[Any]] = []
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self._primary = self._new_queue()

    def _new_queue(self) -> asyncio.Queue[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def start(self) -> ChatStream:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name=f"chat-stream-{self.thread_id}")
            if self._on_done is not None:
                self._task.add_done_callback(lambda _t: self._on_done(self))
        return self

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def subscribe(self) -> AsyncIterator[StreamEvent]:
        """Extra subscriber. Receives events published after this call."""
        return self._drain(self._new_queue())

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                self._publish(event)
        except asyncio.CancelledError:
            logger.info("Turn for thread %s cancelled", self.thread_id)
            raise
        except Exception as e:
            logger.exception("Turn for thread %s failed", self.thread_id)
            self._publish(StreamEvent(type=EventType.ERROR, thread_id=self.thread_id, text=str(e)))
        finally:
            await self._source.aclose()
            self._publish(_DONE)

    def _publish(self, item: Any) -> None:
        for queue in self._subscribers:
            queue.put_nowait(item)

    def cancel(self) -> None:
        """Stop the turn and stop forwarding events to subscribers."""
        if self._cancelled:
            return
        self._cancelled = True
        for queue in self._subscribers:
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(_DONE)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the pump to finish (normally or by cancellation)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise

    @staticmethod
    async def _drain(queue: asyncio.Queue[Any]) -> AsyncIterator[StreamEvent]:
        while True:
            item = await queue.get()
            if item is _DONE:
                return
            yield item

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._drain(self._primary)


class StreamMultiplexer:
    """Opens ChatStreams for turns and tracks them per thread for cancellation."""

    def __init__(self) -> None:
        self._active: dict[str, set[ChatStream]] = defaultdict(set)

    def open(
        self,
        thread_id: str,
        source_factory: Callable[[], AsyncGenerator[StreamEvent, None]],
    ) -> ChatStream:
        stream = ChatStream(thread_id, source_factory(), on_done=self._forget)
        self._active[thread_id].add(stream)
        stream.start()
        return stream

    def _forget(self, stream: ChatStream) -> None:
        streams = self._active.get(stream.thread_id)
        if streams is None:
            return
        streams.discard(stream)
        if not streams:
            self._active.pop(stream.thread_id, None)

    def active(self, thread_id: str) -> int:
        return len(self._active.get(thread_id, ()))

    async def cancel_thread(self, thread_id: str) -> int:
        """Cancel every in-flight turn for a thread; returns how many."""
        streams = list(self._active.get(thread_id, ()))
        for stream in streams:
            stream.cancel()
        for stream in streams:
            await stream.wait()
        return len(streams)

    async def close(self) -> None:
        for thread_id in list(self._active):
            await self.cancel_thread(thread_id)
