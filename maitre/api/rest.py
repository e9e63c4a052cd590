"""REST API for the Maitre engine.

Endpoints:
  POST   /chat                      - Send message, get final response
  POST   /chat/stream               - Send message, SSE event stream
  POST   /chat/{thread_id}/resume   - Resume an interrupted turn (SSE)
  GET    /threads/{thread_id}       - Current checkpoint for a thread
  DELETE /threads/{thread_id}       - Cancel in-flight turns and retire the thread
  GET    /health                    - Health check
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Callable
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from maitre.api.models import Turn
from maitre.api.runner import AgentRunner
from maitre.api.streaming import StreamEvent, StreamMultiplexer
from maitre.config import Settings

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _turn_json(turn: Turn | None) -> dict[str, Any] | None:
    if turn is None:
        return None
    return turn.model_dump(mode="json", exclude_defaults=True)


async def _read_message(request: Request) -> tuple[str, str] | JSONResponse:
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    message = body.get("message")
    if not message or not isinstance(message, str):
        return JSONResponse({"error": "Missing required field: message"}, status_code=400)

    thread_id = body.get("thread_id") or str(uuid4())
    return thread_id, message


def create_app(
    runner: AgentRunner,
    multiplexer: StreamMultiplexer,
    settings: Settings,
    lifespan: Any | None = None,
    health_check: Callable[[], Any] | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _sse(
        thread_id: str,
        source_factory: Callable[[], AsyncGenerator[StreamEvent, None]],
    ) -> StreamingResponse:
        stream = multiplexer.open(thread_id, source_factory)

        async def event_generator():
            try:
                async for event in stream:
                    yield f"data: {json.dumps(event.to_dict())}\n\n"
            finally:
                # Client gone or stream finished; either way stop the turn
                stream.cancel()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={**_SSE_HEADERS, "X-Thread-Id": thread_id},
        )

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get the final response."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        thread_id, message = parsed

        try:
            result = await runner.run_turn(thread_id, message)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        turn = result.turn
        return JSONResponse({
            "thread_id": thread_id,
            "response": turn.content if turn else "",
            "error_kind": turn.error_kind.value if turn and turn.error_kind else None,
            "tool_results": [_turn_json(t) for t in result.tool_results],
        })

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        parsed = await _read_message(request)
        if isinstance(parsed, JSONResponse):
            return parsed
        thread_id, message = parsed
        return _sse(thread_id, lambda: runner.stream_chat(thread_id, message))

    async def resume(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/{thread_id}/resume - Continue from the last checkpoint."""
        thread_id = request.path_params["thread_id"]
        if await runner.get_checkpoint(thread_id) is None:
            return JSONResponse({"error": f"Unknown thread: {thread_id}"}, status_code=404)
        return _sse(thread_id, lambda: runner.resume(thread_id))

    async def get_thread(request: Request) -> JSONResponse:
        """GET /threads/{thread_id} - Checkpointed state for a thread."""
        thread_id = request.path_params["thread_id"]
        try:
            checkpoint = await runner.get_checkpoint(thread_id)
        except Exception as e:
            logger.error("Checkpoint load error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        if checkpoint is None:
            return JSONResponse({"error": f"Unknown thread: {thread_id}"}, status_code=404)
        return JSONResponse({
            "thread_id": thread_id,
            "node": checkpoint.node.value,
            "round_trips": checkpoint.round_trips,
            "updated_at": checkpoint.updated_at.isoformat(),
            "summary": checkpoint.conversation.summary,
            "turns": [_turn_json(t) for t in checkpoint.conversation.turns],
            "active_streams": multiplexer.active(thread_id),
        })

    async def delete_thread(request: Request) -> JSONResponse:
        """DELETE /threads/{thread_id} - Cancel in-flight turns, drop the checkpoint."""
        thread_id = request.path_params["thread_id"]
        try:
            cancelled = await multiplexer.cancel_thread(thread_id)
            deleted = await runner.retire(thread_id)
        except Exception as e:
            logger.error("Retire thread error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        if not deleted and not cancelled:
            return JSONResponse({"error": f"Unknown thread: {thread_id}"}, status_code=404)
        return JSONResponse({"status": "retired", "thread_id": thread_id, "cancelled": cancelled})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            if health_check is not None:
                await health_check()
            return JSONResponse({
                "status": "healthy",
                "model": settings.model,
                "checkpoints": settings.checkpoint_backend,
            })
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{thread_id}/resume", resume, methods=["POST"]),
        Route("/threads/{thread_id}", get_thread, methods=["GET"]),
        Route("/threads/{thread_id}", delete_thread, methods=["DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
