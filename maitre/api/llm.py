"""Model invoker -- Anthropic Messages API over httpx.

Turns an assembled prompt (system turns + conversation window) into an
API request, and returns either a complete ModelResponse or an ordered
stream of text fragments terminated by the complete ModelResponse.

Transient failures (429/5xx/529, timeouts, transport errors) are retried
with exponential backoff up to settings.model_max_retries extra attempts.
A stream is only retried while no fragment has been handed out yet.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

import httpx

from maitre.api.models import ModelResponse, Role, ToolCall, Turn
from maitre.config import Settings
from maitre.errors import ModelError, ModelTimeout, ModelTransportFailure

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504, 529})
_MAX_BACKOFF = 30.0

_EPHEMERAL = {"type": "ephemeral"}


@dataclass
class SseEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, block_stop, message_start, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] = field(default_factory=dict)


def _parse_sse_event(data: dict[str, Any]) -> SseEvent | None:
    """Parse Anthropic SSE event dict into SseEvent.

    Ping keepalives are skipped. stop_reason lives in message_delta.delta,
    not message_start. Error events arrive in-stream with HTTP 200.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return SseEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage") or {}
        return SseEvent(type="message_start", usage=dict(usage))

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return SseEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return SseEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return SseEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return SseEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return SseEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return SseEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", ""),
            usage=dict(data.get("usage") or {}),
        )

    if event_type == "message_stop":
        return SseEvent(type="message_stop")

    return None


# ------------------------------------------------------------------
# Prompt formatting
# ------------------------------------------------------------------


def format_prompt(prompt: Sequence[Turn]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Convert turns into Anthropic (system blocks, messages).

    - leading system turns become cached system blocks
    - narration and failed turns are log-only and skipped
    - tool_use blocks without a matching result in the prompt are dropped
    - consecutive tool turns collapse into one user message
    - the last message and the second-most-recent user text message are
      marked as cache breakpoints
    """
    system: list[dict[str, Any]] = []
    body = list(prompt)
    while body and body[0].role == Role.SYSTEM:
        turn = body.pop(0)
        if turn.content:
            system.append({"type": "text", "text": turn.content, "cache_control": dict(_EPHEMERAL)})

    answered = {t.tool_call_id for t in body if t.role == Role.TOOL}
    emitted: set[str] = set()
    messages: list[dict[str, Any]] = []
    user_text_indices: list[int] = []

    def _append(role: str, blocks: list[dict[str, Any]], is_user_text: bool = False) -> None:
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})
        if is_user_text:
            user_text_indices.append(len(messages) - 1)

    for turn in body:
        if turn.narration or turn.failed or turn.role == Role.SYSTEM:
            continue
        if turn.role == Role.USER:
            _append("user", [{"type": "text", "text": turn.content}], is_user_text=True)
        elif turn.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if turn.content:
                blocks.append({"type": "text", "text": turn.content})
            for call in turn.tool_calls:
                if call.id in answered:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
                    emitted.add(call.id)
            if blocks:
                _append("assistant", blocks)
        elif turn.role == Role.TOOL and turn.tool_call_id in emitted:
            _append("user", [{
                "type": "tool_result",
                "tool_use_id": turn.tool_call_id,
                "content": turn.content,
                "is_error": turn.error is not None,
            }])

    if messages:
        messages[-1]["content"][-1]["cache_control"] = dict(_EPHEMERAL)
    distinct = sorted(set(user_text_indices))
    if len(distinct) >= 2:
        messages[distinct[-2]]["content"][-1]["cache_control"] = dict(_EPHEMERAL)
    return system, messages


def response_turn(content: list[dict[str, Any]], usage: dict[str, int] | None = None) -> Turn:
    """Build the assistant turn from API content blocks."""
    text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
    calls = [
        ToolCall(id=b["id"], name=b["name"], arguments=b.get("input") or {})
        for b in content
        if b.get("type") == "tool_use"
    ]
    return Turn.assistant(text, calls, usage=usage or None)


class _InStreamError(Exception):
    pass


async def _read_lines(response: httpx.Response, deadline: float) -> AsyncGenerator[str, None]:
    """Lines of a streamed body. Raises TimeoutError once the loop clock passes deadline."""
    lines = response.aiter_lines()
    while True:
        try:
            async with asyncio.timeout_at(deadline):
                line = await anext(lines)
        except StopAsyncIteration:
            return
        yield line


# ------------------------------------------------------------------
# Invoker
# ------------------------------------------------------------------


class ModelInvoker:
    """Calls the Anthropic Messages API with retry, timeout and streaming."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(settings.model_timeout, connect=10.0)
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info("Model client initialized (model=%s)", settings.model)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    @property
    def max_attempts(self) -> int:
        return self._settings.model_max_retries + 1

    def build_payload(
        self,
        prompt: Sequence[Turn],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Build Messages API request payload. Shared by invoke() and stream()."""
        system, messages = format_prompt(prompt)
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "temperature": self._settings.temperature if temperature is None else temperature,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def _backoff(self, attempt: int, headers: httpx.Headers | None = None) -> None:
        delay = self._settings.model_retry_backoff * (2 ** (attempt - 1))
        if headers is not None and "retry-after" in headers:
            try:
                delay = float(headers["retry-after"])
            except ValueError:
                pass
        await asyncio.sleep(min(delay, _MAX_BACKOFF))

    @staticmethod
    def _status_error(status_code: int, body: str) -> ModelTransportFailure:
        try:
            error = json.loads(body).get("error", {})
            detail = f"{error.get('type', 'unknown')} - {error.get('message', '')}"
        except (ValueError, AttributeError):
            detail = body[:500]
        return ModelTransportFailure(f"Anthropic API error ({status_code}): {detail}")

    async def invoke(
        self,
        prompt: Sequence[Turn],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> ModelResponse:
        """Single request/response call.

        Raises ModelTimeout or ModelTransportFailure once attempts run out.
        """
        payload = self.build_payload(prompt, tools, temperature=temperature)
        last_error: ModelError

        for attempt in range(1, self.max_attempts + 1):
            retry_headers: httpx.Headers | None = None
            try:
                async with asyncio.timeout(self._settings.model_timeout):
                    response = await self._client().post("/v1/messages", json=payload)
            except (TimeoutError, httpx.TimeoutException) as e:
                last_error = ModelTimeout(f"Model request timed out after {self._settings.model_timeout:g}s: {e}")
            except httpx.TransportError as e:
                last_error = ModelTransportFailure(f"HTTP transport error: {e}")
            else:
                if response.status_code == 200:
                    try:
                        data = response.json()
                    except ValueError as e:
                        last_error = ModelTransportFailure(f"Malformed response body: {e}")
                    else:
                        if not isinstance(data, dict):
                            raise ModelTransportFailure(f"Malformed response body: {response.text[:200]}")
                        usage = data.get("usage")
                        return ModelResponse(
                            turn=response_turn(data.get("content", []), usage),
                            stop_reason=data.get("stop_reason", ""),
                            usage=usage,
                        )
                else:
                    error = self._status_error(response.status_code, response.text)
                    if response.status_code not in _RETRYABLE_STATUS:
                        raise error
                    last_error = error
                    retry_headers = response.headers

            if attempt == self.max_attempts:
                raise last_error
            logger.warning(
                "Model call failed (attempt %d/%d), retrying: %s",
                attempt, self.max_attempts, last_error,
            )
            await self._backoff(attempt, retry_headers)

    async def stream(
        self,
        prompt: Sequence[Turn],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> AsyncGenerator[str | ModelResponse, None]:
        """Streaming call: yields text fragments in order, then a ModelResponse.

        Each attempt must finish within settings.model_timeout overall;
        keepalive pings do not extend it. Not restartable: once a fragment
        has been yielded, failures are terminal for the call.
        """
        payload = self.build_payload(prompt, tools, stream=True, temperature=temperature)
        client = self._client()
        loop = asyncio.get_running_loop()
        last_error: ModelError

        for attempt in range(1, self.max_attempts + 1):
            emitted = False
            retry_headers: httpx.Headers | None = None
            text_parts: list[str] = []
            blocks: dict[int, dict[str, Any]] = {}
            usage: dict[str, int] = {}
            stop_reason = ""
            deadline = loop.time() + self._settings.model_timeout
            try:
                request = client.build_request("POST", "/v1/messages", json=payload)
                async with asyncio.timeout_at(deadline):
                    response = await client.send(request, stream=True)
                try:
                    if response.status_code != 200:
                        async with asyncio.timeout_at(deadline):
                            body = (await response.aread()).decode(errors="replace")
                        error = self._status_error(response.status_code, body)
                        if response.status_code not in _RETRYABLE_STATUS:
                            raise error
                        last_error = error
                        retry_headers = response.headers
                    else:
                        async with aclosing(_read_lines(response, deadline)) as lines:
                            async for line in lines:
                                if not line.startswith("data: "):
                                    continue
                                try:
                                    data = json.loads(line[6:])
                                except ValueError as e:
                                    raise _InStreamError(f"malformed event: {e}") from e
                                if not isinstance(data, dict):
                                    raise _InStreamError(f"malformed event: {line[6:200]}")
                                event = _parse_sse_event(data)
                                if event is None:
                                    continue
                                if event.type == "error":
                                    raise _InStreamError(event.text)
                                if event.type == "message_start":
                                    usage.update(event.usage)
                                elif event.type == "text_delta":
                                    if event.text:
                                        text_parts.append(event.text)
                                        emitted = True
                                        yield event.text
                                elif event.type == "tool_start":
                                    blocks[event.block_index] = {
                                        "type": "tool_use",
                                        "id": event.tool_id,
                                        "name": event.tool_name,
                                        "input_parts": [],
                                    }
                                elif event.type == "tool_input_delta":
                                    block = blocks.get(event.block_index)
                                    if block is not None:
                                        block["input_parts"].append(event.text)
                                elif event.type == "done":
                                    stop_reason = event.stop_reason
                                    usage.update(event.usage)

                        content: list[dict[str, Any]] = []
                        if text_parts:
                            content.append({"type": "text", "text": "".join(text_parts)})
                        for index in sorted(blocks):
                            block = blocks[index]
                            input_json = "".join(block.pop("input_parts"))
                            try:
                                block["input"] = json.loads(input_json) if input_json else {}
                            except json.JSONDecodeError:
                                logger.warning("Unparseable tool input for %s: %r", block["name"], input_json[:200])
                                block["input"] = {}
                            content.append(block)
                        yield ModelResponse(
                            turn=response_turn(content, usage),
                            stop_reason=stop_reason,
                            usage=usage or None,
                        )
                        return
                finally:
                    await response.aclose()
            except (TimeoutError, httpx.TimeoutException) as e:
                last_error = ModelTimeout(f"Model stream timed out after {self._settings.model_timeout:g}s: {e}")
            except httpx.TransportError as e:
                last_error = ModelTransportFailure(f"HTTP transport error: {e}")
            except _InStreamError as e:
                last_error = ModelTransportFailure(f"In-stream error: {e}")

            if emitted or attempt == self.max_attempts:
                raise last_error
            logger.warning(
                "Model stream failed (attempt %d/%d), retrying: %s",
                attempt, self.max_attempts, last_error,
            )
            await self._backoff(attempt, retry_headers)
