"""Tool registry and executor.

Provides:
- ToolRegistry: maps tool name -> (JSON schema, async executor, narration)
- ToolExecutor: validates arguments, calls the executor, retries once

Executors are async callables taking the tool arguments as **kwargs and
returning a JSON-serialisable payload. They signal failure by raising
(ToolExecutionError for backend errors); the executor never swallows a
failure: it always ends up in the returned tool turn.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from maitre.api.models import ToolCall, ToolError, Turn
from maitre.errors import ErrorKind

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]

# First attempt + one retry with the same arguments
MAX_TOOL_ATTEMPTS = 2


@dataclass
class Tool:
    """A registered tool."""

    name: str
    handler: ToolHandler
    schema: dict[str, Any]
    narration: str | None = None  # str.format template over the arguments

    def __post_init__(self) -> None:
        self._validator = Draft202012Validator(self.schema)

    def validate(self, arguments: dict[str, Any]) -> list[str]:
        """Return human-readable schema violations (empty when valid)."""
        errors = sorted(self._validator.iter_errors(arguments), key=lambda e: list(e.path))
        messages = []
        for err in errors:
            where = "/".join(str(p) for p in err.path)
            messages.append(f"{where}: {err.message}" if where else err.message)
        return messages


class ToolRegistry:
    """Registers tool handlers with their JSON schemas."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        schema: dict[str, Any],
        narration: str | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ValueError(f"Invalid schema for tool {name!r}: {e.message}") from e
        if name in self._tools:
            logger.warning("Tool %s re-registered, replacing previous handler", name)
        self._tools[name] = Tool(name=name, handler=handler, schema=schema, narration=narration)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": tool.name,
                "description": tool.schema.get("description", ""),
                "input_schema": {k: v for k, v in tool.schema.items() if k != "description"},
            }
            for tool in self._tools.values()
        ]


class ToolExecutor:
    """Runs one ToolCall against the registry and returns its tool turn.

    - schema mismatch -> InvalidArguments, handler never called
    - handler failure -> retried once with identical arguments
    - second failure  -> ToolExecutionFailed with the underlying message

    Handlers may run twice per call. Tools that mutate backend state
    (create/cancel) must be idempotent on their side or accept the small
    risk of a duplicate on retry.
    """

    def __init__(self, registry: ToolRegistry, timeout: float | None = 30.0) -> None:
        self._registry = registry
        self._timeout = timeout

    async def invoke(self, call: ToolCall) -> Turn:
        tool = self._registry.get(call.name)
        if tool is None:
            return Turn.tool_result(
                call,
                error=ToolError(kind=ErrorKind.INVALID_ARGUMENTS, message=f"Unknown tool: {call.name}"),
            )

        violations = tool.validate(call.arguments)
        if violations:
            logger.info("Rejected %s call %s: %s", call.name, call.id, "; ".join(violations))
            return Turn.tool_result(
                call,
                error=ToolError(
                    kind=ErrorKind.INVALID_ARGUMENTS,
                    message="Invalid arguments: " + "; ".join(violations),
                ),
            )

        first_error: str | None = None
        attempt = 1
        while True:
            try:
                payload = await self._run(tool, call.arguments)
                return Turn.tool_result(call, payload=payload, attempts=attempt, first_error=first_error)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                message = str(e) or type(e).__name__
                if attempt >= MAX_TOOL_ATTEMPTS:
                    logger.error("Tool %s failed after %d attempts: %s", call.name, attempt, message)
                    return Turn.tool_result(
                        call,
                        error=ToolError(kind=ErrorKind.TOOL_EXECUTION_FAILED, message=message),
                        attempts=attempt,
                        first_error=first_error,
                    )
                first_error = message
                logger.warning(
                    "Tool %s failed (attempt %d/%d), retrying with same arguments: %s",
                    call.name, attempt, MAX_TOOL_ATTEMPTS, message,
                )
                attempt += 1

    async def _run(self, tool: Tool, arguments: dict[str, Any]) -> Any:
        if self._timeout:
            try:
                return await asyncio.wait_for(tool.handler(**arguments), timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise TimeoutError(f"{tool.name} timed out after {self._timeout:.0f}s") from e
        return await tool.handler(**arguments)
