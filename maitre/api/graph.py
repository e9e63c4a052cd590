"""Orchestration state machine: nodes and pure transition functions.

    AGENT --(tool calls)--> NARRATE --> TOOLS --> AGENT
    AGENT --(tool calls, narration off)--> TOOLS
    AGENT --(tool-role echo)--> AGENT
    AGENT --(plain reply / failure)--> END

Functions here take the conversation state and return the next node; the
runner owns all I/O.
"""

from __future__ import annotations

import logging
from string import Formatter
from typing import Any

from maitre.api.models import Node, Role, ToolCall, Turn
from maitre.api.tools import ToolRegistry

logger = logging.getLogger(__name__)

# Arguments surfaced in generic narration, in order of preference
_NARRATION_KEYS = 3


def route_after_agent(last: Turn | None, *, narrate: bool) -> Node:
    """Next node after an AGENT step, from the last appended turn."""
    if last is None:
        return Node.END
    if last.role == Role.ASSISTANT and last.tool_calls and not last.failed:
        return Node.NARRATE if narrate else Node.TOOLS
    if last.role == Role.TOOL:
        # A tool result still needs the model to interpret it
        return Node.AGENT
    return Node.END


def route_after_narrate() -> Node:
    return Node.TOOLS


def route_after_tools() -> Node:
    return Node.AGENT


def loop_bound_reached(round_trips: int, max_round_trips: int) -> bool:
    """True when another AGENT->TOOLS round trip would exceed the bound."""
    return round_trips >= max_round_trips


def _humanize(name: str) -> str:
    out = []
    for ch in name.replace("_", " "):
        if ch.isupper() and out and out[-1] != " ":
            out.append(" ")
        out.append(ch.lower())
    return "".join(out).strip()


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return repr(value)


def narrate(call: ToolCall, registry: ToolRegistry | None = None) -> str:
    """Short status line announcing a tool call.

    Uses the tool's narration template when one is registered and all of
    its fields are present; otherwise "Running <tool> (k=v, ...)...".
    """
    tool = registry.get(call.name) if registry is not None else None
    if tool is not None and tool.narration:
        fields = {f for _, f, _, _ in Formatter().parse(tool.narration) if f}
        if fields <= call.arguments.keys():
            return tool.narration.format(**call.arguments)

    scalars = [
        (k, v) for k, v in call.arguments.items()
        if isinstance(v, (str, int, float, bool)) and v != ""
    ][:_NARRATION_KEYS]
    label = _humanize(call.name)
    if not scalars:
        return f"Running {label}..."
    details = ", ".join(f"{k}={_format_value(v)}" for k, v in scalars)
    return f"Running {label} ({details})..."


def narration_turn(calls: list[ToolCall], registry: ToolRegistry | None = None) -> Turn:
    """Log-only assistant turn describing the impending tool calls."""
    text = "\n".join(narrate(call, registry) for call in calls)
    return Turn.assistant(text, narration=True)
