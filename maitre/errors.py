"""Error taxonomy shared by the tool layer, the model invoker and the runner.

Tool-level kinds (InvalidArguments, ToolExecutionFailed) are recovered by
handing them back to the model as tool-role turns. Everything else ends the
current turn with a failed assistant turn; the conversation log is kept.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    INVALID_ARGUMENTS = "InvalidArguments"
    TOOL_EXECUTION_FAILED = "ToolExecutionFailed"
    MODEL_TIMEOUT = "ModelTimeout"
    MODEL_TRANSPORT_FAILURE = "ModelTransportFailure"
    BUDGET_UNSATISFIABLE = "BudgetUnsatisfiable"
    LOOP_BOUND_EXCEEDED = "LoopBoundExceeded"


class MaitreError(Exception):
    """Base class for engine errors. Subclasses pin ``kind``."""

    kind: ErrorKind

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value


class BudgetUnsatisfiable(MaitreError):
    """The system turn (or the newest user turn) cannot fit the token budget."""

    kind = ErrorKind.BUDGET_UNSATISFIABLE


class ModelError(MaitreError):
    """Model call failed after the invoker's own retries."""

    kind = ErrorKind.MODEL_TRANSPORT_FAILURE


class ModelTimeout(ModelError):
    kind = ErrorKind.MODEL_TIMEOUT


class ModelTransportFailure(ModelError):
    kind = ErrorKind.MODEL_TRANSPORT_FAILURE


class ToolExecutionError(MaitreError):
    """Raised by tool executors when the backend call fails."""

    kind = ErrorKind.TOOL_EXECUTION_FAILED


class LoopBoundExceeded(MaitreError):
    kind = ErrorKind.LOOP_BOUND_EXCEEDED
