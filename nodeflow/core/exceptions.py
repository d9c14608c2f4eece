"""Runtime failure taxonomy for node execution.

Handlers raise these (or let library exceptions escape); the step executor
turns them into outcome values before anything reaches the engine.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionErrorCode(str, Enum):
    """Error codes stored in step errors and Execution.last_error."""

    VALIDATION_ERROR = 'VALIDATION_ERROR'
    TRANSIENT_IO = 'TRANSIENT_IO'
    NODE_TIMEOUT = 'NODE_TIMEOUT'
    CIRCUIT_OPEN = 'CIRCUIT_OPEN'
    LOOP_LIMIT_EXCEEDED = 'LOOP_LIMIT_EXCEEDED'
    RETRY_BUDGET_EXHAUSTED = 'RETRY_BUDGET_EXHAUSTED'
    RECORD_CONFLICT = 'RECORD_CONFLICT'
    UNKNOWN_NODE = 'UNKNOWN_NODE'
    UNHANDLED_EXCEPTION = 'UNHANDLED_EXCEPTION'
    CANCELLED = 'CANCELLED'


class NodeExecutionError(Exception):
    """Base class for classified node failures."""

    code: ExecutionErrorCode = ExecutionErrorCode.UNHANDLED_EXCEPTION
    retryable: bool = False

    def __init__(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}


class NodeValidationError(NodeExecutionError):
    """Malformed node spec or config. Fatal, never retried."""

    code = ExecutionErrorCode.VALIDATION_ERROR


class TransientIOError(NodeExecutionError):
    """Network or timeout failure on an external call. Retryable."""

    code = ExecutionErrorCode.TRANSIENT_IO
    retryable = True


class RecordConflictError(TransientIOError):
    """The record store rejected an update as conflicting."""

    code = ExecutionErrorCode.RECORD_CONFLICT


class CircuitOpenError(NodeExecutionError):
    """The circuit breaker denied the call. Routed through retrying without
    consuming a retry attempt."""

    code = ExecutionErrorCode.CIRCUIT_OPEN

    def __init__(self, circuit_key: str, retry_after: datetime) -> None:
        super().__init__(
            f"circuit '{circuit_key}' denied the call until {retry_after.isoformat()}",
            data={'circuit_key': circuit_key, 'retry_after': retry_after.isoformat()},
        )
        self.circuit_key = circuit_key
        self.retry_after = retry_after


class LoopLimitExceeded(NodeExecutionError):
    code = ExecutionErrorCode.LOOP_LIMIT_EXCEEDED


class RetryBudgetExhausted(NodeExecutionError):
    code = ExecutionErrorCode.RETRY_BUDGET_EXHAUSTED


class CancelledByUser(NodeExecutionError):
    """Terminal, not an error. Reported when a tick finds its execution cancelled."""

    code = ExecutionErrorCode.CANCELLED
