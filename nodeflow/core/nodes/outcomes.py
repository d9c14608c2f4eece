# nodeflow/core/nodes/outcomes.py
"""Typed results a node run can produce."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeAlias

from nodeflow.core.exceptions import ExecutionErrorCode, NodeExecutionError


@dataclass(frozen=True, slots=True)
class NodeError:
    code: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(
        cls, code: ExecutionErrorCode | str, message: str, **data: Any
    ) -> NodeError:
        return cls(code=code.value if isinstance(code, ExecutionErrorCode) else code, message=message, data=data)

    @classmethod
    def from_exception(cls, exc: NodeExecutionError) -> NodeError:
        return cls(code=exc.code.value, message=exc.message, data=dict(exc.data))

    def to_json(self) -> dict[str, Any]:
        return {'code': self.code, 'message': self.message, 'data': self.data}


@dataclass(frozen=True, slots=True)
class Completed:
    output: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Suspend:
    reason: str
    resume_at: datetime | None = None
    output: dict[str, Any] = field(default_factory=dict)
    # False: only the timer resumes it, so no resume token is issued.
    external: bool = True


@dataclass(frozen=True, slots=True)
class Retryable:
    error: NodeError


@dataclass(frozen=True, slots=True)
class Fatal:
    error: NodeError


@dataclass(frozen=True, slots=True)
class BreakerDenied:
    """The node's circuit refused the call; the node did not do its work."""

    circuit_key: str
    retry_after: datetime


NodeOutcome: TypeAlias = Completed | Suspend | Retryable | Fatal | BreakerDenied

NODE_OUTCOME_TYPES: tuple[type, ...] = (Completed, Suspend, Retryable, Fatal, BreakerDenied)
