# nodeflow/core/types/status.py
"""
Status enums shared by the engine, the stores and the breaker registry.
This module should not import from other nodeflow modules.
"""

from __future__ import annotations

from enum import Enum


class ExecutionStatus(str, Enum):
    """Lifecycle of one workflow execution."""

    PENDING = 'pending'
    """Created on trigger match, no node has run yet."""

    RUNNING = 'running'
    """Claimed by a tick, or yielded between ticks."""

    SUSPENDED = 'suspended'
    """Waiting for resume_at or an external resume with resume_token."""

    RETRYING = 'retrying'
    """Waiting for next_retry_at after a recoverable failure or breaker denial."""

    COMPLETED = 'completed'
    """No outgoing edge matched after the last node. Terminal."""

    FAILED = 'failed'
    """Fatal node failure, loop limit or exhausted retries. Terminal."""

    CANCELLED = 'cancelled'
    """Cancelled by a user request. Terminal."""

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in EXECUTION_TERMINAL_STATES

    @property
    def is_advanceable(self) -> bool:
        """Whether a tick may run nodes from this status."""
        return self in EXECUTION_ADVANCEABLE_STATES


EXECUTION_TERMINAL_STATES: frozenset[ExecutionStatus] = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

EXECUTION_ADVANCEABLE_STATES: frozenset[ExecutionStatus] = frozenset({
    ExecutionStatus.PENDING,
    ExecutionStatus.RUNNING,
    ExecutionStatus.RETRYING,
})


class StepStatus(str, Enum):
    """Status of a recorded execution step."""

    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    SKIPPED = 'skipped'  # node was not run (breaker denial, loop limit)


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = 'closed'
    """Requests flow; failures are counted."""

    OPEN = 'open'
    """Requests are denied until the timeout elapses."""

    HALF_OPEN = 'half_open'
    """Probing: successes close the circuit, any failure reopens it."""


class TriggerOperation(str, Enum):
    """Entity event operations a trigger can match."""

    CREATED = 'created'
    UPDATED = 'updated'
    DELETED = 'deleted'
    FIELD_CHANGED = 'field_changed'


class NotificationChannel(str, Enum):
    EMAIL = 'email'
    SMS = 'sms'
    WHATSAPP = 'whatsapp'
    PUSH = 'push'


class NotificationStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    FAILED = 'failed'


class ResumeResult(str, Enum):
    """Outcome of an external resume request."""

    OK = 'ok'
    INVALID_TOKEN = 'invalid_token'
    NOT_SUSPENDED = 'not_suspended'
