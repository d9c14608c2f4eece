# nodeflow/core/models/execution.py
"""Runtime records: trigger context, executions, steps, notification log."""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from nodeflow.core.types.status import (
    ExecutionStatus,
    NotificationChannel,
    NotificationStatus,
    StepStatus,
    TriggerOperation,
)


def new_id() -> str:
    return str(uuid.uuid4())


class EntityEvent(BaseModel):
    """One change event from the record store's event feed."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    entity_type: str
    entity_id: str
    operation: TriggerOperation
    field: str | None = None
    # Previous values of changed fields, for updated events.
    old_data: dict[str, Any] | None = None


class TriggerContext(BaseModel):
    """What started an execution. Stored with it and readable by every node."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    entity_type: str | None = None
    entity_id: str | None = None
    operation: TriggerOperation | None = None
    field: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    old_data: dict[str, Any] | None = None

    @classmethod
    def from_event(
        cls, event: EntityEvent, record: dict[str, Any] | None
    ) -> TriggerContext:
        return cls(
            tenant_id=event.tenant_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            operation=event.operation,
            field=event.field,
            data=record or {},
            old_data=event.old_data,
        )


@dataclass(frozen=True, slots=True)
class Execution:
    """
    One run of a workflow definition. Replaced, never mutated, on each transition.

    - suspend_reason / resume_token / resume_at: only while SUSPENDED
    - next_retry_at: only while RETRYING
    - last_error: while RETRYING, and kept on FAILED
    - lease_expires_at: set while a tick holds the execution
    - version: bumped by every persisted change (optimistic concurrency)
    - step_count: sequence number of the next ExecutionStep
    """

    id: str
    tenant_id: str
    workflow_id: str
    workflow_version: int
    trigger: TriggerContext
    status: ExecutionStatus
    max_loops: int
    max_retries: int
    current_node_id: str | None = None
    context_data: dict[str, Any] = field(default_factory=dict)
    loop_count: int = 0
    retry_count: int = 0
    suspend_reason: str | None = None
    resume_token: str | None = None
    resume_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_error: dict[str, Any] | None = None
    lease_expires_at: datetime | None = None
    step_count: int = 0
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def evolve(self, **changes: Any) -> Execution:
        """Copy with changes and the version bumped."""
        changes.setdefault('version', self.version + 1)
        return dataclasses.replace(self, **changes)

    def invariant_violations(self) -> list[str]:
        """Describe broken field/status invariants (empty when consistent)."""
        problems: list[str] = []
        suspended = self.status is ExecutionStatus.SUSPENDED
        retrying = self.status is ExecutionStatus.RETRYING
        if self.resume_at is not None and self.next_retry_at is not None:
            problems.append('resume_at and next_retry_at are both set')
        for name in ('suspend_reason', 'resume_token', 'resume_at'):
            if getattr(self, name) is not None and not suspended:
                problems.append(f'{name} set while {self.status.value}')
        if self.next_retry_at is not None and not retrying:
            problems.append(f'next_retry_at set while {self.status.value}')
        if self.last_error is not None and self.status not in (
            ExecutionStatus.RETRYING,
            ExecutionStatus.FAILED,
        ):
            problems.append(f'last_error set while {self.status.value}')
        if self.loop_count > self.max_loops:
            problems.append(f'loop_count {self.loop_count} > max_loops {self.max_loops}')
        if self.retry_count > self.max_retries:
            problems.append(
                f'retry_count {self.retry_count} > max_retries {self.max_retries}'
            )
        return problems


@dataclass(frozen=True, slots=True)
class ExecutionStep:
    """One attempted node. Closed once written."""

    id: str
    execution_id: str
    sequence: int
    node_id: str
    node_type: str
    status: StepStatus
    attempt: int
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


@dataclass(frozen=True, slots=True)
class ExecutionView:
    """Answer to get_execution: current state plus ordered step history."""

    execution: Execution
    steps: list[ExecutionStep]


@dataclass(frozen=True, slots=True)
class NotificationRecord:
    id: str
    tenant_id: str
    channel: NotificationChannel
    recipient: str
    status: NotificationStatus
    body: str
    subject: str | None = None
    template: str | None = None
    execution_id: str | None = None
    provider: str | None = None
    provider_message_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None
