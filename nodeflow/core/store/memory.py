# nodeflow/core/store/memory.py
"""Process-local store used by tests and by apps configured without a database."""

from __future__ import annotations

import asyncio
import copy
import dataclasses
from datetime import datetime

from nodeflow.core.breaker.state import CircuitBreakerState
from nodeflow.core.logging import get_logger
from nodeflow.core.models.execution import Execution, ExecutionStep, NotificationRecord
from nodeflow.core.models.graph import WorkflowDefinition
from nodeflow.core.types.status import ExecutionStatus


class MemoryStore:
    """
    In-memory implementation of ExecutionStore and BreakerStore.

    A single asyncio.Lock serializes every write, which gives the same
    compare-and-swap semantics as the PostgreSQL store within one process.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._definitions: dict[tuple[str, int], WorkflowDefinition] = {}
        self._executions: dict[str, Execution] = {}
        self._steps: dict[str, list[ExecutionStep]] = {}
        self._tokens: dict[str, str] = {}
        self._breakers: dict[tuple[str, str], CircuitBreakerState] = {}
        self._notifications: list[NotificationRecord] = []
        self.logger = get_logger('store')

    async def initialize(self) -> None:
        self.logger.debug('MemoryStore ready')

    async def close(self) -> None:
        return None

    # ----------------- Definitions -----------------

    async def insert_definition(self, definition: WorkflowDefinition) -> bool:
        async with self._lock:
            key = (definition.id, definition.version)
            if key in self._definitions:
                return False
            self._definitions[key] = definition
            return True

    async def get_definition(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            return self._definitions.get((workflow_id, version))
        versions = [d for (wid, _), d in self._definitions.items() if wid == workflow_id]
        return max(versions, key=lambda d: d.version, default=None)

    async def list_definitions(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        live_only: bool = True,
    ) -> list[WorkflowDefinition]:
        latest: dict[str, WorkflowDefinition] = {}
        for definition in self._definitions.values():
            if definition.tenant_id != tenant_id:
                continue
            current = latest.get(definition.id)
            if current is None or definition.version > current.version:
                latest[definition.id] = definition
        result = list(latest.values())
        if entity_type is not None:
            result = [d for d in result if d.trigger.entity_type == entity_type]
        if live_only:
            result = [d for d in result if d.is_live]
        return sorted(result, key=lambda d: d.id)

    async def soft_delete_definition(self, workflow_id: str, at: datetime) -> bool:
        async with self._lock:
            keys = [k for k in self._definitions if k[0] == workflow_id]
            if not keys:
                return False
            for key in keys:
                self._definitions[key] = self._definitions[key].model_copy(
                    update={'deleted_at': at, 'is_active': False}
                )
            return True

    # ----------------- Executions -----------------

    async def create_execution(self, execution: Execution) -> None:
        async with self._lock:
            if execution.id in self._executions:
                raise ValueError(f'execution {execution.id} already exists')
            self._executions[execution.id] = _detached(execution)
            self._steps[execution.id] = []

    async def get_execution(self, execution_id: str) -> Execution | None:
        return self._executions.get(execution_id)

    async def commit_execution(
        self,
        execution: Execution,
        expected_version: int,
        step: ExecutionStep | None = None,
    ) -> bool:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None or stored.version != expected_version:
                return False
            if step is not None and self._has_sequence(step):
                return False
            self._executions[execution.id] = _detached(execution)
            if step is not None:
                self._steps[execution.id].append(step)
            if execution.resume_token is not None:
                self._tokens.setdefault(execution.resume_token, execution.id)
            return True

    async def append_step(self, step: ExecutionStep) -> None:
        async with self._lock:
            if self._has_sequence(step):
                raise ValueError(
                    f'step {step.execution_id}#{step.sequence} already recorded'
                )
            self._steps.setdefault(step.execution_id, []).append(step)

    def _has_sequence(self, step: ExecutionStep) -> bool:
        return any(s.sequence == step.sequence for s in self._steps.get(step.execution_id, []))

    async def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        return sorted(self._steps.get(execution_id, []), key=lambda s: s.sequence)

    async def find_execution_by_token(self, token: str) -> Execution | None:
        execution_id = self._tokens.get(token)
        if execution_id is None:
            return None
        return self._executions.get(execution_id)

    async def find_due_executions(self, now: datetime, limit: int) -> list[Execution]:
        due: list[Execution] = []
        for execution in self._executions.values():
            match execution.status:
                case ExecutionStatus.PENDING:
                    is_due = True
                case ExecutionStatus.RUNNING:
                    lease = execution.lease_expires_at
                    is_due = lease is None or lease <= now
                case ExecutionStatus.RETRYING:
                    is_due = execution.next_retry_at is not None and execution.next_retry_at <= now
                case ExecutionStatus.SUSPENDED:
                    is_due = execution.resume_at is not None and execution.resume_at <= now
                case _:
                    is_due = False
            if is_due:
                due.append(execution)
        due.sort(key=lambda e: (e.updated_at or now, e.id))
        return due[:limit]

    # ----------------- Notifications -----------------

    async def append_notification(self, record: NotificationRecord) -> None:
        async with self._lock:
            self._notifications.append(record)

    async def list_notifications(
        self,
        *,
        tenant_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[NotificationRecord]:
        return [
            r
            for r in self._notifications
            if (tenant_id is None or r.tenant_id == tenant_id)
            and (execution_id is None or r.execution_id == execution_id)
        ]

    # ----------------- Circuit breakers -----------------

    async def load_breaker(
        self, tenant_id: str, circuit_key: str
    ) -> CircuitBreakerState | None:
        return self._breakers.get((tenant_id, circuit_key))

    async def insert_breaker(self, state: CircuitBreakerState) -> bool:
        async with self._lock:
            key = (state.tenant_id, state.circuit_key)
            if key in self._breakers:
                return False
            self._breakers[key] = state
            return True

    async def swap_breaker(
        self, expected_version: int, state: CircuitBreakerState
    ) -> bool:
        async with self._lock:
            key = (state.tenant_id, state.circuit_key)
            current = self._breakers.get(key)
            if current is None or current.version != expected_version:
                return False
            self._breakers[key] = state
            return True


def _detached(execution: Execution) -> Execution:
    """Copy mutable payloads so callers cannot alter stored state in place."""
    return dataclasses.replace(execution, context_data=copy.deepcopy(execution.context_data))
