# nodeflow/core/store/base.py
"""Durable store contracts shared by the in-memory and PostgreSQL stores."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from nodeflow.core.breaker.state import CircuitBreakerState
from nodeflow.core.models.execution import Execution, ExecutionStep, NotificationRecord
from nodeflow.core.models.graph import WorkflowDefinition


class DefinitionStore(Protocol):
    async def insert_definition(self, definition: WorkflowDefinition) -> bool:
        """Store a definition version. False if (id, version) already exists."""
        ...

    async def get_definition(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        """A specific version, or the latest one when version is None."""
        ...

    async def list_definitions(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        live_only: bool = True,
    ) -> list[WorkflowDefinition]:
        """Latest version of each workflow of a tenant."""
        ...

    async def soft_delete_definition(self, workflow_id: str, at: datetime) -> bool: ...


class ExecutionStore(DefinitionStore, Protocol):
    """
    Source of truth for executions and their step history.

    Every state change goes through commit_execution, which applies the new
    execution row only if the stored version still equals expected_version,
    and inserts the step in the same transaction. Either both become visible
    or neither does.
    """

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def create_execution(self, execution: Execution) -> None: ...

    async def get_execution(self, execution_id: str) -> Execution | None: ...

    async def commit_execution(
        self,
        execution: Execution,
        expected_version: int,
        step: ExecutionStep | None = None,
    ) -> bool:
        """Compare-and-swap the execution row, plus an optional step insert.

        Returns False (and writes nothing) on a version mismatch. A new
        resume_token on the row is registered for token lookup.
        """
        ...

    async def append_step(self, step: ExecutionStep) -> None:
        """Insert a step without touching the execution row."""
        ...

    async def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        """Steps ordered by sequence."""
        ...

    async def find_execution_by_token(self, token: str) -> Execution | None:
        """Execution that was issued this resume token, current or past."""
        ...

    async def find_due_executions(self, now: datetime, limit: int) -> list[Execution]:
        """
        Executions a dispatcher should tick now:
        - pending
        - running with no lease or an expired one
        - retrying with next_retry_at <= now
        - suspended with resume_at <= now
        """
        ...

    async def append_notification(self, record: NotificationRecord) -> None: ...

    async def list_notifications(
        self,
        *,
        tenant_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[NotificationRecord]: ...


class BreakerStore(Protocol):
    """Rows keyed by (tenant_id, circuit_key), updated by compare-and-swap."""

    async def load_breaker(
        self, tenant_id: str, circuit_key: str
    ) -> CircuitBreakerState | None: ...

    async def insert_breaker(self, state: CircuitBreakerState) -> bool:
        """Create the row. False if it already exists."""
        ...

    async def swap_breaker(
        self, expected_version: int, state: CircuitBreakerState
    ) -> bool:
        """Replace the row if its version is still expected_version."""
        ...


class Store(ExecutionStore, BreakerStore, Protocol):
    """Both contracts, as implemented by MemoryStore and PostgresStore."""

    pass
