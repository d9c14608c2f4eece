# nodeflow/core/audit.py
"""Append-only step history and notification log, plus audit log lines."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from nodeflow.core.logging import get_logger
from nodeflow.core.models.execution import (
    Execution,
    ExecutionStep,
    ExecutionView,
    NotificationRecord,
    new_id,
)
from nodeflow.core.store.base import ExecutionStore
from nodeflow.core.types.status import StepStatus


class AuditLog:
    def __init__(self, store: ExecutionStore) -> None:
        self.store = store
        self.logger = get_logger('audit')

    def build_step(
        self,
        execution: Execution,
        *,
        node_id: str,
        node_type: str,
        status: StepStatus,
        started_at: datetime,
        completed_at: datetime,
        input: dict[str, Any] | None = None,
        output: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> ExecutionStep:
        """The step for the node an execution is about to commit.

        Its sequence is the execution's step_count, so the committing
        transition must bump step_count by one.
        """
        return ExecutionStep(
            id=new_id(),
            execution_id=execution.id,
            sequence=execution.step_count,
            node_id=node_id,
            node_type=node_type,
            status=status,
            attempt=execution.retry_count + 1,
            input=input,
            output=output,
            error=error,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=max(0, int((completed_at - started_at).total_seconds() * 1000)),
        )

    def log_step(self, execution: Execution, step: ExecutionStep) -> None:
        message = (
            f'execution={step.execution_id} step={step.sequence} node={step.node_id} '
            f'type={step.node_type} status={step.status.value} attempt={step.attempt} '
            f'duration={step.duration_ms}ms -> {execution.status.value}'
        )
        if step.error is not None:
            self.logger.warning(f"{message} error={step.error.get('code')}: {step.error.get('message')}")
        else:
            self.logger.info(message)

    async def history(self, execution_id: str) -> list[ExecutionStep]:
        return await self.store.list_steps(execution_id)

    async def notifications(self, execution_id: str) -> list[NotificationRecord]:
        return await self.store.list_notifications(execution_id=execution_id)

    async def view(self, execution_id: str) -> ExecutionView | None:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            return None
        return ExecutionView(execution=execution, steps=await self.history(execution_id))
