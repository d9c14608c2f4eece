"""PostgresStore against a real database: CAS commits, queries and a full run."""

from __future__ import annotations

import asyncio
import dataclasses
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from nodeflow.core.app import NodeFlow
from nodeflow.core.breaker.state import CircuitBreakerState
from nodeflow.core.models.config import AppConfig, PostgresConfig
from nodeflow.core.models.execution import (
    Execution,
    ExecutionStep,
    NotificationRecord,
    TriggerContext,
    new_id,
)
from nodeflow.core.models.graph import Edge, NodeSpec, TriggerSpec, WorkflowDefinition
from nodeflow.core.store.postgres import PostgresStore
from nodeflow.core.types.status import (
    CircuitState,
    ExecutionStatus,
    NotificationChannel,
    NotificationStatus,
    ResumeResult,
    StepStatus,
)

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.environ.get('DB_PASSWORD') is None,
        reason='DB_PASSWORD not set; PostgreSQL tests need a database',
    ),
]

NOW = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)


def _definition(tenant_id: str, workflow_id: str | None = None, **changes) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_id or f'wf-{uuid.uuid4().hex[:12]}',
        tenant_id=tenant_id,
        name='approval flow',
        trigger=TriggerSpec(entity_type='order'),
        nodes=(
            NodeSpec(id='start', node_type='trigger'),
            NodeSpec(id='wait', node_type='wait_for_event', config={'event': 'approval'}),
            NodeSpec(id='done', node_type='set_field', config={'values': {'ok': True}}),
        ),
        edges=(Edge(source='start', target='wait'), Edge(source='wait', target='done')),
        **changes,
    )


def _execution(tenant_id: str, **changes) -> Execution:
    execution = Execution(
        id=new_id(),
        tenant_id=tenant_id,
        workflow_id='wf',
        workflow_version=1,
        trigger=TriggerContext(tenant_id=tenant_id, entity_type='order', entity_id='o-1'),
        status=ExecutionStatus.PENDING,
        max_loops=10,
        max_retries=3,
        created_at=NOW,
        updated_at=NOW,
    )
    return dataclasses.replace(execution, **changes)


def _step(execution: Execution, sequence: int) -> ExecutionStep:
    return ExecutionStep(
        id=new_id(),
        execution_id=execution.id,
        sequence=sequence,
        node_id='start',
        node_type='trigger',
        status=StepStatus.COMPLETED,
        attempt=1,
        output={'entity_id': 'o-1'},
        started_at=NOW,
        completed_at=NOW,
        duration_ms=0,
    )


@pytest.mark.asyncio(loop_scope='function')
class TestDefinitions:
    async def test_versions_and_soft_delete(self, store: PostgresStore, tenant_id: str) -> None:
        v1 = _definition(tenant_id)
        v2 = v1.model_copy(update={'version': 2, 'name': 'renamed'})

        assert await store.insert_definition(v1) is True
        assert await store.insert_definition(v1) is False
        assert await store.insert_definition(v2) is True

        latest = await store.get_definition(v1.id)
        assert latest == v2
        assert (await store.get_definition(v1.id, 1)) == v1
        assert [d.id for d in await store.list_definitions(tenant_id, 'order')] == [v1.id]

        assert await store.soft_delete_definition(v1.id, NOW) is True
        assert await store.list_definitions(tenant_id) == []
        deleted = await store.get_definition(v1.id)
        assert deleted is not None and not deleted.is_live


@pytest.mark.asyncio(loop_scope='function')
class TestExecutions:
    async def test_round_trip(self, store: PostgresStore, tenant_id: str) -> None:
        execution = _execution(
            tenant_id,
            context_data={'start': {'amount': 12, 'tags': ['a']}},
            last_error={'code': 'TRANSIENT_IO', 'message': 'x', 'data': {}},
        )
        await store.create_execution(execution)

        assert await store.get_execution(execution.id) == execution

    async def test_commit_is_compare_and_swap(self, store: PostgresStore, tenant_id: str) -> None:
        execution = _execution(tenant_id)
        await store.create_execution(execution)
        step = _step(execution, 0)

        running = execution.evolve(status=ExecutionStatus.RUNNING, step_count=1)
        assert await store.commit_execution(running, 1, step) is True
        stale = execution.evolve(status=ExecutionStatus.CANCELLED)
        assert await store.commit_execution(stale, 1) is False

        stored = await store.get_execution(execution.id)
        assert stored is not None
        assert stored.status is ExecutionStatus.RUNNING
        assert stored.version == 2
        assert await store.list_steps(execution.id) == [step]

    async def test_duplicate_step_rolls_back_row(self, store: PostgresStore, tenant_id: str) -> None:
        execution = _execution(tenant_id)
        await store.create_execution(execution)
        await store.commit_execution(execution.evolve(step_count=1), 1, _step(execution, 0))
        current = await store.get_execution(execution.id)
        assert current is not None

        committed = await store.commit_execution(
            current.evolve(status=ExecutionStatus.FAILED, step_count=2), 2, _step(execution, 0)
        )

        assert committed is False
        stored = await store.get_execution(execution.id)
        assert stored is not None
        assert stored.status is ExecutionStatus.PENDING
        assert stored.version == 2

    async def test_concurrent_commits_single_winner(
        self, store: PostgresStore, tenant_id: str
    ) -> None:
        execution = _execution(tenant_id)
        await store.create_execution(execution)
        attempts = [
            execution.evolve(status=ExecutionStatus.RUNNING, current_node_id=f'n{i}')
            for i in range(5)
        ]

        results = await asyncio.gather(*(store.commit_execution(a, 1) for a in attempts))

        assert sorted(results) == [False, False, False, False, True]

    async def test_token_and_due_queries(self, store: PostgresStore, tenant_id: str) -> None:
        token = f'tok-{uuid.uuid4().hex}'
        suspended = _execution(tenant_id)
        await store.create_execution(suspended)
        await store.commit_execution(
            suspended.evolve(
                status=ExecutionStatus.SUSPENDED,
                suspend_reason='delay',
                resume_token=token,
                resume_at=NOW - timedelta(seconds=1),
            ),
            1,
        )
        not_due = _execution(
            tenant_id, status=ExecutionStatus.RETRYING, next_retry_at=NOW + timedelta(hours=1)
        )
        await store.create_execution(not_due)

        found = await store.find_execution_by_token(token)
        due_ids = {e.id for e in await store.find_due_executions(NOW, limit=1000)}

        assert found is not None and found.id == suspended.id
        assert suspended.id in due_ids
        assert not_due.id not in due_ids


@pytest.mark.asyncio(loop_scope='function')
class TestNotificationsAndBreakers:
    async def test_notification_log(self, store: PostgresStore, tenant_id: str) -> None:
        record = NotificationRecord(
            id=new_id(),
            tenant_id=tenant_id,
            channel=NotificationChannel.SMS,
            recipient='+15550100',
            status=NotificationStatus.FAILED,
            body='hi',
            provider='gateway',
            error='timeout',
            created_at=NOW,
        )
        await store.append_notification(record)

        assert await store.list_notifications(tenant_id=tenant_id) == [record]

    async def test_breaker_insert_and_swap(self, store: PostgresStore, tenant_id: str) -> None:
        state = CircuitBreakerState(
            tenant_id=tenant_id,
            circuit_key='webhook:example.com',
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30,
            requests_per_minute=60,
        )
        assert await store.insert_breaker(state) is True
        assert await store.insert_breaker(state) is False

        opened = dataclasses.replace(
            state, state=CircuitState.OPEN, failure_count=5, last_failure_at=NOW, version=2
        )
        assert await store.swap_breaker(1, opened) is True
        assert await store.swap_breaker(1, opened) is False
        assert await store.load_breaker(tenant_id, 'webhook:example.com') == opened
        assert await store.load_breaker(tenant_id, 'missing') is None


@pytest.mark.asyncio(loop_scope='function')
class TestAppOnPostgres:
    async def test_suspend_and_resume(self, postgres_config: PostgresConfig, tenant_id: str) -> None:
        app = NodeFlow(AppConfig(database=postgres_config))
        definition = _definition(tenant_id)
        app.workflow(definition)
        try:
            execution_id = await app.start_execution(
                definition.id, {'tenant_id': tenant_id, 'entity_type': 'order', 'entity_id': 'o-9'}
            )
            suspended = await app.get_execution(execution_id)
            assert suspended is not None
            assert suspended.execution.status is ExecutionStatus.SUSPENDED

            token = suspended.execution.resume_token
            assert token is not None
            assert await app.resume_execution(token, {'approved': True}) is ResumeResult.OK
            assert await app.resume_execution(token) is ResumeResult.NOT_SUSPENDED

            view = await app.get_execution(execution_id)
        finally:
            await app.close()

        assert view is not None
        assert view.execution.status is ExecutionStatus.COMPLETED
        assert view.execution.context_data['done'] == {'ok': True}
        assert [s.node_id for s in view.steps] == ['start', 'wait', 'done']
