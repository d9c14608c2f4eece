"""Unit tests for MemoryStore compare-and-swap and due-execution queries."""

from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest

from engine_helpers import TENANT, FakeClock, make_trigger, make_workflow
from nodeflow.core.models.execution import Execution, ExecutionStep, new_id
from nodeflow.core.models.graph import NodeSpec
from nodeflow.core.store.memory import MemoryStore
from nodeflow.core.types.status import ExecutionStatus, StepStatus


def _execution(**changes) -> Execution:
    execution = Execution(
        id=new_id(),
        tenant_id=TENANT,
        workflow_id='wf',
        workflow_version=1,
        trigger=make_trigger(),
        status=ExecutionStatus.PENDING,
        max_loops=10,
        max_retries=3,
    )
    return dataclasses.replace(execution, **changes)


def _step(execution: Execution, sequence: int) -> ExecutionStep:
    return ExecutionStep(
        id=new_id(),
        execution_id=execution.id,
        sequence=sequence,
        node_id='n',
        node_type='trigger',
        status=StepStatus.COMPLETED,
        attempt=1,
    )


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestExecutionCommit:
    async def test_commit_requires_expected_version(self) -> None:
        store = MemoryStore()
        execution = _execution()
        await store.create_execution(execution)

        running = execution.evolve(status=ExecutionStatus.RUNNING)
        assert await store.commit_execution(running, expected_version=1) is True
        stale = execution.evolve(status=ExecutionStatus.CANCELLED)
        assert await store.commit_execution(stale, expected_version=1) is False

        stored = await store.get_execution(execution.id)
        assert stored is not None
        assert stored.status is ExecutionStatus.RUNNING
        assert stored.version == 2

    async def test_step_is_written_with_the_row(self) -> None:
        store = MemoryStore()
        execution = _execution()
        await store.create_execution(execution)

        step = _step(execution, 0)
        assert await store.commit_execution(execution.evolve(step_count=1), 1, step)

        assert await store.list_steps(execution.id) == [step]

    async def test_duplicate_sequence_rejects_whole_commit(self) -> None:
        store = MemoryStore()
        execution = _execution()
        await store.create_execution(execution)
        await store.commit_execution(execution.evolve(step_count=1), 1, _step(execution, 0))

        duplicate = _step(execution, 0)
        committed = await store.commit_execution(
            execution.evolve(step_count=2, version=3), 2, duplicate
        )

        assert committed is False
        stored = await store.get_execution(execution.id)
        assert stored is not None
        assert stored.version == 2
        with pytest.raises(ValueError):
            await store.append_step(duplicate)

    async def test_stored_context_is_detached(self) -> None:
        store = MemoryStore()
        execution = _execution(context_data={'a': {'x': 1}})
        await store.create_execution(execution)

        execution.context_data['a']['x'] = 99

        stored = await store.get_execution(execution.id)
        assert stored is not None
        assert stored.context_data == {'a': {'x': 1}}

    async def test_token_lookup_survives_resume(self) -> None:
        store = MemoryStore()
        execution = _execution()
        await store.create_execution(execution)
        suspended = execution.evolve(
            status=ExecutionStatus.SUSPENDED, suspend_reason='delay', resume_token='tok'
        )
        await store.commit_execution(suspended, 1)
        resumed = suspended.evolve(
            status=ExecutionStatus.RUNNING, suspend_reason=None, resume_token=None
        )
        await store.commit_execution(resumed, 2)

        found = await store.find_execution_by_token('tok')

        assert found is not None
        assert found.id == execution.id
        assert found.status is ExecutionStatus.RUNNING
        assert await store.find_execution_by_token('other') is None


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestFindDueExecutions:
    async def test_due_rules_per_status(self) -> None:
        store = MemoryStore()
        now = FakeClock()()
        earlier, later = now - timedelta(seconds=1), now + timedelta(seconds=1)
        due = {
            'pending': _execution(),
            'running_no_lease': _execution(status=ExecutionStatus.RUNNING),
            'running_expired': _execution(status=ExecutionStatus.RUNNING, lease_expires_at=earlier),
            'retry_due': _execution(status=ExecutionStatus.RETRYING, next_retry_at=now),
            'resume_due': _execution(status=ExecutionStatus.SUSPENDED, resume_at=earlier),
        }
        not_due = {
            'running_leased': _execution(status=ExecutionStatus.RUNNING, lease_expires_at=later),
            'retry_later': _execution(status=ExecutionStatus.RETRYING, next_retry_at=later),
            'suspended_no_timer': _execution(status=ExecutionStatus.SUSPENDED),
            'resume_later': _execution(status=ExecutionStatus.SUSPENDED, resume_at=later),
            'completed': _execution(status=ExecutionStatus.COMPLETED),
            'cancelled': _execution(status=ExecutionStatus.CANCELLED),
        }
        for execution in [*due.values(), *not_due.values()]:
            await store.create_execution(execution)

        found = await store.find_due_executions(now, limit=100)

        assert {e.id for e in found} == {e.id for e in due.values()}
        assert len(await store.find_due_executions(now, limit=2)) == 2


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestDefinitions:
    async def test_latest_version_and_soft_delete(self) -> None:
        store = MemoryStore()
        v1 = make_workflow([NodeSpec(id='start', node_type='trigger')])
        v2 = v1.model_copy(update={'version': 2, 'name': 'renamed'})

        assert await store.insert_definition(v1) is True
        assert await store.insert_definition(v1) is False
        assert await store.insert_definition(v2) is True

        latest = await store.get_definition('wf')
        assert latest is not None and latest.version == 2
        pinned = await store.get_definition('wf', 1)
        assert pinned is not None and pinned.name == 'workflow wf'
        assert [d.version for d in await store.list_definitions(TENANT)] == [2]

        assert await store.soft_delete_definition('wf', FakeClock()()) is True
        assert await store.list_definitions(TENANT) == []
        assert len(await store.list_definitions(TENANT, live_only=False)) == 1
        assert await store.soft_delete_definition('missing', FakeClock()()) is False

    async def test_list_filters_by_tenant_and_entity(self) -> None:
        store = MemoryStore()
        await store.insert_definition(make_workflow([NodeSpec(id='s', node_type='trigger')]))
        await store.insert_definition(
            make_workflow(
                [NodeSpec(id='s', node_type='trigger')],
                workflow_id='other-tenant',
                tenant_id='tenant-2',
            )
        )

        assert [d.id for d in await store.list_definitions(TENANT, 'order')] == ['wf']
        assert await store.list_definitions(TENANT, 'invoice') == []
