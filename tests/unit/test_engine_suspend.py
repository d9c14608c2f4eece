"""Unit tests for suspend, resume, cancel and the dispatcher loop."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from engine_helpers import EngineHarness, make_workflow
from nodeflow.core.dispatcher import Dispatcher
from nodeflow.core.models.config import DispatcherConfig
from nodeflow.core.models.graph import Edge, NodeSpec
from nodeflow.core.nodes.handlers import TriggerNodeConfig
from nodeflow.core.nodes.outcomes import Completed
from nodeflow.core.types.status import ExecutionStatus, ResumeResult, StepStatus


def _approval_workflow(timeout_seconds: float | None = None):
    wait_config: dict = {'event': 'approval'}
    if timeout_seconds is not None:
        wait_config['timeout_seconds'] = timeout_seconds
    return make_workflow(
        [
            NodeSpec(id='start', node_type='trigger'),
            NodeSpec(id='wait', node_type='wait_for_event', config=wait_config),
            NodeSpec(
                id='escalate',
                node_type='set_field',
                config={'values': {'escalated': True}},
            ),
            NodeSpec(
                id='done',
                node_type='set_field',
                config={'values': {'approved': '{{nodes.wait.approved}}'}},
            ),
        ],
        [
            Edge(source='start', target='wait'),
            Edge(
                source='wait',
                target='escalate',
                condition={'field': 'nodes.wait.timed_out', 'operator': 'eq', 'value': True},
            ),
            Edge(source='wait', target='done'),
        ],
    )


def _delay_workflow():
    return make_workflow(
        [
            NodeSpec(id='start', node_type='trigger'),
            NodeSpec(id='wait', node_type='delay', config={'hours': 1}),
            NodeSpec(id='done', node_type='set_field', config={'values': {'ok': True}}),
        ],
        [Edge(source='start', target='wait'), Edge(source='wait', target='done')],
    )


def _dispatcher(harness: EngineHarness, **config: int) -> Dispatcher:
    return Dispatcher(
        harness.engine,
        harness.store,
        DispatcherConfig(batch_size=10, max_concurrency=5, **config),
        harness.clock,
    )


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestSuspendAndResume:
    """Executions parked on wait_for_event and resumed by token."""

    async def test_wait_for_event_suspends_with_token(self, harness: EngineHarness) -> None:
        execution = await harness.start(_approval_workflow())

        outcome = await harness.engine.advance(execution)

        assert outcome.status is ExecutionStatus.SUSPENDED
        suspended = outcome.execution
        assert suspended.resume_token
        assert suspended.suspend_reason == 'awaiting_event:approval'
        assert suspended.resume_at is None
        assert suspended.lease_expires_at is None
        assert suspended.invariant_violations() == []
        steps = await harness.store.list_steps(execution.id)
        assert [s.node_id for s in steps] == ['start', 'wait']
        assert steps[-1].status is StepStatus.COMPLETED
        assert steps[-1].output['suspended'] is True

    async def test_resume_by_token_runs_to_completion(self, harness: EngineHarness) -> None:
        execution = await harness.start(_approval_workflow())
        token = (await harness.engine.advance(execution)).execution.resume_token
        assert token is not None

        result = await harness.engine.resume_by_token(token, {'approved': True})

        assert result is ResumeResult.OK
        stored = await harness.latest(execution.id)
        assert stored.status is ExecutionStatus.COMPLETED
        assert stored.context_data['wait'] == {'approved': True}
        assert stored.context_data['done'] == {'approved': True}
        assert stored.resume_token is None
        assert stored.suspend_reason is None
        steps = await harness.store.list_steps(execution.id)
        assert [s.node_id for s in steps] == ['start', 'wait', 'done']

    async def test_second_resume_is_rejected(self, harness: EngineHarness) -> None:
        execution = await harness.start(_approval_workflow())
        token = (await harness.engine.advance(execution)).execution.resume_token
        assert token is not None

        first = await harness.engine.resume_by_token(token, {'approved': True})
        second = await harness.engine.resume_by_token(token, {'approved': False})

        assert first is ResumeResult.OK
        assert second is ResumeResult.NOT_SUSPENDED
        stored = await harness.latest(execution.id)
        assert stored.context_data['done'] == {'approved': True}
        assert len(await harness.store.list_steps(execution.id)) == 3

    async def test_unknown_token(self, harness: EngineHarness) -> None:
        assert await harness.engine.resume_by_token('nope', {}) is ResumeResult.INVALID_TOKEN

    async def test_delay_issues_no_resume_token(self, harness: EngineHarness) -> None:
        execution = await harness.start(_delay_workflow())

        outcome = await harness.engine.advance(execution)

        assert outcome.status is ExecutionStatus.SUSPENDED
        assert outcome.execution.suspend_reason == 'delay'
        assert outcome.execution.resume_token is None
        assert outcome.execution.resume_at == harness.clock() + timedelta(hours=1)
        assert outcome.execution.invariant_violations() == []

    async def test_resume_requires_suspended(self, harness: EngineHarness) -> None:
        execution = await harness.start(_approval_workflow())

        outcome = await harness.engine.resume(execution, {'approved': True})

        assert outcome.aborted is True
        assert outcome.reason == 'not_suspended'


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestCancel:
    async def test_cancel_suspended_execution(self, harness: EngineHarness) -> None:
        execution = await harness.start(_approval_workflow(timeout_seconds=600))
        token = (await harness.engine.advance(execution)).execution.resume_token

        assert await harness.engine.cancel(execution.id) is True

        stored = await harness.latest(execution.id)
        assert stored.status is ExecutionStatus.CANCELLED
        assert stored.resume_token is None
        assert stored.resume_at is None
        assert stored.completed_at == harness.clock()
        assert stored.invariant_violations() == []
        assert await harness.engine.cancel(execution.id) is False
        assert token is not None
        assert await harness.engine.resume_by_token(token, {}) is ResumeResult.NOT_SUSPENDED

    async def test_cancel_missing_execution(self, harness: EngineHarness) -> None:
        assert await harness.engine.cancel('does-not-exist') is False

    async def test_cancel_during_node_stops_tick(self, harness: EngineHarness) -> None:
        async def cancelling(node, config, ctx):
            await harness.engine.cancel(ctx.execution_id)
            return Completed({'done': True})

        harness.registry.register('cancelling', cancelling, TriggerNodeConfig)
        definition = make_workflow(
            [
                NodeSpec(id='first', node_type='cancelling'),
                NodeSpec(id='second', node_type='set_field', config={'values': {'x': 1}}),
            ],
            [Edge(source='first', target='second')],
        )
        execution = await harness.start(definition)

        outcome = await harness.engine.advance(execution)

        assert outcome.aborted is True
        assert outcome.reason == 'cancelled'
        assert outcome.error is not None
        assert outcome.error.code == 'CANCELLED'
        stored = await harness.latest(execution.id)
        assert stored.status is ExecutionStatus.CANCELLED
        steps = await harness.store.list_steps(execution.id)
        assert [s.node_id for s in steps] == ['first']


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestDispatcher:
    """Due executions are picked up once their time comes, and only then."""

    async def test_delay_resumes_exactly_once_after_an_hour(
        self, harness: EngineHarness
    ) -> None:
        dispatcher = _dispatcher(harness)
        execution = await harness.start(_delay_workflow())

        first = await dispatcher.run_once()
        assert first.dispatched == 1
        assert first.outcomes[0].status is ExecutionStatus.SUSPENDED

        immediate = await dispatcher.run_once()
        assert immediate.found == 0

        harness.clock.advance(minutes=59)
        assert (await dispatcher.run_once()).found == 0

        harness.clock.advance(minutes=1)
        due = await dispatcher.run_once()
        assert due.dispatched == 1
        assert due.outcomes[0].status is ExecutionStatus.COMPLETED

        assert (await dispatcher.run_once()).found == 0
        stored = await harness.latest(execution.id)
        assert stored.context_data['wait'] == {'delay_seconds': 3600.0}
        steps = await harness.store.list_steps(execution.id)
        assert [s.node_id for s in steps] == ['start', 'wait', 'done']

    async def test_wait_for_event_times_out(self, harness: EngineHarness) -> None:
        dispatcher = _dispatcher(harness)
        execution = await harness.start(_approval_workflow(timeout_seconds=600))
        await dispatcher.run_once()

        harness.clock.advance(seconds=600)
        await dispatcher.run_once()

        stored = await harness.latest(execution.id)
        assert stored.status is ExecutionStatus.COMPLETED
        assert stored.context_data['wait'] == {'timed_out': True}
        assert stored.context_data['escalate'] == {'escalated': True}
        assert 'done' not in stored.context_data

    async def test_retrying_execution_dispatched_when_due(
        self, harness: EngineHarness
    ) -> None:
        attempts: list[int] = []

        async def once_flaky(node, config, ctx):
            attempts.append(ctx.attempt)
            if ctx.attempt == 1:
                raise ConnectionError('reset by peer')
            return Completed({'attempt': ctx.attempt})

        harness.registry.register(
            'once_flaky',
            once_flaky,
            TriggerNodeConfig,
            exception_mapper={ConnectionError: 'CONNECTION_RESET'},
        )
        harness.engine.executor.config = harness.config.model_copy(
            update={'retryable_error_codes': frozenset({'CONNECTION_RESET'})}
        )
        dispatcher = _dispatcher(harness)
        execution = await harness.start(
            make_workflow([NodeSpec(id='call', node_type='once_flaky')])
        )

        await dispatcher.run_once()
        assert (await harness.latest(execution.id)).status is ExecutionStatus.RETRYING

        harness.clock.advance(seconds=1)
        await dispatcher.run_once()

        stored = await harness.latest(execution.id)
        assert stored.status is ExecutionStatus.COMPLETED
        assert attempts == [1, 2]
        assert stored.retry_count == 0

    async def test_errors_are_isolated_per_execution(self, harness: EngineHarness) -> None:
        dispatcher = _dispatcher(harness)
        await harness.start(_delay_workflow())
        await harness.start(_delay_workflow())
        harness.engine.advance = AsyncMock(side_effect=RuntimeError('boom'))  # type: ignore[method-assign]

        report = await dispatcher.run_once()

        assert report.found == 2
        assert report.errors == 2
        assert report.dispatched == 0
        assert dispatcher._in_flight == set()

    async def test_run_forever_stops_on_request(self, harness: EngineHarness) -> None:
        dispatcher = _dispatcher(harness, poll_interval_ms=10)
        execution = await harness.start(_approval_workflow())

        task = asyncio.create_task(dispatcher.run_forever())
        for _ in range(100):
            if (await harness.latest(execution.id)).status is ExecutionStatus.SUSPENDED:
                break
            await asyncio.sleep(0.01)
        dispatcher.request_stop()
        await asyncio.wait_for(task, timeout=2)

        assert (await harness.latest(execution.id)).status is ExecutionStatus.SUSPENDED
