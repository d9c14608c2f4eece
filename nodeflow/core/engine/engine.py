# nodeflow/core/engine/engine.py
from __future__ import annotations

import dataclasses
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from nodeflow.core.audit import AuditLog
from nodeflow.core.breaker.registry import (
    BreakerHandle,
    Clock,
    CircuitBreakerRegistry,
    utcnow,
)
from nodeflow.core.defaults import TICK_LEASE_MARGIN_MS
from nodeflow.core.engine.backoff import retry_delay
from nodeflow.core.errors import ErrorCode, WorkflowValidationError
from nodeflow.core.exceptions import (
    CancelledByUser,
    CircuitOpenError,
    ExecutionErrorCode,
    LoopLimitExceeded,
    NodeExecutionError,
    RetryBudgetExhausted,
)
from nodeflow.core.logging import get_logger
from nodeflow.core.models.config import EngineConfig
from nodeflow.core.models.execution import (
    Execution,
    ExecutionStep,
    TriggerContext,
    new_id,
)
from nodeflow.core.models.graph import NodeSpec, WorkflowDefinition
from nodeflow.core.nodes.conditions import evaluate
from nodeflow.core.nodes.context import NodeContext, NodeServices, Scope
from nodeflow.core.nodes.executor import StepExecutor
from nodeflow.core.nodes.outcomes import (
    BreakerDenied,
    Completed,
    Fatal,
    NodeError,
    NodeOutcome,
    Retryable,
    Suspend,
)
from nodeflow.core.store.base import ExecutionStore
from nodeflow.core.types.status import ExecutionStatus, ResumeResult, StepStatus
from nodeflow.core.utils.db import is_retryable_connection_error

# Node type whose timer resume means the awaited event never came.
_WAIT_FOR_EVENT = 'wait_for_event'


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Result of one tick (or one resume) of an execution."""

    execution: Execution
    nodes_run: int = 0
    yielded: bool = False
    aborted: bool = False
    reason: str | None = None
    error: NodeError | None = None

    @property
    def status(self) -> ExecutionStatus:
        return self.execution.status


@dataclass(frozen=True, slots=True)
class _NodeRun:
    """A computed node transition, not yet persisted."""

    execution: Execution
    step: ExecutionStep
    error: NodeError | None = None
    handle: BreakerHandle | None = None
    # Reported to the acquired circuits once the transition is stored.
    success: bool | None = None


class ExecutionEngine:
    """
    Advances executions through their workflow graph.

    One call to ``advance`` is one tick: claim the execution by version,
    then run nodes until the execution suspends, retries, finishes, fails,
    gets cancelled or reaches ``max_nodes_per_tick``. Each node transition
    is persisted as the execution update plus exactly one step, in a single
    store call guarded by the version the tick last wrote.
    """

    def __init__(
        self,
        store: ExecutionStore,
        executor: StepExecutor,
        breakers: CircuitBreakerRegistry,
        config: EngineConfig | None = None,
        services: NodeServices | None = None,
        audit: AuditLog | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.executor = executor
        self.breakers = breakers
        self.config = config or EngineConfig()
        self.services = services or NodeServices()
        self.audit = audit or AuditLog(store)
        self.clock = clock
        self.logger = get_logger('engine')
        self._definitions: dict[tuple[str, int], WorkflowDefinition] = {}

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def remember(self, definition: WorkflowDefinition) -> None:
        self._definitions[(definition.id, definition.version)] = definition

    async def definition_for(self, execution: Execution) -> WorkflowDefinition | None:
        key = (execution.workflow_id, execution.workflow_version)
        definition = self._definitions.get(key)
        if definition is None:
            definition = await self.store.get_definition(*key)
            if definition is not None:
                self._definitions[key] = definition
        return definition

    # ------------------------------------------------------------------
    # Start / cancel
    # ------------------------------------------------------------------

    async def start_execution(
        self, definition: WorkflowDefinition, trigger: TriggerContext
    ) -> Execution:
        """Create a pending execution pinned to this definition version."""
        if not definition.is_live:
            raise WorkflowValidationError(
                message=f"workflow '{definition.id}' is not active",
                code=ErrorCode.WORKFLOW_INACTIVE,
                notes=[
                    f'is_active={definition.is_active}',
                    f'deleted_at={definition.deleted_at}',
                ],
            )
        if trigger.tenant_id != definition.tenant_id:
            raise WorkflowValidationError(
                message=(
                    f"trigger tenant '{trigger.tenant_id}' does not own workflow "
                    f"'{definition.id}'"
                ),
                code=ErrorCode.WORKFLOW_NOT_FOUND,
            )
        self.remember(definition)
        now = self.clock()
        execution = Execution(
            id=new_id(),
            tenant_id=definition.tenant_id,
            workflow_id=definition.id,
            workflow_version=definition.version,
            trigger=trigger,
            status=ExecutionStatus.PENDING,
            max_loops=definition.max_loops or self.config.max_loops,
            max_retries=(
                definition.max_retries
                if definition.max_retries is not None
                else self.config.max_retries
            ),
            created_at=now,
            updated_at=now,
        )
        await self.store.create_execution(execution)
        self.logger.info(
            f'Execution {execution.id} created for {definition.id} v{definition.version}'
        )
        return execution

    async def cancel(self, execution_id: str) -> bool:
        """Cancel unless already terminal. Returns whether this call cancelled it."""
        while True:
            execution = await self.store.get_execution(execution_id)
            if execution is None or execution.status.is_terminal:
                return False
            now = self.clock()
            cancelled = execution.evolve(
                status=ExecutionStatus.CANCELLED,
                suspend_reason=None,
                resume_token=None,
                resume_at=None,
                next_retry_at=None,
                last_error=None,
                lease_expires_at=None,
                completed_at=now,
                updated_at=now,
            )
            if await self.store.commit_execution(cancelled, execution.version):
                self.logger.info(
                    f'Execution {execution_id} cancelled (was {execution.status.value})'
                )
                return True

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def advance(
        self,
        execution: Execution,
        definition: WorkflowDefinition | None = None,
    ) -> ExecutionOutcome:
        now = self.clock()
        match execution.status:
            case ExecutionStatus.RETRYING if (
                execution.next_retry_at is not None and now < execution.next_retry_at
            ):
                return ExecutionOutcome(execution, reason='not_ready')
            case ExecutionStatus.RUNNING if (
                execution.lease_expires_at is not None and now < execution.lease_expires_at
            ):
                return ExecutionOutcome(execution, reason='leased')
            case status if not status.is_advanceable:
                return ExecutionOutcome(execution, reason='not_ready')

        definition = definition or await self.definition_for(execution)
        if definition is None:
            return await self._fail_without_step(
                execution,
                NodeError.of(
                    ExecutionErrorCode.VALIDATION_ERROR,
                    f'workflow {execution.workflow_id} v{execution.workflow_version} not found',
                ),
            )

        claimed = execution.evolve(
            status=ExecutionStatus.RUNNING,
            current_node_id=execution.current_node_id or definition.entry_node.id,
            next_retry_at=None,
            last_error=None,
            lease_expires_at=self._lease_deadline(now),
            started_at=execution.started_at or now,
            updated_at=now,
        )
        if not await self.store.commit_execution(claimed, execution.version):
            self.logger.debug(f'Execution {execution.id}: claim lost, another tick owns it')
            return ExecutionOutcome(execution, aborted=True, reason='conflict')

        return await self._run_tick(claimed, definition)

    async def _run_tick(
        self, execution: Execution, definition: WorkflowDefinition
    ) -> ExecutionOutcome:
        current = execution
        nodes_run = 0
        while True:
            if nodes_run > 0:
                # Cooperative cancellation: anything else writing the row ends this tick.
                latest = await self.store.get_execution(current.id)
                if latest is None or latest.version != current.version:
                    return self._aborted(latest or current, nodes_run)

            if nodes_run >= self.config.max_nodes_per_tick:
                released = current.evolve(lease_expires_at=None, updated_at=self.clock())
                if not await self.store.commit_execution(released, current.version):
                    latest = await self.store.get_execution(current.id)
                    return self._aborted(latest or current, nodes_run)
                self.logger.debug(
                    f'Execution {current.id} yielded after {nodes_run} node(s)'
                )
                return ExecutionOutcome(released, nodes_run=nodes_run, yielded=True)

            node = definition.node(current.current_node_id or '')
            if node is None:
                outcome = await self._fail_without_step(
                    current,
                    NodeError.of(
                        ExecutionErrorCode.UNKNOWN_NODE,
                        f"node '{current.current_node_id}' is not part of "
                        f'{definition.id} v{definition.version}',
                    ),
                )
                return dataclasses.replace(outcome, nodes_run=nodes_run)

            leased = await self._ensure_lease(current, node)
            if leased is None:
                latest = await self.store.get_execution(current.id)
                return self._aborted(latest or current, nodes_run)
            current = leased

            run = await self._run_node(current, definition, node)
            nodes_run += 1
            committed = await self._commit(current, run.execution, run.step)
            await self._settle(run)
            if committed is None:
                latest = await self.store.get_execution(current.id)
                return self._aborted(latest or current, nodes_run)
            current = committed

            if current.status is not ExecutionStatus.RUNNING:
                return ExecutionOutcome(current, nodes_run=nodes_run, error=run.error)

    async def _run_node(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        node: NodeSpec,
    ) -> _NodeRun:
        """Run one node and compute the transition. Nothing is persisted here."""
        started = self.clock()

        if execution.loop_count >= execution.max_loops:
            error = NodeError.from_exception(
                LoopLimitExceeded(
                    f'loop limit of {execution.max_loops} node executions reached',
                    data={'loop_count': execution.loop_count, 'node_id': node.id},
                )
            )
            step = self._step(execution, node, StepStatus.SKIPPED, started, error=error)
            return _NodeRun(self._failed(execution, error, started), step, error)

        handle = self.breakers.handle(execution.tenant_id)
        ctx = NodeContext.build(
            execution_id=execution.id,
            tenant_id=execution.tenant_id,
            trigger=execution.trigger,
            context_data=execution.context_data,
            now=started,
            attempt=execution.retry_count + 1,
            breaker=handle,
            services=self.services,
        )
        outcome: NodeOutcome
        circuit = self.executor.circuit_for(node)
        try:
            if circuit is not None:
                await handle.acquire(*circuit)
        except CircuitOpenError as exc:
            outcome = BreakerDenied(circuit_key=exc.circuit_key, retry_after=exc.retry_after)
        except NodeExecutionError as exc:
            # Breaker storage trouble; the node has not run.
            error = NodeError.from_exception(exc)
            outcome = Retryable(error) if exc.retryable else Fatal(error)
        else:
            outcome = await self.executor.run(node, ctx)

        now = self.clock()
        node_input = {'config': node.config}
        match outcome:
            case Completed(output=output):
                context_data = {**execution.context_data, node.id: output}
                target = self._select_edge(definition, node, output, execution.trigger, context_data)
                step = self._step(
                    execution, node, StepStatus.COMPLETED, started, now,
                    input=node_input, output=output,
                )
                return _NodeRun(
                    self._follow(execution, context_data, target, now),
                    step,
                    handle=handle,
                    success=True,
                )

            case Suspend(reason=reason, resume_at=resume_at, output=output, external=external):
                suspended = execution.evolve(
                    status=ExecutionStatus.SUSPENDED,
                    context_data={**execution.context_data, node.id: dict(output)},
                    retry_count=0,
                    suspend_reason=reason,
                    resume_token=secrets.token_urlsafe(24) if external else None,
                    resume_at=resume_at,
                    lease_expires_at=None,
                    updated_at=now,
                )
                step = self._step(
                    execution, node, StepStatus.COMPLETED, started, now,
                    input=node_input,
                    output={
                        **output,
                        'suspended': True,
                        'reason': reason,
                        'resume_at': resume_at.isoformat() if resume_at else None,
                    },
                )
                return _NodeRun(suspended, step, handle=handle, success=True)

            case Retryable(error=error):
                step = self._step(execution, node, StepStatus.FAILED, started, now, input=node_input, error=error)
                if execution.retry_count < execution.max_retries:
                    retry_count = execution.retry_count + 1
                    retrying = execution.evolve(
                        status=ExecutionStatus.RETRYING,
                        retry_count=retry_count,
                        next_retry_at=now + retry_delay(retry_count, self.config.retry),
                        last_error=error.to_json(),
                        lease_expires_at=None,
                        updated_at=now,
                    )
                    return _NodeRun(retrying, step, error, handle=handle, success=False)
                exhausted = NodeError.from_exception(
                    RetryBudgetExhausted(
                        f"node '{node.id}' failed after {execution.max_retries} "
                        f'retr{"y" if execution.max_retries == 1 else "ies"}: {error.message}',
                        data={'last_error': error.to_json(), 'node_id': node.id},
                    )
                )
                return _NodeRun(
                    self._failed(execution, exhausted, now),
                    step,
                    exhausted,
                    handle=handle,
                    success=False,
                )

            case Fatal(error=error):
                # Not the dependency's fault; leave the circuits alone.
                step = self._step(execution, node, StepStatus.FAILED, started, now, input=node_input, error=error)
                return _NodeRun(self._failed(execution, error, now), step, error)

            case BreakerDenied(circuit_key=circuit_key, retry_after=retry_after):
                error = NodeError.from_exception(CircuitOpenError(circuit_key, retry_after))
                step = self._step(execution, node, StepStatus.SKIPPED, started, now, input=node_input, error=error)
                denied = execution.evolve(
                    status=ExecutionStatus.RETRYING,
                    next_retry_at=retry_after,
                    last_error=error.to_json(),
                    lease_expires_at=None,
                    updated_at=now,
                )
                return _NodeRun(denied, step, error)

        raise AssertionError(f'unhandled outcome {outcome!r}')

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(
        self,
        execution: Execution,
        payload: Mapping[str, Any] | None = None,
        definition: WorkflowDefinition | None = None,
    ) -> ExecutionOutcome:
        """
        Leave a suspended node: merge ``payload`` into its output slot, then
        follow its edges as if it had just completed and keep ticking.
        """
        if execution.status is not ExecutionStatus.SUSPENDED:
            return ExecutionOutcome(execution, aborted=True, reason='not_suspended')
        definition = definition or await self.definition_for(execution)
        node = definition.node(execution.current_node_id or '') if definition else None
        if definition is None or node is None:
            return await self._fail_without_step(
                execution,
                NodeError.of(
                    ExecutionErrorCode.UNKNOWN_NODE,
                    f'cannot resume {execution.id}: node {execution.current_node_id} '
                    f'of {execution.workflow_id} v{execution.workflow_version} not found',
                ),
            )

        now = self.clock()
        previous = execution.context_data.get(node.id)
        slot = {**(previous if isinstance(previous, dict) else {}), **(payload or {})}
        context_data = {**execution.context_data, node.id: slot}
        target = self._select_edge(definition, node, slot, execution.trigger, context_data)
        resumed = self._follow(
            execution,
            context_data,
            target,
            now,
            status=ExecutionStatus.RUNNING,
            suspend_reason=None,
            resume_token=None,
            resume_at=None,
            lease_expires_at=self._lease_deadline(now),
            started_at=execution.started_at or now,
        )
        if not await self.store.commit_execution(resumed, execution.version):
            return ExecutionOutcome(execution, aborted=True, reason='conflict')
        self.logger.info(
            f'Execution {execution.id} resumed from {node.id} ({execution.suspend_reason})'
        )
        if resumed.status is not ExecutionStatus.RUNNING:
            return ExecutionOutcome(resumed)
        return await self._run_tick(resumed, definition)

    async def resume_due(self, execution: Execution) -> ExecutionOutcome:
        """Timer resume for a suspended execution whose resume_at has passed."""
        if execution.status is not ExecutionStatus.SUSPENDED:
            return ExecutionOutcome(execution, aborted=True, reason='not_suspended')
        if execution.resume_at is None or self.clock() < execution.resume_at:
            return ExecutionOutcome(execution, reason='not_ready')
        definition = await self.definition_for(execution)
        node = definition.node(execution.current_node_id or '') if definition else None
        payload: dict[str, Any] = {}
        if node is not None and node.node_type == _WAIT_FOR_EVENT:
            payload['timed_out'] = True
        return await self.resume(execution, payload, definition)

    async def resume_by_token(
        self, token: str, payload: Mapping[str, Any] | None = None
    ) -> ResumeResult:
        execution = await self.store.find_execution_by_token(token)
        if execution is None:
            return ResumeResult.INVALID_TOKEN
        if execution.status is not ExecutionStatus.SUSPENDED or execution.resume_token != token:
            return ResumeResult.NOT_SUSPENDED
        outcome = await self.resume(execution, payload)
        if outcome.aborted and outcome.reason in ('conflict', 'not_suspended'):
            # Someone else resumed or cancelled it first.
            return ResumeResult.NOT_SUSPENDED
        return ResumeResult.OK

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _select_edge(
        self,
        definition: WorkflowDefinition,
        node: NodeSpec,
        output: Mapping[str, Any],
        trigger: TriggerContext,
        context_data: Mapping[str, Any],
    ) -> str | None:
        """First outgoing edge (definition order) whose guard holds."""
        scope = Scope(trigger=trigger, nodes=context_data)
        branch = str(bool(output.get('condition'))).lower()
        for edge in definition.outgoing(node.id):
            if edge.branch is not None and edge.branch != branch:
                continue
            if edge.condition is not None and not evaluate(edge.condition, scope).matched:
                continue
            return edge.target
        return None

    def _follow(
        self,
        execution: Execution,
        context_data: dict[str, Any],
        target: str | None,
        now: datetime,
        **changes: Any,
    ) -> Execution:
        """Leave the current node for ``target``, or complete when there is none."""
        changes.update(
            context_data=context_data,
            loop_count=execution.loop_count + 1,
            retry_count=0,
            updated_at=now,
        )
        if target is None:
            changes.update(
                status=ExecutionStatus.COMPLETED,
                lease_expires_at=None,
                completed_at=now,
            )
        else:
            changes['current_node_id'] = target
            changes.setdefault('lease_expires_at', self._lease_deadline(now))
        return execution.evolve(**changes)

    def _failed(self, execution: Execution, error: NodeError, now: datetime) -> Execution:
        return execution.evolve(
            status=ExecutionStatus.FAILED,
            next_retry_at=None,
            last_error=error.to_json(),
            lease_expires_at=None,
            completed_at=now,
            updated_at=now,
        )

    def _step(
        self,
        execution: Execution,
        node: NodeSpec,
        status: StepStatus,
        started: datetime,
        completed: datetime | None = None,
        *,
        input: dict[str, Any] | None = None,
        output: dict[str, Any] | None = None,
        error: NodeError | None = None,
    ) -> ExecutionStep:
        return self.audit.build_step(
            execution,
            node_id=node.id,
            node_type=node.node_type,
            status=status,
            started_at=started,
            completed_at=completed or started,
            input=input,
            output=output,
            error=error.to_json() if error else None,
        )

    async def _commit(
        self, previous: Execution, new: Execution, step: ExecutionStep
    ) -> Execution | None:
        """Store the transition and its step. Returns the stored execution."""
        new = dataclasses.replace(new, step_count=previous.step_count + 1)
        if await self.store.commit_execution(new, previous.version, step):
            self.audit.log_step(new, step)
            return new
        # The node ran, so its step is kept even though the transition lost.
        latest = await self.store.get_execution(previous.id)
        if latest is not None and latest.step_count == previous.step_count:
            await self.store.append_step(step)
            self.audit.log_step(latest, step)
        self.logger.info(
            f'Execution {previous.id}: transition after {step.node_id} lost to a '
            f'concurrent write ({latest.status.value if latest else "missing"})'
        )
        return None

    async def _fail_without_step(
        self, execution: Execution, error: NodeError
    ) -> ExecutionOutcome:
        failed = self._failed(execution, error, self.clock())
        if not await self.store.commit_execution(failed, execution.version):
            return ExecutionOutcome(execution, aborted=True, reason='conflict')
        self.logger.error(f'Execution {execution.id} failed: {error.message}')
        return ExecutionOutcome(failed, error=error)

    def _aborted(self, latest: Execution, nodes_run: int) -> ExecutionOutcome:
        if latest.status is ExecutionStatus.CANCELLED:
            error = NodeError.from_exception(
                CancelledByUser(f'execution {latest.id} was cancelled')
            )
            return ExecutionOutcome(
                latest, nodes_run=nodes_run, aborted=True, reason='cancelled', error=error
            )
        return ExecutionOutcome(latest, nodes_run=nodes_run, aborted=True, reason='conflict')

    async def _ensure_lease(self, execution: Execution, node: NodeSpec) -> Execution | None:
        """
        Make the lease outlast ``node``'s timeout before it runs.

        Renewal is a version-checked write, so it also fails when anything
        else changed the execution. Returns None in that case.
        """
        now = self.clock()
        needed = now + timedelta(
            seconds=self.executor.timeout_seconds(node),
            milliseconds=TICK_LEASE_MARGIN_MS,
        )
        if execution.lease_expires_at is not None and execution.lease_expires_at >= needed:
            return execution
        renewed = execution.evolve(
            lease_expires_at=self._lease_deadline(now, node), updated_at=now
        )
        if not await self.store.commit_execution(renewed, execution.version):
            return None
        self.logger.debug(
            f'Execution {execution.id}: lease renewed to {renewed.lease_expires_at} for {node.id}'
        )
        return renewed

    async def _settle(self, run: _NodeRun) -> None:
        """Report the node's result to its circuits. The transition is already stored."""
        if run.handle is None or run.success is None:
            return
        try:
            await run.handle.settle(run.success)
        except NodeExecutionError as exc:
            self.logger.warning(
                f'Execution {run.step.execution_id}: circuit result for {run.step.node_id} '
                f'not recorded: {exc}'
            )
        except Exception as exc:
            if not is_retryable_connection_error(exc):
                raise
            self.logger.warning(
                f'Execution {run.step.execution_id}: circuit result for {run.step.node_id} '
                f'not recorded, store unavailable: {exc}'
            )

    def _lease_deadline(self, now: datetime, node: NodeSpec | None = None) -> datetime:
        lease_ms = self.config.tick_lease_ms
        if node is not None:
            node_ms = int(self.executor.timeout_seconds(node) * 1000) + TICK_LEASE_MARGIN_MS
            lease_ms = max(lease_ms, node_ms)
        return now + timedelta(milliseconds=lease_ms)
