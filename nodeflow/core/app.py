# nodeflow/core/app.py
from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Optional

import httpx

from nodeflow.core.audit import AuditLog
from nodeflow.core.breaker.registry import CircuitBreakerRegistry, Clock, utcnow
from nodeflow.core.collaborators import (
    AIClient,
    NotificationProvider,
    RecordStore,
    ScriptRunner,
)
from nodeflow.core.dispatcher import Dispatcher
from nodeflow.core.engine.engine import ExecutionEngine, ExecutionOutcome
from nodeflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    MultipleValidationErrors,
    NodeflowError,
    WorkflowValidationError,
)
from nodeflow.core.logging import get_logger
from nodeflow.core.models.config import AppConfig
from nodeflow.core.models.execution import (
    EntityEvent,
    ExecutionView,
    NotificationRecord,
    TriggerContext,
)
from nodeflow.core.models.graph import WorkflowDefinition
from nodeflow.core.nodes.context import NodeServices
from nodeflow.core.nodes.executor import StepExecutor
from nodeflow.core.nodes.handlers import builtin_registry
from nodeflow.core.nodes.registry import NodeRegistry
from nodeflow.core.notifications import NotificationService
from nodeflow.core.store.base import Store
from nodeflow.core.store.memory import MemoryStore
from nodeflow.core.store.postgres import PostgresStore
from nodeflow.core.triggers import TriggerRouter
from nodeflow.core.types.status import NotificationChannel, ResumeResult

# Concurrent publishers of the same workflow retry on version clashes.
_PUBLISH_ATTEMPTS = 5

_VERSION_INDEPENDENT_FIELDS = {'version', 'is_active', 'deleted_at'}


class NodeFlow:
    """
    Configuration-driven workflow automation app.

    Wires the store, circuit breakers, node registry, engine, trigger
    router and notification service together from one AppConfig, and
    exposes the operations other systems call.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        records: Optional[RecordStore] = None,
        providers: Optional[Mapping[NotificationChannel, NotificationProvider]] = None,
        ai: Optional[AIClient] = None,
        scripts: Optional[ScriptRunner] = None,
        http: Optional[httpx.AsyncClient] = None,
        registry: Optional[NodeRegistry] = None,
        clock: Clock = utcnow,
    ):
        self.config = config or AppConfig()
        self.clock = clock
        self.logger = get_logger('app')
        self.registry = registry or builtin_registry()

        self.store: Store = (
            PostgresStore(self.config.database)
            if self.config.database is not None
            else MemoryStore()
        )
        self.breakers = CircuitBreakerRegistry(self.store, self.config.breaker, clock)
        self.notifications = NotificationService(self.store, self.breakers, providers, clock)
        self.services = NodeServices(
            records=records,
            notifications=self.notifications,
            ai=ai,
            scripts=scripts,
            http=http,
        )
        self.audit = AuditLog(self.store)
        self.engine = ExecutionEngine(
            self.store,
            StepExecutor(self.registry, self.config.engine),
            self.breakers,
            self.config.engine,
            self.services,
            self.audit,
            clock,
        )
        self.triggers = TriggerRouter(self.store, self.engine, records)

        self._workflows: list[WorkflowDefinition] = []
        self._owns_http = False
        self._started = False

        store_kind = 'postgres' if self.config.database is not None else 'in-memory'
        self.logger.info(
            f'nodeflow initialized with {store_kind} store and '
            f'{len(self.registry)} node types'
        )

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Register a definition to publish when the app starts.

        Node types and configs are checked against the registry right away.
        """
        self.registry.validate_definition(definition)
        if any(d.id == definition.id for d in self._workflows):
            raise WorkflowValidationError(
                message=f"workflow '{definition.id}' registered twice",
                code=ErrorCode.WORKFLOW_DUPLICATE_ID,
                help_text='give each workflow a unique id',
            )
        self._workflows.append(definition)
        return definition

    def list_workflows(self) -> list[WorkflowDefinition]:
        return list(self._workflows)

    async def publish_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store the definition as the next version of its workflow."""
        await self.start()
        return await self._publish(definition)

    async def _publish(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        self.registry.validate_definition(definition)
        for _ in range(_PUBLISH_ATTEMPTS):
            latest = await self.store.get_definition(definition.id)
            if latest is not None and latest.tenant_id != definition.tenant_id:
                raise WorkflowValidationError(
                    message=f"workflow id '{definition.id}' belongs to another tenant",
                    code=ErrorCode.WORKFLOW_NOT_FOUND,
                )
            version = latest.version + 1 if latest is not None else definition.version
            candidate = definition.model_copy(update={'version': version})
            if await self.store.insert_definition(candidate):
                self.engine.remember(candidate)
                self.logger.info(f"Published workflow '{candidate.id}' v{candidate.version}")
                return candidate
        raise WorkflowValidationError(
            message=f"could not publish workflow '{definition.id}': version kept changing",
            code=ErrorCode.WORKFLOW_PUBLISH_CONFLICT,
            help_text='another process is publishing the same workflow; retry',
        )

    async def delete_definition(self, workflow_id: str) -> bool:
        """Soft-delete every version. Running executions keep their pinned version."""
        await self.start()
        deleted = await self.store.soft_delete_definition(workflow_id, self.clock())
        if deleted:
            self.logger.info(f"Workflow '{workflow_id}' soft-deleted")
        return deleted

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize the store and publish registered workflows that changed."""
        if self._started:
            return
        self._started = True
        await self.store.initialize()
        if self.services.http is None:
            self.services.http = httpx.AsyncClient()
            self._owns_http = True
        for definition in self._workflows:
            latest = await self.store.get_definition(definition.id)
            if latest is not None and _same_workflow(latest, definition):
                self.engine.remember(latest)
                continue
            await self._publish(definition)

    async def close(self) -> None:
        if self._owns_http and self.services.http is not None:
            await self.services.http.aclose()
            self.services.http = None
            self._owns_http = False
        await self.store.close()
        self._started = False

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(self.engine, self.store, self.config.dispatcher, self.clock)

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def start_execution(
        self,
        workflow_id: str,
        trigger: TriggerContext | Mapping[str, Any],
        *,
        advance: bool = True,
    ) -> str:
        """Start the latest version of a workflow; run its first tick unless told not to."""
        await self.start()
        context = (
            trigger
            if isinstance(trigger, TriggerContext)
            else TriggerContext.model_validate(trigger)
        )
        definition = await self.store.get_definition(workflow_id)
        if definition is None:
            raise WorkflowValidationError(
                message=f"workflow '{workflow_id}' not found",
                code=ErrorCode.WORKFLOW_NOT_FOUND,
            )
        execution = await self.engine.start_execution(definition, context)
        if advance:
            await self.engine.advance(execution, definition)
        return execution.id

    async def advance_execution(self, execution_id: str) -> Optional[ExecutionOutcome]:
        """Run one tick now instead of waiting for the dispatcher."""
        await self.start()
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            return None
        return await self.engine.advance(execution)

    async def cancel_execution(self, execution_id: str) -> bool:
        await self.start()
        return await self.engine.cancel(execution_id)

    async def resume_execution(
        self, token: str, payload: Optional[Mapping[str, Any]] = None
    ) -> ResumeResult:
        await self.start()
        result = await self.engine.resume_by_token(token, payload)
        if result is not ResumeResult.OK:
            self.logger.info(f'Resume rejected: {result.value}')
        return result

    async def get_execution(self, execution_id: str) -> Optional[ExecutionView]:
        await self.start()
        return await self.audit.view(execution_id)

    async def list_notifications(self, execution_id: str) -> list[NotificationRecord]:
        """Notifications an execution sent or attempted, oldest first."""
        await self.start()
        return await self.audit.notifications(execution_id)

    async def handle_event(
        self, event: EntityEvent, *, advance: bool = True
    ) -> list[str]:
        """Start every live workflow whose trigger matches the event."""
        await self.start()
        started = await self.triggers.handle_event(event)
        if advance:
            for execution in started:
                await self.engine.advance(execution)
        return [execution.id for execution in started]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check(self, *, live: bool = False) -> list[NodeflowError]:
        """Validate registered workflows and, if live, store connectivity.

        Config is already validated at construction. Returns every error
        found; an empty list means all checks passed.
        """
        errors: list[NodeflowError] = []
        for definition in self._workflows:
            try:
                self.registry.validate_definition(definition)
            except MultipleValidationErrors as exc:
                errors.extend(exc.report.errors)
            except NodeflowError as exc:
                errors.append(exc)
        if errors:
            return errors
        if live:
            errors.extend(self._check_store_connectivity())
        return errors

    def _check_store_connectivity(self) -> list[NodeflowError]:
        """Open a throwaway store, create the schema, close it."""
        if self.config.database is None:
            return []
        probe = PostgresStore(self.config.database)

        async def _probe() -> None:
            try:
                await probe.initialize()
            finally:
                await probe.close()

        try:
            asyncio.run(_probe())
        except NodeflowError as exc:
            return [exc]
        except Exception as exc:
            return [
                ConfigurationError(
                    message='store connectivity check failed',
                    code=ErrorCode.STORE_UNAVAILABLE,
                    notes=[str(exc)],
                    help_text='check database_url in PostgresConfig',
                )
            ]
        return []


def _same_workflow(stored: WorkflowDefinition, candidate: WorkflowDefinition) -> bool:
    return stored.is_live and stored.model_dump(
        exclude=_VERSION_INDEPENDENT_FIELDS
    ) == candidate.model_dump(exclude=_VERSION_INDEPENDENT_FIELDS)
