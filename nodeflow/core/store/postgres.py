# nodeflow/core/store/postgres.py
from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nodeflow.core.breaker.state import CircuitBreakerState
from nodeflow.core.codec.serde import dumps_json
from nodeflow.core.errors import ErrorCode, StoreError
from nodeflow.core.logging import get_logger
from nodeflow.core.models.config import PostgresConfig
from nodeflow.core.models.execution import (
    Execution,
    ExecutionStep,
    NotificationRecord,
    TriggerContext,
)
from nodeflow.core.models.graph import WorkflowDefinition
from nodeflow.core.store import sql
from nodeflow.core.store.models_pg import Base
from nodeflow.core.types.status import (
    CircuitState,
    ExecutionStatus,
    NotificationChannel,
    NotificationStatus,
    StepStatus,
)
from nodeflow.core.utils.db import is_retryable_connection_error
from nodeflow.core.utils.url import mask_database_url

_SCHEMA_INIT_ATTEMPTS = 5


def _jsonb(value: Any) -> Optional[str]:
    return None if value is None else dumps_json(value)


class PostgresStore:
    """
    PostgreSQL implementation of ExecutionStore and BreakerStore.

    Tables are created on initialize() under an advisory lock, so several
    dispatchers may start against the same database at once. Every
    execution change is an ``UPDATE ... WHERE version = :expected RETURNING``
    in the same transaction as its step insert.
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('store')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    def _schema_advisory_key(self) -> int:
        """
        Stable 64-bit advisory lock key for schema creation, derived from
        the database URL so separate clusters never share a key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'nodeflow-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            for attempt in range(1, _SCHEMA_INIT_ATTEMPTS + 1):
                try:
                    async with self.async_engine.begin() as conn:
                        await conn.execute(
                            sql.SCHEMA_ADVISORY_LOCK_SQL,
                            {'key': self._schema_advisory_key()},
                        )
                        await conn.run_sync(Base.metadata.create_all)
                    break
                except Exception as exc:
                    if not is_retryable_connection_error(exc):
                        raise
                    if attempt == _SCHEMA_INIT_ATTEMPTS:
                        raise StoreError(
                            message='could not initialize the nodeflow schema',
                            code=ErrorCode.STORE_UNAVAILABLE,
                            notes=[
                                f'database: {mask_database_url(self.config.database_url)}',
                                f'last error: {exc}',
                            ],
                            help_text='check that PostgreSQL is reachable and the credentials are valid',
                        ) from exc
                    delay = 0.5 * 2 ** (attempt - 1)
                    self.logger.warning(
                        f'Schema initialization failed: {exc}. Retrying in {delay:.1f}s '
                        f'(attempt {attempt}/{_SCHEMA_INIT_ATTEMPTS})'
                    )
                    await asyncio.sleep(delay)
            self._initialized = True
            self.logger.info(
                f'PostgresStore ready ({mask_database_url(self.config.database_url)})'
            )

    async def close(self) -> None:
        await self.async_engine.dispose()

    # ----------------- Definitions -----------------

    async def insert_definition(self, definition: WorkflowDefinition) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.INSERT_DEFINITION_SQL,
                {
                    'id': definition.id,
                    'version': definition.version,
                    'tenant_id': definition.tenant_id,
                    'name': definition.name,
                    'entity_type': definition.trigger.entity_type,
                    'is_active': definition.is_active,
                    'deleted_at': definition.deleted_at,
                    'definition': dumps_json(definition.model_dump(mode='json')),
                },
            )
            inserted = result.fetchone() is not None
            await session.commit()
            return inserted

    async def get_definition(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        async with self.session_factory() as session:
            if version is None:
                result = await session.execute(
                    sql.GET_LATEST_DEFINITION_SQL, {'id': workflow_id}
                )
            else:
                result = await session.execute(
                    sql.GET_DEFINITION_SQL, {'id': workflow_id, 'version': version}
                )
            row = result.mappings().fetchone()
        return _definition_from_row(row) if row is not None else None

    async def list_definitions(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        live_only: bool = True,
    ) -> list[WorkflowDefinition]:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.LIST_DEFINITIONS_SQL,
                {'tenant_id': tenant_id, 'entity_type': entity_type, 'live_only': live_only},
            )
            rows = result.mappings().all()
        return [_definition_from_row(row) for row in rows]

    async def soft_delete_definition(self, workflow_id: str, at: datetime) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.SOFT_DELETE_DEFINITION_SQL, {'id': workflow_id, 'at': at}
            )
            await session.commit()
            return getattr(result, 'rowcount', 0) > 0

    # ----------------- Executions -----------------

    async def create_execution(self, execution: Execution) -> None:
        async with self.session_factory() as session:
            await session.execute(sql.INSERT_EXECUTION_SQL, _execution_params(execution))
            await session.commit()

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self.session_factory() as session:
            result = await session.execute(sql.GET_EXECUTION_SQL, {'id': execution_id})
            row = result.mappings().fetchone()
        return _execution_from_row(row) if row is not None else None

    async def commit_execution(
        self,
        execution: Execution,
        expected_version: int,
        step: ExecutionStep | None = None,
    ) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.UPDATE_EXECUTION_SQL,
                {**_execution_params(execution), 'expected_version': expected_version},
            )
            if result.fetchone() is None:
                await session.rollback()
                return False
            try:
                if step is not None:
                    await session.execute(sql.INSERT_STEP_SQL, _step_params(step))
                if execution.resume_token is not None:
                    await session.execute(
                        sql.INSERT_RESUME_TOKEN_SQL,
                        {'token': execution.resume_token, 'execution_id': execution.id},
                    )
                await session.commit()
            except IntegrityError as exc:
                # Step sequence already taken: a concurrent tick won.
                await session.rollback()
                self.logger.warning(
                    f'Execution {execution.id}: commit rejected ({exc.orig})'
                )
                return False
            return True

    async def append_step(self, step: ExecutionStep) -> None:
        async with self.session_factory() as session:
            await session.execute(sql.INSERT_STEP_SQL, _step_params(step))
            await session.commit()

    async def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.LIST_STEPS_SQL, {'execution_id': execution_id}
            )
            rows = result.mappings().all()
        return [_step_from_row(row) for row in rows]

    async def find_execution_by_token(self, token: str) -> Execution | None:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.FIND_EXECUTION_BY_TOKEN_SQL, {'token': token}
            )
            row = result.mappings().fetchone()
        return _execution_from_row(row) if row is not None else None

    async def find_due_executions(self, now: datetime, limit: int) -> list[Execution]:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.FIND_DUE_EXECUTIONS_SQL, {'now': now, 'limit': limit}
            )
            rows = result.mappings().all()
        return [_execution_from_row(row) for row in rows]

    # ----------------- Notifications -----------------

    async def append_notification(self, record: NotificationRecord) -> None:
        async with self.session_factory() as session:
            await session.execute(
                sql.INSERT_NOTIFICATION_SQL,
                {
                    'id': record.id,
                    'tenant_id': record.tenant_id,
                    'execution_id': record.execution_id,
                    'channel': record.channel.value,
                    'recipient': record.recipient,
                    'subject': record.subject,
                    'body': record.body,
                    'template': record.template,
                    'provider': record.provider,
                    'provider_message_id': record.provider_message_id,
                    'status': record.status.value,
                    'error': record.error,
                    'created_at': record.created_at,
                },
            )
            await session.commit()

    async def list_notifications(
        self,
        *,
        tenant_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[NotificationRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.LIST_NOTIFICATIONS_SQL,
                {'tenant_id': tenant_id, 'execution_id': execution_id},
            )
            rows = result.mappings().all()
        return [
            NotificationRecord(
                id=row['id'],
                tenant_id=row['tenant_id'],
                channel=NotificationChannel(row['channel']),
                recipient=row['recipient'],
                status=NotificationStatus(row['status']),
                body=row['body'],
                subject=row['subject'],
                template=row['template'],
                execution_id=row['execution_id'],
                provider=row['provider'],
                provider_message_id=row['provider_message_id'],
                error=row['error'],
                created_at=row['created_at'],
            )
            for row in rows
        ]

    # ----------------- Circuit breakers -----------------

    async def load_breaker(
        self, tenant_id: str, circuit_key: str
    ) -> CircuitBreakerState | None:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.LOAD_BREAKER_SQL,
                {'tenant_id': tenant_id, 'circuit_key': circuit_key},
            )
            row = result.mappings().fetchone()
        if row is None:
            return None
        return CircuitBreakerState(**{**row, 'state': CircuitState(row['state'])})

    async def insert_breaker(self, state: CircuitBreakerState) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(sql.INSERT_BREAKER_SQL, _breaker_params(state))
            inserted = result.fetchone() is not None
            await session.commit()
            return inserted

    async def swap_breaker(
        self, expected_version: int, state: CircuitBreakerState
    ) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sql.SWAP_BREAKER_SQL,
                {**_breaker_params(state), 'expected_version': expected_version},
            )
            swapped = result.fetchone() is not None
            await session.commit()
            return swapped


# ----------------- Row mapping -----------------


def _definition_from_row(row: Any) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {**row['definition'], 'is_active': row['is_active'], 'deleted_at': row['deleted_at']}
    )


def _execution_params(execution: Execution) -> dict[str, Any]:
    return {
        'id': execution.id,
        'tenant_id': execution.tenant_id,
        'workflow_id': execution.workflow_id,
        'workflow_version': execution.workflow_version,
        'trigger': dumps_json(execution.trigger.model_dump(mode='json')),
        'status': execution.status.value,
        'max_loops': execution.max_loops,
        'max_retries': execution.max_retries,
        'current_node_id': execution.current_node_id,
        'context_data': dumps_json(execution.context_data),
        'loop_count': execution.loop_count,
        'retry_count': execution.retry_count,
        'suspend_reason': execution.suspend_reason,
        'resume_token': execution.resume_token,
        'resume_at': execution.resume_at,
        'next_retry_at': execution.next_retry_at,
        'last_error': _jsonb(execution.last_error),
        'lease_expires_at': execution.lease_expires_at,
        'step_count': execution.step_count,
        'version': execution.version,
        'created_at': execution.created_at,
        'updated_at': execution.updated_at,
        'started_at': execution.started_at,
        'completed_at': execution.completed_at,
    }


def _execution_from_row(row: Any) -> Execution:
    values = dict(row)
    values['trigger'] = TriggerContext.model_validate(values['trigger'])
    values['status'] = ExecutionStatus(values['status'])
    values['context_data'] = values['context_data'] or {}
    return Execution(**values)


def _step_params(step: ExecutionStep) -> dict[str, Any]:
    return {
        'id': step.id,
        'execution_id': step.execution_id,
        'sequence': step.sequence,
        'node_id': step.node_id,
        'node_type': step.node_type,
        'status': step.status.value,
        'attempt': step.attempt,
        'input': _jsonb(step.input),
        'output': _jsonb(step.output),
        'error': _jsonb(step.error),
        'started_at': step.started_at,
        'completed_at': step.completed_at,
        'duration_ms': step.duration_ms,
    }


def _step_from_row(row: Any) -> ExecutionStep:
    return ExecutionStep(**{**row, 'status': StepStatus(row['status'])})


def _breaker_params(state: CircuitBreakerState) -> dict[str, Any]:
    return {
        'tenant_id': state.tenant_id,
        'circuit_key': state.circuit_key,
        'state': state.state.value,
        'failure_count': state.failure_count,
        'success_count': state.success_count,
        'failure_threshold': state.failure_threshold,
        'success_threshold': state.success_threshold,
        'timeout_seconds': state.timeout_seconds,
        'requests_per_minute': state.requests_per_minute,
        'window_start': state.window_start,
        'window_count': state.window_count,
        'last_failure_at': state.last_failure_at,
        'last_success_at': state.last_success_at,
        'version': state.version,
    }
