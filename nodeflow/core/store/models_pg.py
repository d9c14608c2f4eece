# nodeflow/core/store/models_pg.py
"""SQLAlchemy table definitions for the PostgreSQL store (schema only)."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from nodeflow.core.types.status import (
    CircuitState,
    ExecutionStatus,
    NotificationChannel,
    NotificationStatus,
    StepStatus,
)


def _enum(enum_cls: type[Enum], length: int = 16) -> SQLAlchemyEnum:
    """Store enum values ('running'), not member names ('RUNNING')."""
    return SQLAlchemyEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for nodeflow tables"""

    pass


class WorkflowDefinitionModel(Base):
    """
    One version of a workflow definition.

    - definition: full WorkflowDefinition as JSON
    - is_active / deleted_at: authoritative over the copies inside definition
    """

    __tablename__ = 'nodeflow_workflow_definitions'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text('TRUE')
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    definition: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )

    __table_args__ = (
        Index('idx_nodeflow_definitions_tenant_entity', 'tenant_id', 'entity_type'),
    )


class ExecutionModel(Base):
    __tablename__ = 'nodeflow_executions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    status: Mapped[ExecutionStatus] = mapped_column(
        _enum(ExecutionStatus), nullable=False, index=True
    )
    max_loops: Mapped[int] = mapped_column(Integer, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(64))
    context_data: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    loop_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suspend_reason: Mapped[Optional[str]] = mapped_column(String(255))
    resume_token: Mapped[Optional[str]] = mapped_column(String(64))
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    step_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Optimistic concurrency: every write must name the version it replaces.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_nodeflow_executions_due', 'status', 'next_retry_at', 'resume_at'),
        Index('idx_nodeflow_executions_workflow', 'workflow_id', 'workflow_version'),
    )


class ExecutionStepModel(Base):
    __tablename__ = 'nodeflow_execution_steps'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    execution_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('nodeflow_executions.id', ondelete='CASCADE'),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[StepStatus] = mapped_column(_enum(StepStatus), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    input: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    output: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint('execution_id', 'sequence', name='uq_nodeflow_steps_sequence'),
    )


class ResumeTokenModel(Base):
    """Every token ever issued, so reuse can be told apart from garbage."""

    __tablename__ = 'nodeflow_resume_tokens'

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    execution_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('nodeflow_executions.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )


class CircuitBreakerModel(Base):
    __tablename__ = 'nodeflow_circuit_breakers'

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    circuit_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[CircuitState] = mapped_column(_enum(CircuitState), nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    success_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    requests_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    window_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    window_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class NotificationModel(Base):
    __tablename__ = 'nodeflow_notifications'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    execution_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    channel: Mapped[NotificationChannel] = mapped_column(
        _enum(NotificationChannel), nullable=False
    )
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(Text)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    template: Mapped[Optional[str]] = mapped_column(Text)
    provider: Mapped[Optional[str]] = mapped_column(String(100))
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[NotificationStatus] = mapped_column(
        _enum(NotificationStatus), nullable=False
    )
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
