# nodeflow/core/models/graph.py
"""Workflow definition graph: nodes, edges, trigger and conditions.

Definitions are immutable. Editing a workflow stores a new version under
the same id; executions keep the (workflow_id, version) they started with.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nodeflow.core.errors import (
    ErrorCode,
    ValidationReport,
    WorkflowValidationError,
    raise_collected,
)
from nodeflow.core.types.status import TriggerOperation

NodeId = Annotated[str, Field(min_length=1, max_length=128, pattern=r'^[A-Za-z0-9_.:-]+$')]


class ConditionOperator(str, Enum):
    EQUALS = 'equals'
    NOT_EQUALS = 'not_equals'
    GT = 'gt'
    LT = 'lt'
    GTE = 'gte'
    LTE = 'lte'
    CONTAINS = 'contains'
    STARTS_WITH = 'starts_with'
    ENDS_WITH = 'ends_with'
    IN = 'in'
    NOT_IN = 'not_in'
    IS_NULL = 'is_null'
    IS_NOT_NULL = 'is_not_null'
    CHANGED = 'changed'
    CHANGED_TO = 'changed_to'
    CHANGED_FROM = 'changed_from'


OPERATOR_ALIASES: dict[str, ConditionOperator] = {
    'eq': ConditionOperator.EQUALS,
    '==': ConditionOperator.EQUALS,
    'neq': ConditionOperator.NOT_EQUALS,
    '!=': ConditionOperator.NOT_EQUALS,
    '>': ConditionOperator.GT,
    '<': ConditionOperator.LT,
    '>=': ConditionOperator.GTE,
    '<=': ConditionOperator.LTE,
}


class ConditionSpec(BaseModel):
    """A single field comparison, e.g. ``amount gt 1000``.

    ``field`` is a dotted path: bare names read the trigger record,
    ``trigger.<attr>`` reads the trigger context and ``nodes.<id>.<key>``
    reads an earlier node's output.
    """

    model_config = ConfigDict(frozen=True, extra='forbid')

    field: str = Field(min_length=1)
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None

    @field_validator('operator', mode='before')
    @classmethod
    def normalize_operator(cls, v: Any) -> Any:
        if isinstance(v, str):
            lowered = v.strip().lower()
            return OPERATOR_ALIASES.get(lowered, lowered)
        return v


class CircuitSpec(BaseModel):
    """Circuit breaker key and threshold overrides for one node."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    key: str | None = Field(default=None, min_length=1, max_length=255)
    failure_threshold: int | None = Field(default=None, ge=1)
    success_threshold: int | None = Field(default=None, ge=1)
    timeout_seconds: int | None = Field(default=None, ge=1)
    requests_per_minute: int | None = Field(default=None, ge=1)


class NodeSpec(BaseModel):
    """One node of the graph. ``config`` is validated by the node type's handler."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    id: NodeId
    node_type: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: int | None = Field(default=None, ge=1)
    circuit: CircuitSpec | None = None


class Edge(BaseModel):
    """Directed transition. ``branch`` keys condition-node edges by result."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    source: NodeId
    target: NodeId
    branch: Literal['true', 'false'] | None = None
    condition: ConditionSpec | None = None

    @field_validator('branch', mode='before')
    @classmethod
    def normalize_branch(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return 'true' if v else 'false'
        if isinstance(v, str):
            return v.strip().lower()
        return v


class TriggerSpec(BaseModel):
    """Which entity events start the workflow."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    entity_type: str = Field(min_length=1)
    operations: frozenset[TriggerOperation] = frozenset({TriggerOperation.CREATED})
    field: str | None = None
    conditions: tuple[ConditionSpec, ...] = ()


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')

    id: str = Field(min_length=1, max_length=64)
    tenant_id: str = Field(min_length=1)
    name: str
    version: int = Field(default=1, ge=1)
    trigger: TriggerSpec
    nodes: tuple[NodeSpec, ...]
    edges: tuple[Edge, ...] = ()
    entry_node_id: str | None = None
    is_active: bool = True
    deleted_at: datetime | None = None
    max_loops: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=0)

    @model_validator(mode='after')
    def validate_graph(self) -> Self:
        """Check structure, collecting every problem before raising."""
        report = ValidationReport('workflow')

        if not self.name.strip():
            report.add(
                WorkflowValidationError(
                    message='workflow name must not be empty',
                    code=ErrorCode.WORKFLOW_NO_NAME,
                    notes=[f"workflow id '{self.id}'"],
                )
            )
        if not self.nodes:
            report.add(
                WorkflowValidationError(
                    message=f"workflow '{self.id}' has no nodes",
                    code=ErrorCode.WORKFLOW_NO_NODES,
                    help_text='add at least a trigger node',
                )
            )
            raise_collected(report)
            return self

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                report.add(
                    WorkflowValidationError(
                        message=f"duplicate node id '{node.id}'",
                        code=ErrorCode.WORKFLOW_DUPLICATE_NODE_ID,
                        help_text='node ids must be unique within a workflow',
                    )
                )
            seen.add(node.id)

        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    report.add(
                        WorkflowValidationError(
                            message=f"edge {edge.source} -> {edge.target} references unknown node '{end}'",
                            code=ErrorCode.WORKFLOW_UNKNOWN_EDGE_NODE,
                            notes=[f"known nodes: {', '.join(sorted(seen))}"],
                        )
                    )

        node_types = {node.id: node.node_type for node in self.nodes}
        for edge in self.edges:
            source_type = node_types.get(edge.source)
            if edge.branch is not None and source_type not in (None, 'condition'):
                report.add(
                    WorkflowValidationError(
                        message=(
                            f"edge {edge.source} -> {edge.target} has branch "
                            f"'{edge.branch}' but its source is a {source_type} node"
                        ),
                        code=ErrorCode.WORKFLOW_INVALID_BRANCH,
                        notes=['only condition nodes produce a true/false branch'],
                        help_text='drop the branch label or guard the edge with a condition',
                    )
                )

        for node in self.nodes:
            if node.node_type != 'condition':
                continue
            outgoing = self.outgoing(node.id)
            if not outgoing:
                report.add(
                    WorkflowValidationError(
                        message=f"condition node '{node.id}' has no outgoing edges",
                        code=ErrorCode.WORKFLOW_INVALID_BRANCH,
                        help_text="add edges with branch='true' and/or branch='false'",
                    )
                )
            for edge in outgoing:
                if edge.branch is None and edge.condition is None:
                    report.add(
                        WorkflowValidationError(
                            message=(
                                f"edge {edge.source} -> {edge.target} leaves a condition "
                                'node without a branch label'
                            ),
                            code=ErrorCode.WORKFLOW_INVALID_BRANCH,
                            help_text="set branch='true' or branch='false'",
                        )
                    )

        if (
            TriggerOperation.FIELD_CHANGED in self.trigger.operations
            and not self.trigger.field
        ):
            report.add(
                WorkflowValidationError(
                    message='field_changed trigger requires a field',
                    code=ErrorCode.WORKFLOW_INVALID_TRIGGER,
                    notes=[f"entity_type '{self.trigger.entity_type}'"],
                )
            )

        entry_error = self._entry_node_error()
        if entry_error is not None:
            report.add(entry_error)

        raise_collected(report)
        return self

    def _entry_candidates(self) -> list[NodeSpec]:
        if self.entry_node_id is not None:
            return [n for n in self.nodes if n.id == self.entry_node_id]
        triggers = [n for n in self.nodes if n.node_type == 'trigger']
        if triggers:
            return triggers
        targets = {e.target for e in self.edges}
        return [n for n in self.nodes if n.id not in targets]

    def _entry_node_error(self) -> WorkflowValidationError | None:
        candidates = self._entry_candidates()
        if len(candidates) == 1:
            return None
        if not candidates:
            return WorkflowValidationError(
                message=f"workflow '{self.id}' has no entry node",
                code=ErrorCode.WORKFLOW_NO_ENTRY_NODE,
                help_text='set entry_node_id or add a single trigger node',
            )
        return WorkflowValidationError(
            message=f"workflow '{self.id}' has more than one entry node",
            code=ErrorCode.WORKFLOW_AMBIGUOUS_ENTRY_NODE,
            notes=[f"candidates: {', '.join(n.id for n in candidates)}"],
            help_text='set entry_node_id explicitly',
        )

    @property
    def entry_node(self) -> NodeSpec:
        return self._entry_candidates()[0]

    def node(self, node_id: str) -> NodeSpec | None:
        for candidate in self.nodes:
            if candidate.id == node_id:
                return candidate
        return None

    def outgoing(self, node_id: str) -> list[Edge]:
        """Outgoing edges of a node in definition order."""
        return [e for e in self.edges if e.source == node_id]

    @property
    def is_live(self) -> bool:
        """Active and not soft-deleted."""
        return self.is_active and self.deleted_at is None
