# nodeflow/core/nodes/registry.py
from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from pydantic import BaseModel, ValidationError

from nodeflow.core.errors import (
    ErrorCode,
    RegistryError,
    ValidationReport,
    WorkflowValidationError,
    raise_collected,
)
from nodeflow.core.models.graph import NodeSpec, WorkflowDefinition
from nodeflow.core.nodes.context import NodeContext
from nodeflow.core.nodes.outcomes import NodeOutcome

NodeHandler: TypeAlias = Callable[[NodeSpec, Any, NodeContext], Awaitable[NodeOutcome]]
CircuitKeyFn: TypeAlias = Callable[[NodeSpec, Any], str | None]


class NotRegistered(RegistryError, KeyError):
    """Raised when a node type has no handler.

    Inherits from KeyError so Mapping.__contains__ works.
    """

    def __init__(self, node_type: str) -> None:
        RegistryError.__init__(
            self,
            message=f"node type '{node_type}' not registered",
            code=ErrorCode.NODE_TYPE_NOT_REGISTERED,
            notes=[f"requested node type: '{node_type}'"],
            help_text='register a handler with NodeRegistry.register() before use',
        )
        self.node_type = node_type


class DuplicateNodeTypeError(RegistryError):
    def __init__(self, node_type: str) -> None:
        super().__init__(
            message=f"duplicate node type '{node_type}'",
            code=ErrorCode.NODE_TYPE_DUPLICATE,
            help_text='pass replace=True to override a built-in handler',
        )
        self.node_type = node_type


@dataclass(frozen=True, slots=True)
class HandlerEntry:
    """How to run one node type: its handler, config model and circuit key."""

    node_type: str
    handler: NodeHandler
    config_model: type[BaseModel]
    circuit_key: CircuitKeyFn | None = None
    # Exact exception class -> error code, consulted before the app-wide mapper.
    exception_mapper: Mapping[type[BaseException], str] = field(default_factory=dict)

    def parse_config(self, config: dict[str, Any]) -> BaseModel:
        return self.config_model.model_validate(config)


class NodeRegistry(Mapping[str, HandlerEntry]):
    """Lookup table from node_type to handler entry.

    Adding a node type means registering one more entry; the engine never
    branches on node types itself.
    """

    def __init__(self) -> None:
        self._entries: dict[str, HandlerEntry] = {}

    def __getitem__(self, key: str) -> HandlerEntry:
        try:
            return self._entries[key]
        except KeyError:
            raise NotRegistered(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def register(
        self,
        node_type: str,
        handler: NodeHandler,
        config_model: type[BaseModel],
        *,
        circuit_key: CircuitKeyFn | None = None,
        exception_mapper: Mapping[type[BaseException], str] | None = None,
        replace: bool = False,
    ) -> HandlerEntry:
        if node_type in self._entries and not replace:
            raise DuplicateNodeTypeError(node_type)
        entry = HandlerEntry(
            node_type=node_type,
            handler=handler,
            config_model=config_model,
            circuit_key=circuit_key,
            exception_mapper=dict(exception_mapper or {}),
        )
        self._entries[node_type] = entry
        return entry

    def validate_definition(self, definition: WorkflowDefinition) -> None:
        """Check every node has a registered type and a parseable config."""
        report = ValidationReport('nodes')
        for node in definition.nodes:
            entry = self._entries.get(node.node_type)
            if entry is None:
                report.add(
                    WorkflowValidationError(
                        message=f"node '{node.id}' has unknown type '{node.node_type}'",
                        code=ErrorCode.WORKFLOW_UNKNOWN_NODE_TYPE,
                        notes=[f"registered types: {', '.join(sorted(self._entries))}"],
                    )
                )
                continue
            try:
                entry.parse_config(node.config)
            except ValidationError as exc:
                report.add(
                    WorkflowValidationError(
                        message=f"node '{node.id}' ({node.node_type}) has an invalid config",
                        code=ErrorCode.WORKFLOW_INVALID_NODE_CONFIG,
                        notes=[_format_validation_error(exc)],
                    )
                )
        raise_collected(report)


def _format_validation_error(exc: ValidationError) -> str:
    return '\n'.join(
        f"{'.'.join(str(p) for p in err['loc']) or '<config>'}: {err['msg']}"
        for err in exc.errors()
    )
