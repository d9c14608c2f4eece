# nodeflow/core/nodes/context.py
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import httpx

from nodeflow.core.breaker.registry import BreakerHandle
from nodeflow.core.collaborators import AIClient, RecordStore, ScriptRunner
from nodeflow.core.models.execution import TriggerContext

if TYPE_CHECKING:
    from nodeflow.core.notifications import NotificationService


class _Missing:
    def __repr__(self) -> str:
        return 'MISSING'


MISSING: Final = _Missing()


@dataclass(frozen=True, slots=True)
class Scope:
    """
    Read-only view used to resolve dotted paths in conditions and templates.

    - ``trigger.<attr>``: trigger context (``trigger.entity_id``, ``trigger.data.x``)
    - ``nodes.<node_id>.<key>``: output of an earlier node
    - anything else: a field of the trigger record
    """

    trigger: TriggerContext
    nodes: Mapping[str, Any]

    def resolve(self, path: str) -> Any:
        head, _, rest = path.partition('.')
        if head == 'trigger' and rest:
            attr, _, deeper = rest.partition('.')
            if attr not in TriggerContext.model_fields:
                return MISSING
            return walk_path(getattr(self.trigger, attr), deeper)
        if head == 'nodes' and rest:
            node_id, _, deeper = rest.partition('.')
            if node_id not in self.nodes:
                return MISSING
            return walk_path(self.nodes[node_id], deeper)
        return walk_path(self.trigger.data, path)

    def previous_value(self, path: str) -> Any:
        """Value of a trigger record field before the update that fired the trigger."""
        if self.trigger.old_data is None:
            return MISSING
        return walk_path(self.trigger.old_data, path)


def walk_path(value: Any, path: str) -> Any:
    if not path:
        return value
    for part in path.split('.'):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return MISSING
    return value


@dataclass
class NodeServices:
    """Collaborators available to handlers. Absent ones stay None."""

    records: RecordStore | None = None
    notifications: NotificationService | None = None
    ai: AIClient | None = None
    scripts: ScriptRunner | None = None
    http: httpx.AsyncClient | None = None


@dataclass(frozen=True)
class NodeContext:
    """Everything a handler may read. Handlers write only via their outcome."""

    execution_id: str
    tenant_id: str
    trigger: TriggerContext
    context_data: Mapping[str, Any]
    now: datetime
    attempt: int
    breaker: BreakerHandle
    services: NodeServices = field(default_factory=NodeServices)

    @classmethod
    def build(
        cls,
        *,
        execution_id: str,
        tenant_id: str,
        trigger: TriggerContext,
        context_data: Mapping[str, Any],
        now: datetime,
        attempt: int,
        breaker: BreakerHandle,
        services: NodeServices,
    ) -> NodeContext:
        return cls(
            execution_id=execution_id,
            tenant_id=tenant_id,
            trigger=trigger,
            context_data=MappingProxyType(dict(context_data)),
            now=now,
            attempt=attempt,
            breaker=breaker,
            services=services,
        )

    @property
    def scope(self) -> Scope:
        return Scope(trigger=self.trigger, nodes=self.context_data)
