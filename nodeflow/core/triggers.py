# nodeflow/core/triggers.py
from __future__ import annotations

from typing import TYPE_CHECKING

from nodeflow.core.collaborators import RecordStore
from nodeflow.core.logging import get_logger
from nodeflow.core.models.execution import EntityEvent, Execution, TriggerContext
from nodeflow.core.models.graph import TriggerSpec
from nodeflow.core.nodes.conditions import evaluate_all
from nodeflow.core.nodes.context import Scope
from nodeflow.core.store.base import DefinitionStore
from nodeflow.core.types.status import TriggerOperation

if TYPE_CHECKING:
    from nodeflow.core.engine.engine import ExecutionEngine


def operation_matches(spec: TriggerSpec, event: EntityEvent) -> bool:
    """
    ``field_changed`` triggers fire on updates of their own field only;
    every other operation matches by equality.
    """
    if TriggerOperation.FIELD_CHANGED in spec.operations and event.operation in (
        TriggerOperation.UPDATED,
        TriggerOperation.FIELD_CHANGED,
    ):
        if spec.field is not None and event.field == spec.field:
            return True
    if event.operation is TriggerOperation.FIELD_CHANGED:
        return False
    return event.operation in spec.operations


def trigger_matches(spec: TriggerSpec, event: EntityEvent, context: TriggerContext) -> bool:
    if spec.entity_type != event.entity_type or not operation_matches(spec, event):
        return False
    return evaluate_all(spec.conditions, Scope(trigger=context, nodes={}))


class TriggerRouter:
    """Turns record-store events into executions of matching live workflows."""

    def __init__(
        self,
        store: DefinitionStore,
        engine: ExecutionEngine,
        records: RecordStore | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.records = records
        self.logger = get_logger('triggers')

    async def handle_event(self, event: EntityEvent) -> list[Execution]:
        definitions = await self.store.list_definitions(
            event.tenant_id, entity_type=event.entity_type, live_only=True
        )
        if not definitions:
            return []

        context = TriggerContext.from_event(event, await self._load_record(event))
        started: list[Execution] = []
        for definition in definitions:
            if not trigger_matches(definition.trigger, event, context):
                continue
            execution = await self.engine.start_execution(definition, context)
            started.append(execution)
        self.logger.info(
            f'{event.operation.value} {event.entity_type}/{event.entity_id}: '
            f'{len(started)} of {len(definitions)} workflow(s) triggered'
        )
        return started

    async def _load_record(self, event: EntityEvent) -> dict | None:
        if event.operation is TriggerOperation.DELETED:
            # The record is gone; conditions see its last known values.
            return dict(event.old_data or {})
        if self.records is None:
            return None
        return await self.records.get_entity(event.entity_type, event.entity_id)
