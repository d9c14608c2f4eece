# nodeflow/core/collaborators.py
"""Interfaces of the systems nodeflow calls out to but does not own."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from nodeflow.core.types.status import NotificationChannel


class UpdateResult(str, Enum):
    OK = 'ok'
    CONFLICT = 'conflict'


class RecordStore(Protocol):
    """The metadata-driven record store holding tenant entities."""

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    async def update_entity(
        self, entity_type: str, entity_id: str, patch: dict[str, Any]
    ) -> UpdateResult: ...

    async def create_entity(self, entity_type: str, values: dict[str, Any]) -> str:
        """Create a record and return its id."""
        ...


class NotificationProvider(Protocol):
    """One delivery backend (SMTP relay, SMS gateway, push service)."""

    name: str

    async def send(
        self,
        channel: NotificationChannel,
        recipient: str,
        subject: str | None,
        body: str,
    ) -> str:
        """Deliver a message and return the provider's message id."""
        ...


class AIClient(Protocol):
    provider: str

    async def generate(
        self, prompt: str, *, model: str | None = None, max_tokens: int | None = None
    ) -> str: ...

    async def classify(self, text: str, categories: list[str]) -> str: ...


class ScriptRunner(Protocol):
    """Sandbox running user scripts: a JSON object in, a JSON object out."""

    async def run(
        self, script_id: str, payload: dict[str, Any], *, timeout_seconds: float
    ) -> dict[str, Any]: ...
