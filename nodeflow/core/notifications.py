# nodeflow/core/notifications.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from nodeflow.core.breaker.registry import (
    BreakerHandle,
    CircuitBreakerRegistry,
    Clock,
    utcnow,
)
from nodeflow.core.collaborators import NotificationProvider
from nodeflow.core.exceptions import NodeExecutionError, NodeValidationError, TransientIOError
from nodeflow.core.logging import get_logger
from nodeflow.core.models.execution import NotificationRecord, new_id
from nodeflow.core.nodes.context import Scope
from nodeflow.core.nodes.templates import render_template
from nodeflow.core.store.base import ExecutionStore
from nodeflow.core.types.status import NotificationChannel, NotificationStatus


def notification_circuit(channel: NotificationChannel) -> str:
    return f'notification:{channel.value}'


class NotificationService:
    """
    Sends messages through per-channel providers, behind the circuit breaker.

    Every attempt that reaches a provider is appended to the notification
    log, sent or failed. Called from send_notification nodes with the
    node's breaker handle, or standalone with a handle of its own.
    """

    def __init__(
        self,
        store: ExecutionStore,
        breakers: CircuitBreakerRegistry,
        providers: Mapping[NotificationChannel, NotificationProvider] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.breakers = breakers
        self.providers: dict[NotificationChannel, NotificationProvider] = dict(providers or {})
        self.clock = clock
        self.logger = get_logger('notifications')

    def register_provider(
        self, channel: NotificationChannel, provider: NotificationProvider
    ) -> None:
        self.providers[channel] = provider

    async def send(
        self,
        channel: NotificationChannel,
        recipient: str,
        template: str,
        variables: Mapping[str, Any] | None = None,
        *,
        tenant_id: str,
        execution_id: str | None = None,
        subject: str | None = None,
        scope: Scope | None = None,
        breaker: BreakerHandle | None = None,
    ) -> NotificationRecord:
        provider = self.providers.get(channel)
        if provider is None:
            raise NodeValidationError(
                f"no notification provider configured for channel '{channel.value}'",
                data={'channel': channel.value},
            )

        body = render_template(template, variables, scope)
        rendered_subject = render_template(subject, variables, scope) if subject else None

        # A handle passed in belongs to a node; the engine settles it.
        owns_handle = breaker is None
        handle = breaker or self.breakers.handle(tenant_id)
        await handle.acquire(notification_circuit(channel))

        try:
            message_id = await provider.send(channel, recipient, rendered_subject, body)
        except Exception as exc:
            await self.store.append_notification(
                NotificationRecord(
                    id=new_id(),
                    tenant_id=tenant_id,
                    channel=channel,
                    recipient=recipient,
                    status=NotificationStatus.FAILED,
                    body=body,
                    subject=rendered_subject,
                    template=template,
                    execution_id=execution_id,
                    provider=provider.name,
                    error=str(exc) or type(exc).__name__,
                    created_at=self.clock(),
                )
            )
            if owns_handle:
                await handle.settle(False)
            self.logger.warning(
                f'{channel.value} to {recipient} via {provider.name} failed: {exc}'
            )
            if isinstance(exc, NodeExecutionError):
                raise
            raise TransientIOError(
                f'{provider.name} could not deliver {channel.value}: {exc}',
                data={'channel': channel.value, 'provider': provider.name},
            ) from exc

        record = NotificationRecord(
            id=new_id(),
            tenant_id=tenant_id,
            channel=channel,
            recipient=recipient,
            status=NotificationStatus.SENT,
            body=body,
            subject=rendered_subject,
            template=template,
            execution_id=execution_id,
            provider=provider.name,
            provider_message_id=message_id,
            created_at=self.clock(),
        )
        await self.store.append_notification(record)
        if owns_handle:
            await handle.settle(True)
        self.logger.info(f'{channel.value} to {recipient} sent via {provider.name} ({message_id})')
        return record
