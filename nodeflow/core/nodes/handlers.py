# nodeflow/core/nodes/handlers.py
"""Built-in node types.

Each handler receives its node, the parsed config model and a NodeContext,
and returns an outcome or raises one of the nodeflow.core.exceptions
classes. Handlers never retry; the engine owns retry policy.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Literal, Self

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

from nodeflow.core.codec.serde import SerializationError, loads_json_object
from nodeflow.core.collaborators import UpdateResult
from nodeflow.core.defaults import DEFAULT_WEBHOOK_TIMEOUT_SECONDS
from nodeflow.core.exceptions import (
    NodeValidationError,
    RecordConflictError,
    TransientIOError,
)
from nodeflow.core.models.graph import (
    OPERATOR_ALIASES,
    ConditionOperator,
    ConditionSpec,
    NodeSpec,
)
from nodeflow.core.nodes.conditions import evaluate
from nodeflow.core.nodes.context import NodeContext
from nodeflow.core.nodes.outcomes import Completed, Fatal, NodeError, NodeOutcome, Suspend
from nodeflow.core.nodes.registry import NodeRegistry
from nodeflow.core.notifications import notification_circuit
from nodeflow.core.nodes.templates import render_template, render_value
from nodeflow.core.types.status import NotificationChannel
from nodeflow.core.utils.url import url_host


class _Config(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)


# =============================================================================
# trigger
# =============================================================================


class TriggerNodeConfig(BaseModel):
    model_config = ConfigDict(extra='allow', frozen=True)


async def run_trigger(node: NodeSpec, config: TriggerNodeConfig, ctx: NodeContext) -> NodeOutcome:
    return Completed(ctx.trigger.model_dump(mode='json'))


# =============================================================================
# condition
# =============================================================================


class ConditionNodeConfig(_Config):
    """Either one comparison (field/operator/value) or a list of them."""

    field: str | None = None
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    conditions: list[ConditionSpec] = Field(default_factory=list)
    match: Literal['all', 'any'] = 'all'

    @model_validator(mode='before')
    @classmethod
    def normalize_operator(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get('operator'), str):
            lowered = data['operator'].strip().lower()
            return {**data, 'operator': OPERATOR_ALIASES.get(lowered, lowered)}
        return data

    @model_validator(mode='after')
    def validate_shape(self) -> Self:
        if (self.field is None) == (not self.conditions):
            raise ValueError("set either 'field' or a non-empty 'conditions' list")
        return self

    def specs(self) -> list[ConditionSpec]:
        if self.field is not None:
            return [ConditionSpec(field=self.field, operator=self.operator, value=self.value)]
        return self.conditions


async def run_condition(node: NodeSpec, config: ConditionNodeConfig, ctx: NodeContext) -> NodeOutcome:
    scope = ctx.scope
    specs = config.specs()
    results = [evaluate(spec, scope) for spec in specs]
    combine = all if config.match == 'all' else any
    matched = combine(r.matched for r in results)
    if len(specs) == 1:
        return Completed(results[0].to_json(specs[0]))
    return Completed(
        {
            'condition': matched,
            'match': config.match,
            'results': [r.to_json(s) for r, s in zip(results, specs)],
        }
    )


# =============================================================================
# delay / wait_for_event
# =============================================================================


class DelayNodeConfig(_Config):
    seconds: float = Field(default=0, ge=0)
    minutes: float = Field(default=0, ge=0)
    hours: float = Field(default=0, ge=0)

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.seconds, minutes=self.minutes, hours=self.hours)


async def run_delay(node: NodeSpec, config: DelayNodeConfig, ctx: NodeContext) -> NodeOutcome:
    resume_at = ctx.now + config.duration
    return Suspend(
        reason='delay',
        resume_at=resume_at,
        output={'delay_seconds': config.duration.total_seconds()},
        external=False,
    )


class WaitForEventConfig(_Config):
    event: str = Field(min_length=1)
    # Resume on its own with {"timed_out": true} after this long.
    timeout_seconds: float | None = Field(default=None, gt=0)


async def run_wait_for_event(node: NodeSpec, config: WaitForEventConfig, ctx: NodeContext) -> NodeOutcome:
    resume_at = (
        ctx.now + timedelta(seconds=config.timeout_seconds)
        if config.timeout_seconds is not None
        else None
    )
    return Suspend(reason=f'awaiting_event:{config.event}', resume_at=resume_at)


# =============================================================================
# set_field / records
# =============================================================================


class SetFieldConfig(_Config):
    values: dict[str, Any] = Field(min_length=1)


async def run_set_field(node: NodeSpec, config: SetFieldConfig, ctx: NodeContext) -> NodeOutcome:
    return Completed(render_value(config.values, scope=ctx.scope))


class UpdateRecordConfig(_Config):
    # Default to the record that triggered the execution.
    entity_type: str | None = None
    entity_id: str | None = None
    patch: dict[str, Any] = Field(min_length=1)


async def run_update_record(node: NodeSpec, config: UpdateRecordConfig, ctx: NodeContext) -> NodeOutcome:
    records = ctx.services.records
    if records is None:
        raise NodeValidationError('no record store configured for update_record')
    scope = ctx.scope
    entity_type = config.entity_type or ctx.trigger.entity_type
    entity_id = (
        render_template(config.entity_id, scope=scope)
        if config.entity_id
        else ctx.trigger.entity_id
    )
    if not entity_type or not entity_id:
        raise NodeValidationError('update_record needs an entity_type and entity_id')

    patch = render_value(config.patch, scope=scope)
    result = await records.update_entity(entity_type, entity_id, patch)
    if result == UpdateResult.CONFLICT:
        raise RecordConflictError(
            f'{entity_type}/{entity_id} changed concurrently',
            data={'entity_type': entity_type, 'entity_id': entity_id},
        )
    return Completed({'entity_type': entity_type, 'entity_id': entity_id, 'patch': patch})


class CreateRecordConfig(_Config):
    entity_type: str = Field(min_length=1)
    values: dict[str, Any] = Field(default_factory=dict)


async def run_create_record(node: NodeSpec, config: CreateRecordConfig, ctx: NodeContext) -> NodeOutcome:
    records = ctx.services.records
    if records is None:
        raise NodeValidationError('no record store configured for create_record')
    values = render_value(config.values, scope=ctx.scope)
    entity_id = await records.create_entity(config.entity_type, values)
    return Completed({'entity_type': config.entity_type, 'entity_id': entity_id})


# =============================================================================
# send_notification
# =============================================================================


class SendNotificationConfig(_Config):
    channel: NotificationChannel
    recipient: str = Field(min_length=1)
    template: str = Field(min_length=1)
    subject: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


def notification_circuit_key(node: NodeSpec, config: SendNotificationConfig) -> str:
    return notification_circuit(config.channel)


async def run_send_notification(
    node: NodeSpec, config: SendNotificationConfig, ctx: NodeContext
) -> NodeOutcome:
    service = ctx.services.notifications
    if service is None:
        raise NodeValidationError('no notification service configured')
    scope = ctx.scope
    variables = render_value(config.variables, scope=scope)
    record = await service.send(
        config.channel,
        render_template(config.recipient, variables, scope),
        config.template,
        variables,
        tenant_id=ctx.tenant_id,
        execution_id=ctx.execution_id,
        subject=config.subject,
        scope=scope,
        breaker=ctx.breaker,
    )
    return Completed(
        {
            'notification_id': record.id,
            'channel': record.channel.value,
            'recipient': record.recipient,
            'status': record.status.value,
            'provider_message_id': record.provider_message_id,
        }
    )


# =============================================================================
# webhook
# =============================================================================


class WebhookConfig(_Config):
    url: str = Field(min_length=1)
    method: Literal['GET', 'POST', 'PUT', 'PATCH', 'DELETE'] = 'POST'
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] | None = None
    timeout_seconds: float = Field(default=DEFAULT_WEBHOOK_TIMEOUT_SECONDS, gt=0)


def webhook_circuit_key(node: NodeSpec, config: WebhookConfig) -> str | None:
    host = url_host(config.url)
    if '{{' in host:
        # Host is only known once rendered; run_webhook acquires it then.
        return None
    return f'webhook:{host}'


async def run_webhook(node: NodeSpec, config: WebhookConfig, ctx: NodeContext) -> NodeOutcome:
    scope = ctx.scope
    url = render_template(config.url, scope=scope)
    if node.circuit is None or not node.circuit.key:
        # Same key as the engine acquired for a static host, so a no-op then.
        await ctx.breaker.acquire(f'webhook:{url_host(url)}', node.circuit)
    payload = (
        render_value(config.payload, scope=scope)
        if config.payload is not None
        else {
            'execution_id': ctx.execution_id,
            'trigger': ctx.trigger.model_dump(mode='json'),
        }
    )
    headers = {k: render_template(v, scope=scope) for k, v in config.headers.items()}
    send_body = config.method not in ('GET', 'DELETE')

    client = ctx.services.http
    if client is None:
        async with httpx.AsyncClient() as own_client:
            response = await own_client.request(
                config.method,
                url,
                json=payload if send_body else None,
                headers=headers,
                timeout=config.timeout_seconds,
            )
    else:
        response = await client.request(
            config.method,
            url,
            json=payload if send_body else None,
            headers=headers,
            timeout=config.timeout_seconds,
        )

    status = response.status_code
    if status == 429 or status >= 500:
        raise TransientIOError(
            f'{config.method} {url} returned {status}',
            data={'status_code': status},
        )
    if status >= 400:
        return Fatal(
            NodeError.of(
                'HTTP_CLIENT_ERROR',
                f'{config.method} {url} returned {status}',
                status_code=status,
                body=response.text[:1000],
            )
        )

    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    return Completed({'status_code': status, 'body': body})


# =============================================================================
# ai_generate / ai_classify / ai_summarize / ai_extract
# =============================================================================


class AIGenerateConfig(_Config):
    prompt: str = Field(min_length=1)
    provider: str = 'default'
    model: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)


class AIClassifyConfig(_Config):
    text: str = Field(min_length=1)
    categories: list[str] = Field(min_length=1)
    provider: str = 'default'


class AISummarizeConfig(_Config):
    text: str = Field(min_length=1)
    style: Literal['concise', 'detailed', 'bullet_points'] = 'concise'
    max_words: int = Field(default=100, ge=1)
    provider: str = 'default'


class AIExtractConfig(_Config):
    text: str = Field(min_length=1)
    fields: list[str] = Field(min_length=1)
    provider: str = 'default'


def ai_circuit_key(
    node: NodeSpec,
    config: AIGenerateConfig | AIClassifyConfig | AISummarizeConfig | AIExtractConfig,
) -> str:
    return f'ai:{config.provider}'


async def run_ai_generate(node: NodeSpec, config: AIGenerateConfig, ctx: NodeContext) -> NodeOutcome:
    prompt = render_template(config.prompt, scope=ctx.scope)
    client = ctx.services.ai
    if client is None:
        # No provider configured: deterministic stand-in output.
        return Completed({'text': f'[mock] {prompt[:100]}', 'mock': True})
    text = await client.generate(prompt, model=config.model, max_tokens=config.max_tokens)
    return Completed({'text': text, 'provider': client.provider, 'mock': False})


async def run_ai_classify(node: NodeSpec, config: AIClassifyConfig, ctx: NodeContext) -> NodeOutcome:
    text = render_template(config.text, scope=ctx.scope)
    client = ctx.services.ai
    if client is None:
        return Completed({'category': config.categories[0], 'mock': True})
    category = await client.classify(text, config.categories)
    if category not in config.categories:
        raise NodeValidationError(
            f"classifier returned unknown category '{category}'",
            data={'categories': config.categories},
        )
    return Completed({'category': category, 'provider': client.provider, 'mock': False})


async def run_ai_summarize(node: NodeSpec, config: AISummarizeConfig, ctx: NodeContext) -> NodeOutcome:
    text = render_template(config.text, scope=ctx.scope)
    client = ctx.services.ai
    if client is None:
        return Completed({'summary': f'[mock] summary of {len(text)} chars', 'mock': True})
    prompt = (
        f'Summarize the following text in {config.style.replace("_", " ")} style, '
        f'max {config.max_words} words:\n\n{text}'
    )
    summary = await client.generate(prompt)
    return Completed(
        {
            'summary': summary.strip(),
            'original_length': len(text),
            'provider': client.provider,
            'mock': False,
        }
    )


async def run_ai_extract(node: NodeSpec, config: AIExtractConfig, ctx: NodeContext) -> NodeOutcome:
    text = render_template(config.text, scope=ctx.scope)
    client = ctx.services.ai
    if client is None:
        return Completed({'extracted': {}, 'fields': config.fields, 'mock': True})
    prompt = (
        f'Extract the fields {", ".join(config.fields)} from the text below. '
        f'Respond with a single JSON object.\n\nText: {text}'
    )
    raw = await client.generate(prompt)
    try:
        extracted = loads_json_object(raw)
    except SerializationError as exc:
        raise NodeValidationError(
            f'extraction did not return a JSON object: {exc}',
            data={'raw': raw[:1000]},
        ) from exc
    return Completed(
        {
            'extracted': {name: extracted.get(name) for name in config.fields},
            'fields': config.fields,
            'provider': client.provider,
            'mock': False,
        }
    )


# =============================================================================
# script
# =============================================================================


class ScriptConfig(_Config):
    script_id: str = Field(min_length=1)
    input: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=10.0, gt=0)


async def run_script(node: NodeSpec, config: ScriptConfig, ctx: NodeContext) -> NodeOutcome:
    runner = ctx.services.scripts
    if runner is None:
        raise NodeValidationError('no script runner configured')
    payload = render_value(config.input, scope=ctx.scope)
    output = await runner.run(config.script_id, payload, timeout_seconds=config.timeout_seconds)
    if not isinstance(output, dict):
        raise NodeValidationError(
            f"script '{config.script_id}' returned {type(output).__name__}, expected an object"
        )
    return Completed(output)


def builtin_registry() -> NodeRegistry:
    """A registry holding every built-in node type."""
    registry = NodeRegistry()
    registry.register('trigger', run_trigger, TriggerNodeConfig)
    registry.register('condition', run_condition, ConditionNodeConfig)
    registry.register('delay', run_delay, DelayNodeConfig)
    registry.register('wait_for_event', run_wait_for_event, WaitForEventConfig)
    registry.register('set_field', run_set_field, SetFieldConfig)
    registry.register('update_record', run_update_record, UpdateRecordConfig)
    registry.register('create_record', run_create_record, CreateRecordConfig)
    registry.register(
        'send_notification',
        run_send_notification,
        SendNotificationConfig,
        circuit_key=notification_circuit_key,
    )
    registry.register('webhook', run_webhook, WebhookConfig, circuit_key=webhook_circuit_key)
    registry.register('ai_generate', run_ai_generate, AIGenerateConfig, circuit_key=ai_circuit_key)
    registry.register('ai_classify', run_ai_classify, AIClassifyConfig, circuit_key=ai_circuit_key)
    registry.register(
        'ai_summarize', run_ai_summarize, AISummarizeConfig, circuit_key=ai_circuit_key
    )
    registry.register('ai_extract', run_ai_extract, AIExtractConfig, circuit_key=ai_circuit_key)
    registry.register('script', run_script, ScriptConfig)
    return registry
