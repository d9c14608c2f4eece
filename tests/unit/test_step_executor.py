"""Unit tests for StepExecutor outcome classification."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from engine_helpers import FakeClock, make_trigger
from nodeflow.core.breaker.registry import CircuitBreakerRegistry
from nodeflow.core.exceptions import (
    CircuitOpenError,
    NodeValidationError,
    RecordConflictError,
)
from nodeflow.core.models.config import BreakerConfig, EngineConfig
from nodeflow.core.models.graph import CircuitSpec, NodeSpec
from nodeflow.core.nodes.context import NodeContext, NodeServices
from nodeflow.core.nodes.executor import StepExecutor
from nodeflow.core.nodes.handlers import TriggerNodeConfig, builtin_registry
from nodeflow.core.nodes.outcomes import BreakerDenied, Completed, Fatal, Retryable, Suspend
from nodeflow.core.nodes.registry import NodeRegistry
from nodeflow.core.store.memory import MemoryStore


def _context(clock: FakeClock, services: NodeServices | None = None, **data) -> NodeContext:
    registry = CircuitBreakerRegistry(MemoryStore(), BreakerConfig(), clock)
    return NodeContext.build(
        execution_id='exec-1',
        tenant_id='tenant-1',
        trigger=make_trigger(**data),
        context_data={},
        now=clock(),
        attempt=1,
        breaker=registry.handle('tenant-1'),
        services=services or NodeServices(),
    )


def _executor_with(handler, config: EngineConfig | None = None, **register) -> StepExecutor:
    registry = NodeRegistry()
    registry.register('custom', handler, TriggerNodeConfig, **register)
    return StepExecutor(registry, config)


def _raising(exc: BaseException):
    async def handler(node, config, ctx):
        raise exc

    return handler


class CannedAI:
    """AI client returning one fixed reply."""

    provider = 'canned'

    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def generate(self, prompt: str, *, model=None, max_tokens=None) -> str:
        self.prompts.append(prompt)
        return self.reply

    async def classify(self, text: str, categories: list[str]) -> str:
        return categories[0]


NODE = NodeSpec(id='n1', node_type='custom')


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestClassification:
    """Every raw handler failure becomes exactly one outcome."""

    async def test_completed_passes_through(self, clock: FakeClock) -> None:
        async def ok(node, config, ctx):
            return Completed({'v': 1})

        outcome = await _executor_with(ok).run(NODE, _context(clock))
        assert outcome == Completed({'v': 1})

    async def test_timeout_is_retryable(self, clock: FakeClock) -> None:
        async def slow(node, config, ctx):
            await asyncio.sleep(5)

        node = NodeSpec(id='n1', node_type='custom', timeout_ms=100)
        outcome = await _executor_with(slow).run(node, _context(clock))

        assert isinstance(outcome, Retryable)
        assert outcome.error.code == 'NODE_TIMEOUT'
        assert outcome.error.data['timeout_ms'] == 100

    async def test_unknown_node_type_is_fatal(self, clock: FakeClock) -> None:
        executor = StepExecutor(NodeRegistry())
        outcome = await executor.run(NODE, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'UNKNOWN_NODE'

    async def test_invalid_config_is_fatal(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(id='wait', node_type='delay', config={'seconds': 'soon'})
        outcome = await executor.run(node, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'VALIDATION_ERROR'

    async def test_nodeflow_exceptions_by_class(self, clock: FakeClock) -> None:
        retry = await _executor_with(_raising(RecordConflictError('stale'))).run(NODE, _context(clock))
        fatal = await _executor_with(_raising(NodeValidationError('bad'))).run(NODE, _context(clock))

        assert isinstance(retry, Retryable)
        assert retry.error.code == 'RECORD_CONFLICT'
        assert isinstance(fatal, Fatal)
        assert fatal.error.message == 'bad'

    async def test_circuit_open_becomes_denial(self, clock: FakeClock) -> None:
        until = clock() + timedelta(seconds=30)
        outcome = await _executor_with(_raising(CircuitOpenError('ai:default', until))).run(
            NODE, _context(clock)
        )
        assert outcome == BreakerDenied(circuit_key='ai:default', retry_after=until)

    @pytest.mark.parametrize('status', [429, 500, 503])
    async def test_http_server_errors_are_retryable(self, clock: FakeClock, status: int) -> None:
        request = httpx.Request('POST', 'https://api.example.com/hook')
        response = httpx.Response(status, request=request)
        exc = httpx.HTTPStatusError('server error', request=request, response=response)

        outcome = await _executor_with(_raising(exc)).run(NODE, _context(clock))

        assert isinstance(outcome, Retryable)
        assert outcome.error.code == 'TRANSIENT_IO'
        assert outcome.error.data['status_code'] == status

    async def test_http_client_error_is_not_retried(self, clock: FakeClock) -> None:
        request = httpx.Request('POST', 'https://api.example.com/hook')
        response = httpx.Response(404, request=request)
        exc = httpx.HTTPStatusError('not found', request=request, response=response)

        outcome = await _executor_with(_raising(exc)).run(NODE, _context(clock))

        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'UNHANDLED_EXCEPTION'

    async def test_transport_error_is_retryable(self, clock: FakeClock) -> None:
        exc = httpx.ConnectError('refused')
        outcome = await _executor_with(_raising(exc)).run(NODE, _context(clock))
        assert isinstance(outcome, Retryable)
        assert outcome.error.data['exception'] == 'ConnectError'

    async def test_unmapped_exception_is_fatal(self, clock: FakeClock) -> None:
        outcome = await _executor_with(_raising(KeyError('x'))).run(NODE, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'UNHANDLED_EXCEPTION'

    async def test_app_mapper_and_retryable_codes(self, clock: FakeClock) -> None:
        config = EngineConfig(
            exception_mapper={LookupError: 'LOOKUP_FAILED'},
            retryable_error_codes=frozenset({'LOOKUP_FAILED'}),
        )
        outcome = await _executor_with(_raising(LookupError('x')), config).run(
            NODE, _context(clock)
        )
        assert isinstance(outcome, Retryable)
        assert outcome.error.code == 'LOOKUP_FAILED'

    async def test_node_mapper_wins_over_app_mapper(self, clock: FakeClock) -> None:
        config = EngineConfig(exception_mapper={ValueError: 'APP_CODE'})
        executor = _executor_with(
            _raising(ValueError('x')), config, exception_mapper={ValueError: 'NODE_CODE'}
        )
        outcome = await executor.run(NODE, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'NODE_CODE'

    async def test_mapper_matches_exact_class_only(self, clock: FakeClock) -> None:
        config = EngineConfig(exception_mapper={LookupError: 'LOOKUP_FAILED'})
        outcome = await _executor_with(_raising(KeyError('x')), config).run(
            NODE, _context(clock)
        )
        assert outcome.error.code == 'UNHANDLED_EXCEPTION'

    async def test_non_outcome_return_is_fatal(self, clock: FakeClock) -> None:
        async def wrong(node, config, ctx):
            return {'not': 'an outcome'}

        outcome = await _executor_with(wrong).run(NODE, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'VALIDATION_ERROR'


@pytest.mark.unit
class TestCircuitFor:
    def test_explicit_key_wins(self) -> None:
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(
            id='hook',
            node_type='webhook',
            config={'url': 'https://hooks.example.com/x'},
            circuit=CircuitSpec(key='partner', failure_threshold=2),
        )
        key, overrides = executor.circuit_for(node)
        assert key == 'partner'
        assert overrides is not None and overrides.failure_threshold == 2

    def test_derived_keys(self) -> None:
        executor = StepExecutor(builtin_registry())
        webhook = NodeSpec(
            id='hook', node_type='webhook', config={'url': 'https://Hooks.Example.com:8443/x'}
        )
        notify = NodeSpec(
            id='mail',
            node_type='send_notification',
            config={'channel': 'email', 'recipient': 'a@b.c', 'template': 'hi'},
        )
        ai = NodeSpec(id='gen', node_type='ai_generate', config={'prompt': 'p'})

        assert executor.circuit_for(webhook) == ('webhook:hooks.example.com', None)
        assert executor.circuit_for(notify) == ('notification:email', None)
        assert executor.circuit_for(ai) == ('ai:default', None)

    def test_templated_webhook_host_has_no_static_key(self) -> None:
        executor = StepExecutor(builtin_registry())
        webhook = NodeSpec(
            id='hook', node_type='webhook', config={'url': 'https://{{host}}/x'}
        )
        assert executor.circuit_for(webhook) is None

    def test_no_circuit_for_plain_nodes(self) -> None:
        executor = StepExecutor(builtin_registry())
        assert executor.circuit_for(NodeSpec(id='s', node_type='trigger')) is None
        assert executor.circuit_for(NodeSpec(id='x', node_type='unknown')) is None

    def test_default_timeout(self) -> None:
        executor = StepExecutor(builtin_registry(), EngineConfig(default_node_timeout_ms=2_500))
        assert executor.timeout_seconds(NodeSpec(id='s', node_type='trigger')) == 2.5


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestBuiltinHandlers:
    async def test_delay_suspends_until_duration(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(id='wait', node_type='delay', config={'minutes': 90})
        outcome = await executor.run(node, _context(clock))
        assert outcome == Suspend(
            reason='delay',
            resume_at=clock() + timedelta(minutes=90),
            output={'delay_seconds': 5400.0},
            external=False,
        )

    async def test_trigger_outputs_context(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        outcome = await executor.run(NodeSpec(id='s', node_type='trigger'), _context(clock, amount=3))
        assert isinstance(outcome, Completed)
        assert outcome.output['data'] == {'amount': 3}
        assert outcome.output['entity_id'] == 'order-1'

    async def test_ai_nodes_without_client_return_mock(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        generate = NodeSpec(id='g', node_type='ai_generate', config={'prompt': 'Total {{amount}}'})
        classify = NodeSpec(
            id='c', node_type='ai_classify', config={'text': 'x', 'categories': ['hot', 'cold']}
        )

        generated = await executor.run(generate, _context(clock, amount=12))
        classified = await executor.run(classify, _context(clock))

        assert generated == Completed({'text': '[mock] Total 12', 'mock': True})
        assert classified == Completed({'category': 'hot', 'mock': True})

    async def test_summarize_and_extract_without_client_return_mock(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        summarize = NodeSpec(id='s', node_type='ai_summarize', config={'text': 'abcdef'})
        extract = NodeSpec(
            id='e', node_type='ai_extract', config={'text': 'x', 'fields': ['name', 'total']}
        )

        summarized = await executor.run(summarize, _context(clock))
        extracted = await executor.run(extract, _context(clock))

        assert summarized == Completed({'summary': '[mock] summary of 6 chars', 'mock': True})
        assert extracted == Completed({'extracted': {}, 'fields': ['name', 'total'], 'mock': True})

    async def test_summarize_uses_client(self, clock: FakeClock) -> None:
        client = CannedAI('  Order shipped late.  ')
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(
            id='s',
            node_type='ai_summarize',
            config={'text': 'Order {{amount}} was late', 'style': 'bullet_points', 'max_words': 20},
        )

        outcome = await executor.run(node, _context(clock, NodeServices(ai=client), amount=7))

        assert outcome == Completed(
            {
                'summary': 'Order shipped late.',
                'original_length': len('Order 7 was late'),
                'provider': 'canned',
                'mock': False,
            }
        )
        assert 'bullet points style, max 20 words' in client.prompts[0]

    async def test_extract_keeps_requested_fields(self, clock: FakeClock) -> None:
        client = CannedAI('{"name": "Ada", "total": 12, "extra": true}')
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(
            id='e',
            node_type='ai_extract',
            config={'text': 'Ada paid 12', 'fields': ['name', 'total', 'city']},
        )

        outcome = await executor.run(node, _context(clock, NodeServices(ai=client)))

        assert isinstance(outcome, Completed)
        assert outcome.output['extracted'] == {'name': 'Ada', 'total': 12, 'city': None}
        assert outcome.output['provider'] == 'canned'

    async def test_extract_rejects_non_object_reply(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(id='e', node_type='ai_extract', config={'text': 'x', 'fields': ['name']})

        for reply in ('not json', '[1, 2]'):
            services = NodeServices(ai=CannedAI(reply))
            outcome = await executor.run(node, _context(clock, services))
            assert isinstance(outcome, Fatal)
            assert outcome.error.code == 'VALIDATION_ERROR'
            assert outcome.error.data['raw'] == reply

    async def test_extract_needs_fields(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(id='e', node_type='ai_extract', config={'text': 'x', 'fields': []})
        outcome = await executor.run(node, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'VALIDATION_ERROR'

    async def test_update_record_without_store_is_fatal(self, clock: FakeClock) -> None:
        executor = StepExecutor(builtin_registry())
        node = NodeSpec(id='u', node_type='update_record', config={'patch': {'a': 1}})
        outcome = await executor.run(node, _context(clock))
        assert isinstance(outcome, Fatal)
        assert outcome.error.code == 'VALIDATION_ERROR'
