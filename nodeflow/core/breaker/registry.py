# nodeflow/core/breaker/registry.py
from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, TypeVar

from nodeflow.core.breaker.state import (
    Allowed,
    BreakerDecision,
    BreakerThresholds,
    CircuitBreakerState,
    Denied,
    apply_failure,
    apply_success,
    evaluate_allow,
)
from nodeflow.core.defaults import BREAKER_CAS_ATTEMPTS
from nodeflow.core.exceptions import CircuitOpenError, TransientIOError
from nodeflow.core.logging import get_logger
from nodeflow.core.models.config import BreakerConfig
from nodeflow.core.models.graph import CircuitSpec

if TYPE_CHECKING:
    from nodeflow.core.store.base import BreakerStore

Clock = Callable[[], datetime]
R = TypeVar("R")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _paired(state: CircuitBreakerState) -> tuple[CircuitBreakerState, CircuitBreakerState]:
    return state, state


class BreakerContentionError(TransientIOError):
    """A breaker row kept changing under every compare-and-swap attempt."""


class CircuitBreakerRegistry:
    """
    Failure isolation and rate limiting per (tenant, circuit_key).

    The registry holds no state of its own: every call loads the row,
    applies a pure transition and writes it back with compare-and-swap,
    retrying when another caller got there first. Concurrent callers
    therefore never lose a failure count.
    """

    def __init__(
        self,
        store: BreakerStore,
        config: BreakerConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.config = config or BreakerConfig()
        self.clock = clock
        self.logger = get_logger('breaker')

    async def allow(
        self,
        tenant_id: str,
        circuit_key: str,
        overrides: CircuitSpec | None = None,
    ) -> BreakerDecision:
        thresholds = BreakerThresholds.resolve(self.config, overrides)
        now = self.clock()

        def transition(
            state: CircuitBreakerState,
        ) -> tuple[CircuitBreakerState, BreakerDecision]:
            return evaluate_allow(state.with_thresholds(thresholds), now)

        _, decision = await self._mutate(
            tenant_id, circuit_key, thresholds, transition
        )
        if isinstance(decision, Denied):
            self.logger.info(
                f'Circuit {tenant_id}/{circuit_key} denied ({decision.reason}) '
                f'until {decision.retry_after.isoformat()}'
            )
        return decision

    async def record_success(
        self, tenant_id: str, circuit_key: str
    ) -> CircuitBreakerState:
        now = self.clock()
        _, state = await self._mutate(
            tenant_id,
            circuit_key,
            BreakerThresholds.resolve(self.config),
            lambda s: _paired(apply_success(s, now)),
        )
        return state

    async def record_failure(
        self, tenant_id: str, circuit_key: str
    ) -> CircuitBreakerState:
        now = self.clock()
        previous, state = await self._mutate(
            tenant_id,
            circuit_key,
            BreakerThresholds.resolve(self.config),
            lambda s: _paired(apply_failure(s, now)),
        )
        if state.state != previous.state:
            self.logger.warning(
                f'Circuit {tenant_id}/{circuit_key} {previous.state.value} -> '
                f'{state.state.value} after {state.failure_count} failure(s)'
            )
        return state

    async def get_state(
        self, tenant_id: str, circuit_key: str
    ) -> CircuitBreakerState | None:
        return await self.store.load_breaker(tenant_id, circuit_key)

    def handle(self, tenant_id: str) -> BreakerHandle:
        return BreakerHandle(self, tenant_id)

    async def _mutate(
        self,
        tenant_id: str,
        circuit_key: str,
        thresholds: BreakerThresholds,
        transition: Callable[[CircuitBreakerState], tuple[CircuitBreakerState, R]],
    ) -> tuple[CircuitBreakerState, R]:
        """Load, transition, compare-and-swap. Returns (previous row, result)."""
        for attempt in range(BREAKER_CAS_ATTEMPTS):
            current = await self.store.load_breaker(tenant_id, circuit_key)
            if current is None:
                fresh = CircuitBreakerState.fresh(tenant_id, circuit_key, thresholds)
                new_state, result = transition(fresh)
                if await self.store.insert_breaker(dataclasses.replace(new_state, version=1)):
                    return fresh, result
            else:
                new_state, result = transition(current)
                swapped = await self.store.swap_breaker(
                    current.version,
                    dataclasses.replace(new_state, version=current.version + 1),
                )
                if swapped:
                    return current, result
            # Lost the race; yield so the winner's write lands before retrying.
            await asyncio.sleep(0.001 * attempt)
        raise BreakerContentionError(
            f'circuit {tenant_id}/{circuit_key} still contended after '
            f'{BREAKER_CAS_ATTEMPTS} attempts'
        )


class BreakerHandle:
    """
    Per-node view of the registry handed to handlers by the engine.

    ``acquire`` asks the registry once per key and raises CircuitOpenError
    on denial; ``settle`` reports the node's overall outcome for every key
    acquired during the run.
    """

    def __init__(self, registry: CircuitBreakerRegistry, tenant_id: str) -> None:
        self.registry = registry
        self.tenant_id = tenant_id
        self.acquired: list[str] = []

    async def acquire(self, circuit_key: str, overrides: CircuitSpec | None = None) -> None:
        if circuit_key in self.acquired:
            return
        decision = await self.registry.allow(self.tenant_id, circuit_key, overrides)
        match decision:
            case Allowed():
                self.acquired.append(circuit_key)
            case Denied(retry_after=retry_after):
                raise CircuitOpenError(circuit_key, retry_after)

    async def settle(self, success: bool) -> None:
        for key in self.acquired:
            if success:
                await self.registry.record_success(self.tenant_id, key)
            else:
                await self.registry.record_failure(self.tenant_id, key)
        self.acquired.clear()
