# nodeflow/core/breaker/state.py
"""Circuit breaker state and its pure transition functions.

Each function takes the current row and ``now`` and returns the next row;
persistence and atomicity are the registry's job.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, TypeAlias

from nodeflow.core.defaults import RATE_WINDOW_SECONDS
from nodeflow.core.models.config import BreakerConfig
from nodeflow.core.models.graph import CircuitSpec
from nodeflow.core.types.status import CircuitState

_WINDOW = timedelta(seconds=RATE_WINDOW_SECONDS)


@dataclass(frozen=True, slots=True)
class BreakerThresholds:
    failure_threshold: int
    success_threshold: int
    timeout_seconds: int
    requests_per_minute: int

    @classmethod
    def resolve(
        cls, config: BreakerConfig, overrides: CircuitSpec | None = None
    ) -> BreakerThresholds:
        """Configured defaults, with any per-node overrides applied."""

        def pick(name: str) -> int:
            value = getattr(overrides, name, None) if overrides else None
            return value if value is not None else getattr(config, name)

        return cls(
            failure_threshold=pick('failure_threshold'),
            success_threshold=pick('success_threshold'),
            timeout_seconds=pick('timeout_seconds'),
            requests_per_minute=pick('requests_per_minute'),
        )


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    tenant_id: str
    circuit_key: str
    failure_threshold: int
    success_threshold: int
    timeout_seconds: int
    requests_per_minute: int
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    window_start: datetime | None = None
    window_count: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    version: int = 1

    @classmethod
    def fresh(
        cls, tenant_id: str, circuit_key: str, thresholds: BreakerThresholds
    ) -> CircuitBreakerState:
        return cls(
            tenant_id=tenant_id,
            circuit_key=circuit_key,
            failure_threshold=thresholds.failure_threshold,
            success_threshold=thresholds.success_threshold,
            timeout_seconds=thresholds.timeout_seconds,
            requests_per_minute=thresholds.requests_per_minute,
        )

    def with_thresholds(self, thresholds: BreakerThresholds) -> CircuitBreakerState:
        return dataclasses.replace(
            self,
            failure_threshold=thresholds.failure_threshold,
            success_threshold=thresholds.success_threshold,
            timeout_seconds=thresholds.timeout_seconds,
            requests_per_minute=thresholds.requests_per_minute,
        )

    @property
    def reopens_at(self) -> datetime | None:
        """When an open circuit starts letting probe requests through."""
        if self.state is not CircuitState.OPEN or self.last_failure_at is None:
            return None
        return self.last_failure_at + timedelta(seconds=self.timeout_seconds)


@dataclass(frozen=True, slots=True)
class Allowed:
    pass


@dataclass(frozen=True, slots=True)
class Denied:
    retry_after: datetime
    reason: Literal['open', 'rate_limited']


BreakerDecision: TypeAlias = Allowed | Denied


def evaluate_allow(
    state: CircuitBreakerState, now: datetime
) -> tuple[CircuitBreakerState, BreakerDecision]:
    """Decide one request. The rate limit is checked first and is not a failure."""
    if state.window_start is None or now - state.window_start >= _WINDOW:
        state = dataclasses.replace(state, window_start=now, window_count=0)
    assert state.window_start is not None

    if state.window_count >= state.requests_per_minute:
        return state, Denied(retry_after=state.window_start + _WINDOW, reason='rate_limited')

    if state.state is CircuitState.OPEN:
        reopens_at = state.reopens_at or now
        if now < reopens_at:
            return state, Denied(retry_after=reopens_at, reason='open')
        state = dataclasses.replace(state, state=CircuitState.HALF_OPEN, success_count=0)

    return dataclasses.replace(state, window_count=state.window_count + 1), Allowed()


def apply_success(state: CircuitBreakerState, now: datetime) -> CircuitBreakerState:
    match state.state:
        case CircuitState.HALF_OPEN:
            successes = state.success_count + 1
            if successes >= state.success_threshold:
                return dataclasses.replace(
                    state,
                    state=CircuitState.CLOSED,
                    failure_count=0,
                    success_count=0,
                    last_success_at=now,
                )
            return dataclasses.replace(state, success_count=successes, last_success_at=now)
        case CircuitState.CLOSED:
            # Successes decay the failure count rather than clearing it.
            return dataclasses.replace(
                state,
                failure_count=max(0, state.failure_count - 1),
                last_success_at=now,
            )
        case _:
            return dataclasses.replace(state, last_success_at=now)


def apply_failure(state: CircuitBreakerState, now: datetime) -> CircuitBreakerState:
    failures = state.failure_count + 1
    match state.state:
        case CircuitState.CLOSED if failures >= state.failure_threshold:
            next_state = CircuitState.OPEN
        case CircuitState.HALF_OPEN:
            next_state = CircuitState.OPEN
        case _:
            next_state = state.state
    return dataclasses.replace(
        state,
        state=next_state,
        failure_count=failures,
        success_count=0 if next_state is CircuitState.OPEN else state.success_count,
        last_failure_at=now,
    )
