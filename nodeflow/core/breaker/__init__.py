from nodeflow.core.breaker.state import (
    Allowed,
    BreakerDecision,
    BreakerThresholds,
    CircuitBreakerState,
    Denied,
)
from nodeflow.core.breaker.registry import BreakerHandle, CircuitBreakerRegistry

__all__ = [
    'Allowed',
    'BreakerDecision',
    'BreakerHandle',
    'BreakerThresholds',
    'CircuitBreakerRegistry',
    'CircuitBreakerState',
    'Denied',
]
