# nodeflow/core/engine/backoff.py
from __future__ import annotations

import random
from datetime import timedelta

from nodeflow.core.models.config import RetryBackoffConfig

# Never schedule a retry sooner than this, whatever the jitter.
_MIN_DELAY_MS = 100


def retry_delay(
    retry_count: int,
    config: RetryBackoffConfig,
    rng: random.Random | None = None,
) -> timedelta:
    """Delay before retry number ``retry_count`` (1-based).

    Exponential from base_ms, capped at max_ms, with +/- jitter. The cap
    also bounds the jittered value.
    """
    attempt = max(1, retry_count)
    # Bound the exponent; 2**63 ms is already far beyond any sane cap.
    base_ms = config.base_ms * (2 ** min(attempt - 1, 63))
    delay_ms = float(min(base_ms, config.max_ms))
    if config.jitter > 0:
        spread = delay_ms * config.jitter
        delay_ms += (rng or random).uniform(-spread, spread)
    delay_ms = min(max(delay_ms, _MIN_DELAY_MS), config.max_ms)
    return timedelta(milliseconds=delay_ms)
