"""Shared fixtures for unit tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from engine_helpers import EngineHarness, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness_factory(clock: FakeClock) -> Callable[..., EngineHarness]:
    def factory(**kwargs: Any) -> EngineHarness:
        return EngineHarness(clock, **kwargs)

    return factory


@pytest.fixture
def harness(harness_factory: Callable[..., EngineHarness]) -> EngineHarness:
    return harness_factory()
