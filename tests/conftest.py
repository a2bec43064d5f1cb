"""
Pytest configuration and fixtures for vault engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""

import pytest

from core.events import EventEmitter, EventRecorder
from core.price_feed import StaticPriceSource
from core.scheduler import VaultScheduler
from core.swap import SimulatedSwapExecutor
from infra.vault_store import InMemoryVaultStore


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def prices():
    return StaticPriceSource({"BTC": 100, "ETH": 100, "SOL": 50, "USDC": 1})


@pytest.fixture
def store():
    return InMemoryVaultStore()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def make_scheduler(store, prices, recorder):
    """Build a scheduler over the shared store/prices; kwargs override defaults."""
    created = []

    def _make(**kwargs):
        events = EventEmitter()
        events.subscribe(recorder)
        kwargs.setdefault("swap_executor", SimulatedSwapExecutor(prices))
        kwargs.setdefault("instruction_timeout_seconds", 5.0)
        scheduler = VaultScheduler(store=store, price_source=prices, events=events, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.close()
