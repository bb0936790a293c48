"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.

Engines are wired to a VirtualClock that doubles as their Scheduler, so time
only moves when a test advances it (or when an engine sleeps).
"""

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from messaging_resilience.core.config.settings import reload_settings
from messaging_resilience.core.interfaces.transport import QueueStats, Transport
from messaging_resilience.core.resilience.backpressure_controller import BackpressureController
from messaging_resilience.core.resilience.circuit_breaker import CircuitBreaker
from messaging_resilience.core.resilience.dead_letter_pipeline import RetryDeadLetterPipeline
from messaging_resilience.core.resilience.saga_orchestrator import SagaOrchestrator
from messaging_resilience.core.resilience.transactional_outbox import TransactionalOutbox
from messaging_resilience.infrastructure.message_queue.memory_transport import InMemoryTransport
from messaging_resilience.infrastructure.scheduling.virtual_clock import VirtualClock

# ============================================================================
# Settings
# ============================================================================


@pytest.fixture(autouse=True)
def fresh_settings():
    """Every test starts from freshly loaded settings."""
    settings = reload_settings()
    yield settings
    reload_settings()


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def clock():
    """Deterministic clock + scheduler starting at 2024-01-01T00:00:00Z."""
    return VirtualClock()


@pytest.fixture
def transport(clock):
    """In-memory AMQP-style transport dispatching on the virtual clock."""
    return InMemoryTransport(scheduler=clock)


@pytest.fixture
def mock_transport():
    """
    Transport double that accepts every publish.

    Used where only the calls made to the broker matter.
    """
    transport = AsyncMock(spec=Transport)
    transport.publish = AsyncMock(return_value=True)
    transport.send_to_queue = AsyncMock(return_value=True)
    transport.consume = AsyncMock(side_effect=lambda queue, handler: f"ctag-{queue}")
    transport.cancel = AsyncMock(return_value=True)
    transport.queue_stats = AsyncMock(return_value=QueueStats())
    return transport


@pytest.fixture
def mock_metrics_collector():
    """Mock metrics collector for asserting recorded events."""
    from messaging_resilience.infrastructure.monitoring.metrics_collector import MetricsCollector

    return MagicMock(spec=MetricsCollector)


# ============================================================================
# Engines
# ============================================================================


@pytest.fixture
def breaker(clock):
    """Circuit breaker with the default thresholds (3 failures / 10s, 15s open)."""
    return CircuitBreaker(
        "payments",
        clock=clock,
        config={
            "failureThreshold": 3,
            "windowMs": 10_000,
            "timeoutMs": 15_000,
            "serviceLatencyMs": 300,
            "fallbackEnabled": True,
        },
    )


@pytest.fixture
def pipeline(transport, clock):
    return RetryDeadLetterPipeline(
        transport,
        clock=clock,
        retry_delays_ms=[2_000, 8_000, 32_000, 128_000, 512_000],
        rng=random.Random(7),
    )


@pytest.fixture
def outbox(transport, clock):
    return TransactionalOutbox(transport, clock=clock, scheduler=clock, relay_interval_ms=1_000)


@pytest.fixture
def controller(clock):
    return BackpressureController(clock=clock, scheduler=clock)


@pytest.fixture
def orchestrator(transport, clock):
    return SagaOrchestrator(transport, clock=clock)
