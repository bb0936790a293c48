#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics collection for the resilience engines:
- Circuit breaker states and call outcomes
- DLQ pipeline events (processed, retried, dead-lettered, replayed)
- Outbox relay publish results and pending backlog
- Backpressure overflow events, queue depth and wait times
- Saga outcomes and durations
- Scheduler callback errors

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Histogram buckets for latency percentiles
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    'resilience_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half-open, 2=open)',
    ['breaker']
)

CIRCUIT_BREAKER_CALLS = Counter(
    'resilience_circuit_breaker_calls_total',
    'Circuit breaker calls by outcome',
    ['breaker', 'outcome']  # success, failure, rejected, fallback
)

# Dead-letter pipeline metrics
DLQ_EVENTS = Counter(
    'resilience_dlq_events_total',
    'DLQ pipeline events',
    ['event']  # processed, failed, retried, dead_lettered, replayed, discarded
)

# Outbox metrics
OUTBOX_PUBLISH = Counter(
    'resilience_outbox_publish_total',
    'Outbox relay publish attempts by result',
    ['result']  # published, failed
)

OUTBOX_PENDING = Gauge(
    'resilience_outbox_pending_entries',
    'Outbox entries waiting for the relay'
)

# Backpressure metrics
BACKPRESSURE_EVENTS = Counter(
    'resilience_backpressure_events_total',
    'Backpressure producer/consumer events',
    ['event']  # produced, consumed, dropped, rejected, blocked
)

BACKPRESSURE_QUEUE_DEPTH = Gauge(
    'resilience_backpressure_queue_depth',
    'Current backpressure buffer depth'
)

BACKPRESSURE_WAIT = Histogram(
    'resilience_backpressure_wait_seconds',
    'Time a message spent queued before consumption',
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

# Saga metrics
SAGA_OUTCOMES = Counter(
    'resilience_saga_outcomes_total',
    'Saga runs by outcome',
    ['saga', 'outcome']  # succeeded, compensated, failed
)

SAGA_DURATION = Histogram(
    'resilience_saga_duration_seconds',
    'Saga run duration including compensations',
    ['saga'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)
)

# Scheduler metrics
SCHEDULER_ERRORS = Counter(
    'resilience_scheduler_callback_errors_total',
    'Exceptions raised by scheduled callbacks',
    ['task']
)

# App info
APP_INFO = Info(
    'resilience_app',
    'Application information'
)

_STATE_VALUES = {"closed": 0, "half-open": 1, "open": 2}


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.set_circuit_state("payments", "open")
        metrics.record_dlq_event("dead_lettered")
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        """Initialize metrics collector."""
        self.settings = get_settings()

        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Circuit Breaker Metrics
    # =========================================================================

    def set_circuit_state(self, breaker: str, state: str) -> None:
        """Set circuit breaker state."""
        CIRCUIT_BREAKER_STATE.labels(breaker=breaker).set(_STATE_VALUES.get(state, 0))

    def record_circuit_call(self, breaker: str, outcome: str) -> None:
        CIRCUIT_BREAKER_CALLS.labels(breaker=breaker, outcome=outcome).inc()

    # =========================================================================
    # DLQ Metrics
    # =========================================================================

    def record_dlq_event(self, event: str) -> None:
        DLQ_EVENTS.labels(event=event).inc()

    # =========================================================================
    # Outbox Metrics
    # =========================================================================

    def record_outbox_publish(self, result: str) -> None:
        OUTBOX_PUBLISH.labels(result=result).inc()

    def set_outbox_pending(self, count: int) -> None:
        OUTBOX_PENDING.set(count)

    # =========================================================================
    # Backpressure Metrics
    # =========================================================================

    def record_backpressure_event(self, event: str) -> None:
        BACKPRESSURE_EVENTS.labels(event=event).inc()

    def set_backpressure_depth(self, depth: int) -> None:
        BACKPRESSURE_QUEUE_DEPTH.set(depth)

    def record_backpressure_wait(self, wait_ms: float) -> None:
        """Record queue wait time (milliseconds in, seconds out)."""
        BACKPRESSURE_WAIT.observe(wait_ms / 1000.0)

    # =========================================================================
    # Saga Metrics
    # =========================================================================

    def record_saga_outcome(self, saga: str, outcome: str, duration_ms: float) -> None:
        SAGA_OUTCOMES.labels(saga=saga, outcome=outcome).inc()
        SAGA_DURATION.labels(saga=saga).observe(duration_ms / 1000.0)

    # =========================================================================
    # Scheduler Metrics
    # =========================================================================

    def record_scheduler_error(self, task: str) -> None:
        SCHEDULER_ERRORS.labels(task=task or "unnamed").inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
