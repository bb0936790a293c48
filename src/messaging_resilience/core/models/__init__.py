"""
Models Module

pydantic models for engine records (camelCase on the wire), immutable stats
snapshots and validated runtime configs.
"""

from messaging_resilience.core.models.backpressure import (
    BackpressureConfig,
    BackpressureMessage,
    BackpressureStats,
)
from messaging_resilience.core.models.base import EngineConfig, RecordModel, SnapshotModel
from messaging_resilience.core.models.circuit_breaker import (
    CallRecord,
    CircuitBreakerConfig,
    CircuitBreakerStatus,
)
from messaging_resilience.core.models.dead_letter import (
    BatchResult,
    DlqConfig,
    DlqMessage,
    DlqStats,
    RetryHistoryEntry,
)
from messaging_resilience.core.models.outbox import (
    BusinessRecord,
    OrderRecord,
    OutboxEntry,
    PublishedMessage,
    RecordWithEntry,
    RelayStats,
)
from messaging_resilience.core.models.saga import (
    SagaDefinition,
    SagaExecution,
    SagaOptions,
    SagaStepDefinition,
    SagaStepRecord,
)

__all__ = [
    # Base
    "EngineConfig",
    "RecordModel",
    "SnapshotModel",
    # Circuit breaker
    "CallRecord",
    "CircuitBreakerConfig",
    "CircuitBreakerStatus",
    # DLQ
    "BatchResult",
    "DlqConfig",
    "DlqMessage",
    "DlqStats",
    "RetryHistoryEntry",
    # Outbox
    "BusinessRecord",
    "OrderRecord",
    "OutboxEntry",
    "PublishedMessage",
    "RecordWithEntry",
    "RelayStats",
    # Backpressure
    "BackpressureConfig",
    "BackpressureMessage",
    "BackpressureStats",
    # Saga
    "SagaDefinition",
    "SagaExecution",
    "SagaOptions",
    "SagaStepDefinition",
    "SagaStepRecord",
]
