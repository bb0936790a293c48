"""
Backpressure controller messages, stats and runtime config.
"""

from pydantic import Field

from messaging_resilience.core.config.constants import (
    BackpressureMessageStatus,
    BackpressureStrategy,
    DropPolicy,
)
from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.models.base import EngineConfig, RecordModel, SnapshotModel


class BackpressureConfig(EngineConfig):
    """Producer/consumer simulation settings. Rates must be positive."""

    producer_rate_per_sec: float = Field(gt=0)
    consumer_rate_per_sec: float = Field(gt=0)
    max_queue_depth: int = Field(ge=1)
    strategy: BackpressureStrategy = BackpressureStrategy.DROP
    drop_policy: DropPolicy = DropPolicy.OLDEST
    prefetch_count: int = Field(default=1, ge=1)

    @classmethod
    def from_settings(cls) -> "BackpressureConfig":
        s = get_settings().backpressure
        return cls(
            producer_rate_per_sec=s.BP_PRODUCER_RATE_PER_SEC,
            consumer_rate_per_sec=s.BP_CONSUMER_RATE_PER_SEC,
            max_queue_depth=s.BP_MAX_QUEUE_DEPTH,
            strategy=BackpressureStrategy(s.BP_STRATEGY),
            drop_policy=DropPolicy(s.BP_DROP_POLICY),
            prefetch_count=s.BP_PREFETCH_COUNT,
        )

    @property
    def producer_interval_ms(self) -> float:
        return 1000.0 / self.producer_rate_per_sec

    @property
    def consumer_interval_ms(self) -> float:
        return 1000.0 / self.consumer_rate_per_sec


class BackpressureMessage(RecordModel):
    id: str
    payload: str
    produced_at: str
    processed_at: str | None = None
    dropped_at: str | None = None
    status: BackpressureMessageStatus = BackpressureMessageStatus.QUEUED
    wait_ms: float | None = None
    produced_at_ms: float = Field(exclude=True)


class BackpressureStats(SnapshotModel):
    is_running: bool
    queue_depth: int
    max_queue_depth: int
    produced: int
    consumed: int
    dropped: int
    rejected: int
    blocked: int
    throughput_produced: float
    throughput_consumed: float
    avg_wait_ms: float
    p95_wait_ms: float
    config: BackpressureConfig
