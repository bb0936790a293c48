"""
Retry / dead-letter pipeline records, stats and runtime config.
"""

from typing import Any

from pydantic import Field, field_validator

from messaging_resilience.core.config.constants import MAX_RETRY_LEVELS, DlqStatus, FailureMode
from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.models.base import EngineConfig, RecordModel, SnapshotModel


class DlqConfig(EngineConfig):
    failure_mode: FailureMode = FailureMode.ALWAYS
    fail_count: int = Field(default=2, ge=0, description="Failing attempts in first_n mode")
    fail_probability: float = Field(default=0.5, ge=0.0, le=1.0, description="Failure odds in random mode")
    max_retries: int = Field(default=3, ge=1, le=MAX_RETRY_LEVELS)
    processing_delay_ms: int = Field(default=500, ge=0)

    @classmethod
    def from_settings(cls) -> "DlqConfig":
        s = get_settings().dlq
        return cls(
            failure_mode=FailureMode(s.DLQ_FAILURE_MODE),
            fail_count=s.DLQ_FAIL_COUNT,
            fail_probability=s.DLQ_FAIL_PROBABILITY,
            max_retries=s.DLQ_MAX_RETRIES,
            processing_delay_ms=s.DLQ_PROCESSING_DELAY_MS,
        )


class RetryHistoryEntry(RecordModel):
    attempt: int
    timestamp: str
    delay_ms: float
    error: str


class DlqMessage(RecordModel):
    """
    Tracked work item.

    retry_count never exceeds max_retries. A dead item stays out of the
    pipeline until it is replayed.
    """

    id: str
    payload: dict[str, Any]
    status: DlqStatus
    queue: str
    retry_count: int = 0
    max_retries: int
    created_at: str
    last_attempt_at: str | None = None
    dead_at: str | None = None
    error: str | None = None
    retry_history: list[RetryHistoryEntry] = Field(default_factory=list)

    @property
    def is_dead(self) -> bool:
        return self.status == DlqStatus.DEAD


class QueueDepth(SnapshotModel):
    messages: int
    consumers: int = 0


class RetryQueueDepth(SnapshotModel):
    name: str
    ttl_ms: int
    messages: int


class DeadLetterDepth(SnapshotModel):
    messages: int


class DlqStats(SnapshotModel):
    main_queue: QueueDepth
    retry_queues: list[RetryQueueDepth]
    dlq: DeadLetterDepth
    processed: int
    failed: int
    retried: int
    dead_lettered: int


class BatchResult(SnapshotModel):
    sent: int
    ids: list[str]

    @field_validator("ids")
    @classmethod
    def _ids_match_sent(cls, v, info):
        if "sent" in info.data and len(v) != info.data["sent"]:
            raise ValueError("ids must list every sent message")
        return v
