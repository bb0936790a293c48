"""
Transactional outbox records and relay stats.
"""

from typing import Any

from pydantic import Field

from messaging_resilience.core.config.constants import OrderStatus, OutboxStatus
from messaging_resilience.core.models.base import RecordModel, SnapshotModel


class BusinessRecord(RecordModel):
    """Domain row written together with its outbox entry."""

    id: str
    created_at: str


class OrderRecord(BusinessRecord):
    customer: str = Field(min_length=1)
    amount: float = Field(ge=0)
    items: int = Field(default=1, ge=0)
    status: OrderStatus = OrderStatus.PENDING


class OutboxEntry(RecordModel):
    """
    Publish intent for a business record.

    status becomes PUBLISHED only after the transport accepted the message.
    ``sequence`` breaks ties between entries created in the same millisecond.
    """

    id: str
    related_record_id: str
    topic: str
    payload: dict[str, Any]
    status: OutboxStatus = OutboxStatus.PENDING
    retry_count: int = 0
    created_at: str
    published_at: str | None = None
    last_error: str | None = None
    created_at_ms: float = Field(exclude=True)
    sequence: int = Field(default=0, exclude=True)

    @property
    def is_pending(self) -> bool:
        return self.status == OutboxStatus.PENDING


class PublishedMessage(RecordModel):
    """What a downstream consumer received, as seen by the relay."""

    id: str
    related_record_id: str
    topic: str
    payload: dict[str, Any]
    published_at: str


class RecordWithEntry(SnapshotModel):
    """Result of an atomic write: the record and its outbox entry."""

    record: BusinessRecord
    outbox_entry: OutboxEntry

    def to_dict(self) -> dict[str, Any]:
        return {"record": self.record.to_dict(), "outboxEntry": self.outbox_entry.to_dict()}


class RelayStats(SnapshotModel):
    running: bool
    broker_down: bool
    poll_count: int
    published_count: int
    failed_count: int
    last_poll_at: str | None = None
    pending_count: int
