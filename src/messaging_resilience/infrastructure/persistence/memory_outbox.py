"""
In-Memory Outbox Repository

Simulated database tables for the transactional outbox: one table of
business records and one table of outbox entries.

save_atomically() plays the role of:

    BEGIN
      INSERT INTO records ...
      INSERT INTO outbox ...
    COMMIT

Both rows are validated before anything is written and inserted under one
lock with no await in between, so no reader can observe one without the other.

Retention: at most ``max_pairs`` record/entry pairs are kept. Eviction is
pairwise, oldest first, and never evicts a pair whose entry is still pending
(a pending intent is never lost to trimming).
"""

import asyncio
import itertools

from messaging_resilience.core.config.constants import OUTBOX_RECORD_LIMIT, OutboxStatus
from messaging_resilience.core.exceptions import InvalidRecordError
from messaging_resilience.core.interfaces.store import OutboxRepository
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.core.models.outbox import BusinessRecord, OutboxEntry

logger = get_logger(__name__)


class InMemoryOutboxRepository(OutboxRepository):

    def __init__(self, max_pairs: int = OUTBOX_RECORD_LIMIT):
        self._max_pairs = max_pairs
        self._records: list[BusinessRecord] = []
        self._entries: list[OutboxEntry] = []
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    async def save_atomically(self, record: BusinessRecord, entry: OutboxEntry) -> None:
        if record is None or entry is None:
            raise InvalidRecordError("Record and outbox entry are both required")
        if entry.related_record_id != record.id:
            raise InvalidRecordError(
                "Outbox entry does not reference the record",
                details={"record_id": record.id, "related_record_id": entry.related_record_id},
            )

        async with self._lock:
            if any(r.id == record.id for r in self._records):
                raise InvalidRecordError("Duplicate record id", details={"record_id": record.id})

            # COMMIT: both rows land together
            entry.sequence = next(self._sequence)
            self._records.insert(0, record)
            self._entries.insert(0, entry)
            self._evict()

    async def pending_entries(self) -> list[OutboxEntry]:
        pending = [e for e in self._entries if e.status == OutboxStatus.PENDING]
        return sorted(pending, key=lambda e: (e.created_at_ms, e.sequence))

    async def mark_published(self, entry_id: str, published_at: str) -> None:
        entry = self._find_entry(entry_id)
        if entry is None:
            return
        entry.status = OutboxStatus.PUBLISHED
        entry.published_at = published_at
        entry.last_error = None

    async def record_failed_attempt(self, entry_id: str, error: str) -> None:
        entry = self._find_entry(entry_id)
        if entry is None:
            return
        entry.retry_count += 1
        entry.last_error = error

    async def list_records(self) -> list[BusinessRecord]:
        return list(self._records)

    async def list_entries(self) -> list[OutboxEntry]:
        return list(self._entries)

    async def count_pending(self) -> int:
        return sum(1 for e in self._entries if e.status == OutboxStatus.PENDING)

    async def clear(self) -> None:
        async with self._lock:
            self._records = []
            self._entries = []

    def _find_entry(self, entry_id: str) -> OutboxEntry | None:
        return next((e for e in self._entries if e.id == entry_id), None)

    def _evict(self) -> None:
        while len(self._records) > self._max_pairs:
            victim = next(
                (e for e in reversed(self._entries) if e.status != OutboxStatus.PENDING),
                None,
            )
            if victim is None:
                logger.debug(
                    "Outbox over retention cap, all entries pending",
                    stage="OUTBOX.7",
                    pairs=len(self._records),
                )
                return
            self._entries.remove(victim)
            self._records = [r for r in self._records if r.id != victim.related_record_id]
