"""
Transactional Outbox

Architecture:
    TransactionalOutbox (Public API)
        ├── Write path: record + outbox entry committed together
        │     (OutboxRepository.save_atomically)
        ├── Relay: periodic poller (Scheduler.every) owned by a TaskRegistry
        └── Published log (BoundedLog, newest first, cap 50)

Relay poll:
    1. SELECT pending entries ORDER BY created_at (ties by insertion order)
    2. For each entry:
         broker down / publish raises
             -> retryCount++, lastError set, entry stays PENDING
         otherwise
             -> publish to the topic exchange with x-outbox-id / x-record-id
             -> mark PUBLISHED with a timestamp, append to the published log

Guarantee: no record exists without its publish intent, and no intent is
dropped during a broker outage. Once the broker is back, the next poll
flushes the whole backlog in creation order.
"""

import asyncio
from typing import Any

from pydantic import ValidationError

from messaging_resilience.core.config.constants import (
    HEADER_OUTBOX_ID,
    HEADER_RECORD_ID,
    OUTBOX_BINDING_KEY,
    OUTBOX_ORDER_TOPIC,
    OUTBOX_QUEUE,
    PUBLISHED_LOG_LIMIT,
)
from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.exceptions import InvalidRecordError, MessageEncodingError, ResilienceError
from messaging_resilience.core.identifiers import generate_id
from messaging_resilience.core.interfaces.scheduling import Clock, Scheduler, TaskRegistry
from messaging_resilience.core.interfaces.store import BoundedLog, OutboxRepository
from messaging_resilience.core.interfaces.transport import PublishOptions, Transport
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.core.models.outbox import (
    BusinessRecord,
    OrderRecord,
    OutboxEntry,
    PublishedMessage,
    RecordWithEntry,
    RelayStats,
)
from messaging_resilience.infrastructure.message_queue.memory_transport import MessageSerializer
from messaging_resilience.infrastructure.monitoring.metrics_collector import get_metrics_collector
from messaging_resilience.infrastructure.persistence.memory_outbox import InMemoryOutboxRepository
from messaging_resilience.infrastructure.scheduling.asyncio_scheduler import AsyncioScheduler, SystemClock

logger = get_logger(__name__)

BROKER_DOWN_ERROR = "Broker unavailable (simulated outage)"


class TransactionalOutbox:
    """
    Outbox writer and relay.

    Usage:
        outbox = TransactionalOutbox(transport, clock=clock, scheduler=scheduler)
        created = await outbox.create_order("Alice", 99.5, 2)
        await outbox.start_relay()
    """

    def __init__(
        self,
        transport: Transport,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        repository: OutboxRepository | None = None,
        relay_interval_ms: int | None = None,
        exchange: str | None = None,
    ):
        settings = get_settings()
        self._transport = transport
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._repository = repository or InMemoryOutboxRepository()
        self._relay_interval_ms = relay_interval_ms or settings.outbox.OUTBOX_RELAY_INTERVAL_MS
        self._exchange = exchange or settings.outbox.OUTBOX_EXCHANGE
        self._metrics = get_metrics_collector()

        self._tasks = TaskRegistry("outbox")
        self._published: BoundedLog[PublishedMessage] = BoundedLog(PUBLISHED_LOG_LIMIT)
        self._poll_lock = asyncio.Lock()
        self._initialized = False
        self._relay_running = False
        self._broker_down = False
        self._reset_stats()

    async def initialize(self) -> None:
        """
        Declare the event exchange and the order queue.

        STAGE-OUTBOX.0: Topology setup (idempotent)
        """
        if self._initialized:
            return
        await self._transport.declare_exchange(self._exchange, "topic")
        await self._transport.declare_queue(OUTBOX_QUEUE)
        await self._transport.bind_queue(OUTBOX_QUEUE, self._exchange, OUTBOX_BINDING_KEY)
        self._initialized = True
        logger.info("Outbox exchange and queues initialized", stage="OUTBOX.0", exchange=self._exchange)

    # =========================================================================
    # Write path
    # =========================================================================

    async def create_record(
        self, record: BusinessRecord, topic: str, payload: dict[str, Any]
    ) -> RecordWithEntry:
        """
        Write ``record`` and its outbox entry in one transaction.

        Raises:
            InvalidRecordError: If the record, topic or payload is invalid (nothing is written)
        """
        if not topic:
            raise InvalidRecordError("Outbox topic is required", details={"record_id": record.id})
        try:
            MessageSerializer.serialize(payload)
        except MessageEncodingError as e:
            raise InvalidRecordError.from_exception(e, message=e.message, record_id=record.id) from e

        now_ms = self._clock.now_ms()
        entry = OutboxEntry(
            id=generate_id("MSG", self._clock, suffix_length=3),
            related_record_id=record.id,
            topic=topic,
            payload=dict(payload),
            created_at=record.created_at,
            created_at_ms=now_ms,
        )

        await self._repository.save_atomically(record, entry)
        await self._refresh_pending_gauge()

        logger.info(
            f"[TX COMMIT] Record {record.id} + Outbox {entry.id} written atomically",
            stage="OUTBOX.1",
            topic=topic,
        )
        return RecordWithEntry(record=record.model_copy(deep=True), outbox_entry=entry.model_copy(deep=True))

    async def create_order(self, customer: str, amount: float, items: int = 1) -> RecordWithEntry:
        """
        Create an order and its ``order.created`` event atomically.

        Raises:
            InvalidRecordError: If the order fields are invalid
        """
        order_id = generate_id("ORD", self._clock, suffix_length=3)
        now = self._clock.now_iso()
        try:
            order = OrderRecord(id=order_id, customer=customer, amount=amount, items=items, created_at=now)
        except ValidationError as e:
            raise InvalidRecordError.from_exception(e, message="Invalid order", record_id=order_id) from e

        payload = {
            "orderId": order_id,
            "customer": order.customer,
            "amount": order.amount,
            "items": order.items,
            "timestamp": now,
        }
        return await self.create_record(order, OUTBOX_ORDER_TOPIC, payload)

    async def create_order_batch(
        self, count: int, customer: str, amount: float, items: int = 1
    ) -> list[RecordWithEntry]:
        results = []
        for i in range(count):
            results.append(
                await self.create_order(f"{customer} #{i + 1}", round(amount + i * 10, 2), items)
            )
        return results

    # =========================================================================
    # Relay
    # =========================================================================

    async def start_relay(self) -> bool:
        """
        Start the periodic relay poller.

        Returns:
            False if the relay was already running
        """
        if self._relay_running:
            return False
        await self.initialize()
        self._relay_running = True
        self._tasks.register(
            self._scheduler.every(self._relay_interval_ms, self._run_relay_poll, name="outbox.relay")
        )
        logger.info("Outbox relay started", stage="OUTBOX.2", interval_ms=self._relay_interval_ms)
        return True

    def stop_relay(self) -> None:
        """Cancel the poller. Idempotent; a poll already running finishes."""
        cancelled = self._tasks.cancel_all()
        was_running = self._relay_running
        self._relay_running = False
        if was_running or cancelled:
            logger.info("Outbox relay stopped", stage="OUTBOX.2")

    def is_relay_running(self) -> bool:
        return self._relay_running

    async def poll_once(self) -> int:
        """
        Run one relay poll now.

        Returns:
            Number of entries published by this poll
        """
        await self.initialize()
        return await self._run_relay_poll()

    async def _run_relay_poll(self) -> int:
        if self._poll_lock.locked():
            logger.debug("Relay poll skipped, previous poll still running", stage="OUTBOX.3")
            return 0

        async with self._poll_lock:
            self._poll_count += 1
            self._last_poll_at = self._clock.now_iso()

            pending = await self._repository.pending_entries()
            if not pending:
                return 0

            logger.debug(f"Relay poll #{self._poll_count}: {len(pending)} pending", stage="OUTBOX.3")

            published = 0
            for entry in pending:
                if await self._relay_entry(entry):
                    published += 1

            await self._refresh_pending_gauge()
            return published

    async def _relay_entry(self, entry: OutboxEntry) -> bool:
        if self._broker_down:
            await self._record_failure(entry, BROKER_DOWN_ERROR)
            logger.warning(f"Relay: broker down, skipping {entry.id}", stage="OUTBOX.4")
            return False

        try:
            await self._transport.publish(
                self._exchange,
                entry.topic,
                entry.payload,
                PublishOptions(
                    persistent=True,
                    headers={HEADER_OUTBOX_ID: entry.id, HEADER_RECORD_ID: entry.related_record_id},
                    message_id=entry.id,
                ),
            )
        except Exception as e:
            # Counted against this entry only; the rest of the poll continues
            error = e.message if isinstance(e, ResilienceError) else str(e)
            await self._record_failure(entry, error)
            logger.error(f"Relay: failed to publish {entry.id}: {error}", stage="OUTBOX.4", error_type=type(e).__name__)
            return False

        published_at = self._clock.now_iso()
        await self._repository.mark_published(entry.id, published_at)
        self._published.append(
            PublishedMessage(
                id=entry.id,
                related_record_id=entry.related_record_id,
                topic=entry.topic,
                payload=dict(entry.payload),
                published_at=published_at,
            )
        )
        self._published_count += 1
        self._metrics.record_outbox_publish("published")
        logger.info(f"Relay: published {entry.id} -> {entry.topic}", stage="OUTBOX.5")
        return True

    async def _record_failure(self, entry: OutboxEntry, error: str) -> None:
        await self._repository.record_failed_attempt(entry.id, error)
        self._failed_count += 1
        self._metrics.record_outbox_publish("failed")

    # =========================================================================
    # Broker simulation
    # =========================================================================

    def set_broker_down(self, down: bool) -> None:
        """Simulated outage toggle for the relay. The write path is unaffected."""
        self._broker_down = down
        logger.info(f"Broker simulation: {'DOWN' if down else 'UP'}", stage="OUTBOX.6")

    def is_broker_down(self) -> bool:
        return self._broker_down

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_orders(self) -> list[BusinessRecord]:
        """Business records, newest first (copies)."""
        return [r.model_copy(deep=True) for r in await self._repository.list_records()]

    async def get_outbox(self) -> list[OutboxEntry]:
        """Outbox entries, newest first (copies)."""
        return [e.model_copy(deep=True) for e in await self._repository.list_entries()]

    def get_published_messages(self) -> list[PublishedMessage]:
        return [m.model_copy(deep=True) for m in self._published]

    async def get_relay_stats(self) -> RelayStats:
        entries = await self._repository.list_entries()
        return RelayStats(
            running=self._relay_running,
            broker_down=self._broker_down,
            poll_count=self._poll_count,
            published_count=self._published_count,
            failed_count=self._failed_count,
            last_poll_at=self._last_poll_at,
            pending_count=sum(1 for e in entries if e.is_pending),
        )

    async def clear_all(self) -> None:
        """Drop both tables, the published log and the relay counters."""
        await self._repository.clear()
        self._published.clear()
        self._reset_stats()
        self._metrics.set_outbox_pending(0)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _reset_stats(self) -> None:
        self._poll_count = 0
        self._published_count = 0
        self._failed_count = 0
        self._last_poll_at: str | None = None

    async def _refresh_pending_gauge(self) -> None:
        entries = await self._repository.list_entries()
        self._metrics.set_outbox_pending(sum(1 for e in entries if e.is_pending))
