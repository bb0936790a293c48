"""
Retry / Dead-Letter Pipeline

Architecture:
    RetryDeadLetterPipeline (Public API)
        ├── FailurePolicy (simulated processing outcome per failure mode)
        ├── RetryTopology (main queue, TTL retry buffers, dead-letter queue)
        └── Message tracking (RecordStore of DlqMessage, newest first, cap 50)

Topology:
    dlq-demo.main ──nack──> dlq-demo.dlx ──"dead"──> dlq-demo.dead-letter
        │
        └─ failure ──> dlq-demo.retry ──"retry.k"──> dlq-demo.retry.k
                                                       (TTL = delay[k-1])
                                                       │
                        dlq-demo.main <──TTL expiry────┘

Flow per attempt:
    1. Consume from the main queue, count the attempt, mark PROCESSING
    2. Simulate processing latency
    3. Success -> ack, COMPLETED
    4. Failure with retry_count < max_retries -> publish to retry buffer
       retry_count+1 with x-retry-count incremented, ack, RETRY_k
    5. Failure with retry_count >= max_retries -> nack (no requeue) into the
       dead-letter exchange, DEAD

The retry count travels with the message in the x-retry-count header, so an
item is dead-lettered after exactly max_retries + 1 attempts.
"""

import random
from collections.abc import Callable
from typing import Any

from messaging_resilience.core.config.constants import (
    DLQ_DEAD_LETTER_QUEUE,
    DLQ_DEAD_ROUTING_KEY,
    DLQ_DLX_EXCHANGE,
    DLQ_MAIN_QUEUE,
    DLQ_MESSAGE_LIMIT,
    DLQ_RETRY_EXCHANGE,
    DLQ_RETRY_QUEUE_PREFIX,
    HEADER_LAST_ERROR,
    HEADER_RETRY_COUNT,
    MAX_RETRY_LEVELS,
    DlqStatus,
    FailureMode,
)
from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.exceptions import TransportError
from messaging_resilience.core.identifiers import generate_id
from messaging_resilience.core.interfaces.scheduling import Clock
from messaging_resilience.core.interfaces.store import InMemoryRecordStore, RecordStore
from messaging_resilience.core.interfaces.transport import (
    DEFAULT_EXCHANGE,
    Delivery,
    PublishOptions,
    Transport,
)
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.core.models.dead_letter import (
    BatchResult,
    DeadLetterDepth,
    DlqConfig,
    DlqMessage,
    DlqStats,
    QueueDepth,
    RetryHistoryEntry,
    RetryQueueDepth,
)
from messaging_resilience.core.resilience.retry import publish_with_retry
from messaging_resilience.infrastructure.monitoring.metrics_collector import get_metrics_collector
from messaging_resilience.infrastructure.scheduling.asyncio_scheduler import SystemClock

logger = get_logger(__name__)

FAILURE_REASONS = (
    "Connection timeout to payment gateway",
    "Database deadlock detected",
    "External API returned 503 Service Unavailable",
    "Rate limit exceeded (429)",
    "Serialization error: invalid JSON payload",
    "Upstream dependency circuit breaker OPEN",
)

MANUAL_RETRY_NOTE = "MANUAL RETRY from DLQ"


# =============================================================================
# LAYER 1: FAILURE POLICY
# =============================================================================


class FailurePolicy:
    """
    Decides whether a processing attempt fails.

    One handler per FailureMode; ``attempt`` is the 1-based total attempt
    number of the item since it was (re)submitted.
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()
        self._handlers: dict[FailureMode, Callable[[DlqConfig, int], bool]] = {
            FailureMode.ALWAYS: lambda config, attempt: True,
            FailureMode.NEVER: lambda config, attempt: False,
            FailureMode.RANDOM: lambda config, attempt: self._rng.random() < config.fail_probability,
            FailureMode.FIRST_N: lambda config, attempt: attempt <= config.fail_count,
        }

    def should_fail(self, config: DlqConfig, attempt: int) -> bool:
        return self._handlers[config.failure_mode](config, attempt)

    @staticmethod
    def failure_reason(attempt: int) -> str:
        return FAILURE_REASONS[(attempt - 1) % len(FAILURE_REASONS)]


# =============================================================================
# LAYER 2: RETRY TOPOLOGY
# =============================================================================


class RetryTopology:
    """Queue/exchange layout of the pipeline. declare() is idempotent."""

    def __init__(self, retry_delays_ms: list[int]):
        if not retry_delays_ms:
            raise ValueError("At least one retry delay is required")
        self.retry_delays_ms = list(retry_delays_ms[:MAX_RETRY_LEVELS])

    @property
    def levels(self) -> int:
        return len(self.retry_delays_ms)

    @staticmethod
    def retry_queue(level: int) -> str:
        return f"{DLQ_RETRY_QUEUE_PREFIX}{level}"

    @staticmethod
    def retry_routing_key(level: int) -> str:
        return f"retry.{level}"

    def delay_for(self, level: int) -> int:
        return self.retry_delays_ms[min(level, self.levels) - 1]

    async def declare(self, transport: Transport) -> None:
        await transport.declare_exchange(DLQ_DLX_EXCHANGE, "direct")
        await transport.declare_exchange(DLQ_RETRY_EXCHANGE, "direct")

        await transport.declare_queue(
            DLQ_MAIN_QUEUE,
            dead_letter_exchange=DLQ_DLX_EXCHANGE,
            dead_letter_routing_key=DLQ_DEAD_ROUTING_KEY,
        )

        await transport.declare_queue(DLQ_DEAD_LETTER_QUEUE)
        await transport.bind_queue(DLQ_DEAD_LETTER_QUEUE, DLQ_DLX_EXCHANGE, DLQ_DEAD_ROUTING_KEY)

        # Retry buffers dead-letter back to the main queue when their TTL expires
        for level, delay_ms in enumerate(self.retry_delays_ms, start=1):
            queue = self.retry_queue(level)
            await transport.declare_queue(
                queue,
                dead_letter_exchange=DEFAULT_EXCHANGE,
                dead_letter_routing_key=DLQ_MAIN_QUEUE,
                message_ttl_ms=delay_ms,
            )
            await transport.bind_queue(queue, DLQ_RETRY_EXCHANGE, self.retry_routing_key(level))


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class RetryDeadLetterPipeline:
    """
    Consumer pipeline with timed retry buffers and a dead-letter store.

    Usage:
        pipeline = RetryDeadLetterPipeline(transport, clock=clock)
        await pipeline.start_consuming({"failureMode": "always", "maxRetries": 2})
        message = await pipeline.send_message({"orderId": 42})
    """

    def __init__(
        self,
        transport: Transport,
        clock: Clock | None = None,
        store: RecordStore[DlqMessage] | None = None,
        retry_delays_ms: list[int] | None = None,
        rng: random.Random | None = None,
    ):
        settings = get_settings()
        self._transport = transport
        self._clock = clock or SystemClock()
        self._store = store or InMemoryRecordStore(DLQ_MESSAGE_LIMIT)
        self._topology = RetryTopology(retry_delays_ms or settings.dlq.DLQ_RETRY_DELAYS_MS)
        self._policy = FailurePolicy(rng)
        self._publish_attempts = settings.dlq.DLQ_PUBLISH_ATTEMPTS
        self._metrics = get_metrics_collector()

        self._config = DlqConfig.from_settings()
        self._initialized = False
        self._consuming = False
        self._consumer_tags: list[str] = []
        self._attempt_counts: dict[str, int] = {}
        self._reset_stats()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Declare the pipeline topology.

        STAGE-DLQ.0: Topology setup (idempotent)
        """
        if self._initialized:
            return
        await self._topology.declare(self._transport)
        self._initialized = True
        logger.info("DLQ topology initialized", stage="DLQ.0", retry_levels=self._topology.levels)

    async def start_consuming(self, config: DlqConfig | dict[str, Any] | None = None) -> bool:
        """
        Start the main-queue consumer with ``config``.

        Returns:
            False if the pipeline was already consuming (config is not changed)

        Raises:
            ConfigurationError: If config is invalid (nothing is started)
        """
        resolved = DlqConfig.resolve(config)
        if self._consuming:
            logger.info("DLQ consumer already running", stage="DLQ.1")
            return False

        await self.initialize()
        self._config = resolved
        self._consuming = True
        self._consumer_tags = [
            await self._transport.consume(DLQ_MAIN_QUEUE, self._handle_delivery),
            # Drains parked messages; tracking already happened on nack
            await self._transport.consume(DLQ_DEAD_LETTER_QUEUE, self._ack_dead_letter),
        ]
        logger.info(
            "DLQ consumer started",
            stage="DLQ.1",
            failure_mode=resolved.failure_mode.value,
            max_retries=resolved.max_retries,
        )
        return True

    async def stop_consuming(self) -> None:
        """Cancel the consumers. Idempotent; in-flight deliveries go back to their queue."""
        self._consuming = False
        tags, self._consumer_tags = self._consumer_tags, []
        for tag in tags:
            await self._transport.cancel(tag)
        if tags:
            logger.info("DLQ consumer stopped", stage="DLQ.1")

    def is_consuming(self) -> bool:
        return self._consuming

    @property
    def config(self) -> DlqConfig:
        return self._config

    # =========================================================================
    # Producing
    # =========================================================================

    async def send_message(self, payload: dict[str, Any] | None = None) -> DlqMessage:
        """
        Submit a work item to the main queue and start tracking it.

        Raises:
            TransportUnavailableError: If the broker stays unavailable after
                the publish retries (nothing is tracked)
        """
        await self.initialize()
        payload = dict(payload or {})
        msg_id = generate_id("MSG", self._clock)

        await self._publish_to_main(msg_id, payload)

        message = DlqMessage(
            id=msg_id,
            payload=payload,
            status=DlqStatus.PROCESSING,
            queue=DLQ_MAIN_QUEUE,
            retry_count=0,
            max_retries=self._config.max_retries,
            created_at=self._clock.now_iso(),
        )
        await self._store.add(message)
        logger.info("DLQ message sent", stage="DLQ.2", message_id=msg_id)
        return message.model_copy(deep=True)

    async def send_batch(self, count: int, payload: dict[str, Any] | None = None) -> BatchResult:
        ids = []
        for i in range(count):
            message = await self.send_message({**(payload or {}), "batchIndex": i + 1, "batchTotal": count})
            ids.append(message.id)
        return BatchResult(sent=len(ids), ids=ids)

    async def _publish_to_main(self, msg_id: str, payload: dict[str, Any]) -> None:
        content = {"id": msg_id, **payload, "timestamp": self._clock.now_iso()}
        await publish_with_retry(
            self._clock,
            self._publish_attempts,
            self._transport.send_to_queue,
            DLQ_MAIN_QUEUE,
            content,
            PublishOptions(persistent=True, headers={HEADER_RETRY_COUNT: 0}, message_id=msg_id),
        )

    # =========================================================================
    # Consuming
    # =========================================================================

    async def _handle_delivery(self, delivery: Delivery) -> None:
        msg_id = str(delivery.payload.get("id", ""))
        retry_count = int(delivery.headers.get(HEADER_RETRY_COUNT) or 0)
        config = self._config

        attempt = self._attempt_counts.get(msg_id, 0) + 1
        self._attempt_counts[msg_id] = attempt

        await self._update(
            msg_id,
            status=DlqStatus.PROCESSING,
            retry_count=retry_count,
            last_attempt_at=self._clock.now_iso(),
        )

        await self._clock.sleep(config.processing_delay_ms)

        if self._abandoned(delivery):
            self._rollback_attempt(msg_id, attempt)
            await self._release_abandoned(delivery, msg_id)
            return

        if not self._policy.should_fail(config, attempt):
            await delivery.ack()
            await self._update(msg_id, status=DlqStatus.COMPLETED)
            self._processed += 1
            self._attempt_counts.pop(msg_id, None)
            self._metrics.record_dlq_event("processed")
            logger.info(f"Message {msg_id}: processed successfully (attempt {attempt})", stage="DLQ.3")
            return

        error = self._policy.failure_reason(attempt)
        if retry_count < config.max_retries:
            if not await self._schedule_retry(delivery, msg_id, retry_count, error):
                return
        elif not await self._dead_letter(delivery, msg_id, retry_count, error, config.max_retries):
            return

        self._failed += 1
        self._metrics.record_dlq_event("failed")

    async def _schedule_retry(self, delivery: Delivery, msg_id: str, retry_count: int, error: str) -> bool:
        level = min(retry_count + 1, self._topology.levels)
        delay_ms = self._topology.delay_for(level)
        headers = {**delivery.headers, HEADER_RETRY_COUNT: retry_count + 1, HEADER_LAST_ERROR: error}

        async def publish_unless_abandoned(*args: Any, **kwargs: Any) -> bool:
            if self._abandoned(delivery):
                return False
            return await self._transport.publish(*args, **kwargs)

        try:
            published = await publish_with_retry(
                self._clock,
                self._publish_attempts,
                publish_unless_abandoned,
                DLQ_RETRY_EXCHANGE,
                self._topology.retry_routing_key(level),
                delivery.payload,
                PublishOptions(persistent=True, headers=headers, message_id=delivery.message_id),
            )
        except TransportError as e:
            # Keep the item on the main queue; it is picked up again later
            logger.warning(
                f"Message {msg_id}: retry publish failed, requeueing",
                stage="DLQ.4",
                error=e.message,
            )
            await delivery.nack(requeue=True)
            return False

        if not published:
            # Consumer stopped during publish backoff
            self._rollback_attempt(msg_id, self._attempt_counts.get(msg_id, 0))
            await self._release_abandoned(delivery, msg_id)
            return False

        await delivery.ack()

        message = await self._store.get(msg_id)
        history = list(message.retry_history) if message else []
        history.append(
            RetryHistoryEntry(
                attempt=retry_count + 1,
                timestamp=self._clock.now_iso(),
                delay_ms=delay_ms,
                error=error,
            )
        )
        await self._update(
            msg_id,
            status=DlqStatus.for_retry_level(retry_count + 1),
            error=error,
            retry_history=history,
        )
        self._retried += 1
        self._metrics.record_dlq_event("retried")
        logger.info(
            f"Message {msg_id}: retry {retry_count + 1}/{self._config.max_retries} (wait {delay_ms}ms)",
            stage="DLQ.4",
        )
        return True

    async def _dead_letter(
        self, delivery: Delivery, msg_id: str, retry_count: int, error: str, max_retries: int
    ) -> bool:
        if self._abandoned(delivery):
            self._rollback_attempt(msg_id, self._attempt_counts.get(msg_id, 0))
            await self._release_abandoned(delivery, msg_id)
            return False

        await delivery.nack(requeue=False)

        message = await self._store.get(msg_id)
        history = list(message.retry_history) if message else []
        history.append(
            RetryHistoryEntry(
                attempt=retry_count + 1,
                timestamp=self._clock.now_iso(),
                delay_ms=0,
                error=f"DEAD LETTERED: {error}",
            )
        )
        await self._update(
            msg_id,
            status=DlqStatus.DEAD,
            error=f"Max retries ({max_retries}) exceeded. Last error: {error}",
            dead_at=self._clock.now_iso(),
            retry_history=history,
        )
        self._dead_lettered += 1
        self._metrics.record_dlq_event("dead_lettered")
        logger.warning(f"Message {msg_id}: DEAD LETTERED after {retry_count + 1} attempts", stage="DLQ.5")
        return True

    def _abandoned(self, delivery: Delivery) -> bool:
        return delivery.settled or not self._consuming

    def _rollback_attempt(self, msg_id: str, attempt: int) -> None:
        if attempt > 1:
            self._attempt_counts[msg_id] = attempt - 1
        else:
            self._attempt_counts.pop(msg_id, None)

    async def _release_abandoned(self, delivery: Delivery, msg_id: str) -> None:
        # A cancelled consumer has already requeued the delivery
        if not delivery.settled:
            await delivery.nack(requeue=True)
        logger.info(f"Message {msg_id}: consumer stopped mid-attempt, left on main queue", stage="DLQ.3")

    async def _ack_dead_letter(self, delivery: Delivery) -> None:
        await delivery.ack()

    # =========================================================================
    # Dead-letter management
    # =========================================================================

    async def retry_dead_message(self, msg_id: str) -> bool:
        """
        Replay a dead item through the main queue with a fresh retry budget.

        Returns:
            False if no dead item has this id
        """
        message = await self._store.get(msg_id)
        if message is None or not message.is_dead:
            return False

        await self._publish_to_main(msg_id, message.payload)

        self._attempt_counts.pop(msg_id, None)
        message.status = DlqStatus.PROCESSING
        message.retry_count = 0
        message.dead_at = None
        message.error = None
        message.retry_history.append(
            RetryHistoryEntry(attempt=0, timestamp=self._clock.now_iso(), delay_ms=0, error=MANUAL_RETRY_NOTE)
        )
        await self._store.save(message)
        self._metrics.record_dlq_event("replayed")
        logger.info(f"Message {msg_id}: manually replayed from DLQ", stage="DLQ.6")
        return True

    async def retry_all_dead(self) -> int:
        dead = await self._store.list(lambda m: m.is_dead)
        count = 0
        for message in dead:
            if await self.retry_dead_message(message.id):
                count += 1
        return count

    async def discard_dead_message(self, msg_id: str) -> bool:
        message = await self._store.get(msg_id)
        if message is None or not message.is_dead:
            return False
        await self._store.remove(msg_id)
        self._attempt_counts.pop(msg_id, None)
        self._metrics.record_dlq_event("discarded")
        return True

    async def discard_all_dead(self) -> int:
        dead = await self._store.list(lambda m: m.is_dead)
        for message in dead:
            await self._store.remove(message.id)
            self._attempt_counts.pop(message.id, None)
            self._metrics.record_dlq_event("discarded")
        return len(dead)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_messages(self) -> list[DlqMessage]:
        """Tracked items, newest first (copies)."""
        return [m.model_copy(deep=True) for m in await self._store.list()]

    async def get_message(self, msg_id: str) -> DlqMessage | None:
        message = await self._store.get(msg_id)
        return message.model_copy(deep=True) if message else None

    async def get_stats(self) -> DlqStats:
        await self.initialize()
        main = await self._transport.queue_stats(DLQ_MAIN_QUEUE)
        dead = await self._transport.queue_stats(DLQ_DEAD_LETTER_QUEUE)

        retry_queues = []
        for level, delay_ms in enumerate(self._topology.retry_delays_ms, start=1):
            name = self._topology.retry_queue(level)
            stats = await self._transport.queue_stats(name)
            retry_queues.append(RetryQueueDepth(name=name, ttl_ms=delay_ms, messages=stats.message_count))

        return DlqStats(
            main_queue=QueueDepth(messages=main.message_count, consumers=main.consumer_count),
            retry_queues=retry_queues,
            dlq=DeadLetterDepth(messages=dead.message_count),
            processed=self._processed,
            failed=self._failed,
            retried=self._retried,
            dead_lettered=self._dead_lettered,
        )

    async def clear_all(self) -> None:
        """Forget tracked items, counters and attempt counts."""
        await self._store.clear()
        self._attempt_counts.clear()
        self._reset_stats()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _reset_stats(self) -> None:
        self._processed = 0
        self._failed = 0
        self._retried = 0
        self._dead_lettered = 0

    async def _update(self, msg_id: str, **changes: Any) -> None:
        message = await self._store.get(msg_id)
        if message is None:
            return
        for field_name, value in changes.items():
            setattr(message, field_name, value)
        await self._store.save(message)
