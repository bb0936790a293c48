"""
Backpressure Controller

Architecture:
    BackpressureController (Public API)
        ├── Producer tick (every 1000/producerRatePerSec ms) -> produce()
        ├── Consumer tick (every 1000/consumerRatePerSec ms) -> up to prefetchCount items
        ├── OverflowPolicy (one handler per strategy / drop policy)
        ├── ThroughputWindow x2 (rolling produced / consumed rates)
        └── WaitTimeSamples (last 200 queue wait times, avg + p95)

Overflow (queue full on produce):
    drop + oldest  -> evict the head (DROPPED), enqueue the new message
    drop + newest  -> the new message is DROPPED, queue unchanged
    reject         -> the new message is REJECTED (429-style), queue unchanged
    block          -> count a blocked event, retry once after 500ms,
                      drop the message if the queue is still full

All state is touched only from the controller's own timer callbacks and
its synchronous public methods, so no locking is needed.
"""

import math
from collections import deque
from collections.abc import Callable
from typing import Any

from messaging_resilience.core.config.constants import (
    BACKPRESSURE_LOG_LIMIT,
    BLOCK_RETRY_DELAY_MS,
    THROUGHPUT_RETENTION_MS,
    THROUGHPUT_WINDOW_MS,
    WAIT_SAMPLE_LIMIT,
    BackpressureMessageStatus,
    BackpressureStrategy,
    DropPolicy,
)
from messaging_resilience.core.identifiers import generate_id
from messaging_resilience.core.interfaces.scheduling import Clock, ScheduledTask, Scheduler, TaskRegistry
from messaging_resilience.core.interfaces.store import BoundedLog
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.core.models.backpressure import (
    BackpressureConfig,
    BackpressureMessage,
    BackpressureStats,
)
from messaging_resilience.infrastructure.monitoring.metrics_collector import get_metrics_collector
from messaging_resilience.infrastructure.scheduling.asyncio_scheduler import AsyncioScheduler, SystemClock

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: ROLLING STATISTICS
# =============================================================================


class ThroughputWindow:
    """
    Event timestamps for rolling rate calculation.

    Timestamps older than ``retention_ms`` are trimmed on every record().
    """

    def __init__(self, retention_ms: float = THROUGHPUT_RETENTION_MS):
        self._retention_ms = retention_ms
        self._times: deque[float] = deque()

    def record(self, now_ms: float) -> None:
        self._times.append(now_ms)
        cutoff = now_ms - self._retention_ms
        while self._times and self._times[0] < cutoff:
            self._times.popleft()

    def rate_per_sec(self, now_ms: float, window_ms: float = THROUGHPUT_WINDOW_MS) -> float:
        recent = sum(1 for t in self._times if now_ms - t < window_ms)
        return round(recent / (window_ms / 1000.0), 1)

    def clear(self) -> None:
        self._times.clear()


class WaitTimeSamples:
    """Most recent queue wait times (ms)."""

    def __init__(self, max_samples: int = WAIT_SAMPLE_LIMIT):
        self._samples: deque[float] = deque(maxlen=max_samples)

    def add(self, wait_ms: float) -> None:
        self._samples.append(wait_ms)

    @property
    def average(self) -> float:
        if not self._samples:
            return 0
        return round(sum(self._samples) / len(self._samples))

    @property
    def p95(self) -> float:
        if not self._samples:
            return 0
        ordered = sorted(self._samples)
        return round(ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)])

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)


# =============================================================================
# LAYER 2: BACKPRESSURE CONTROLLER
# =============================================================================


class BackpressureController:
    """
    Simulated producer/consumer pair over a bounded in-memory queue.

    Usage:
        controller = BackpressureController(clock=clock, scheduler=scheduler)
        controller.start({"maxQueueDepth": 5, "strategy": "reject"})
        stats = controller.get_stats()
    """

    def __init__(self, clock: Clock | None = None, scheduler: Scheduler | None = None):
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._metrics = get_metrics_collector()
        self._tasks = TaskRegistry("backpressure")

        self._config = BackpressureConfig.from_settings()
        self._running = False
        self._queue: deque[BackpressureMessage] = deque()
        self._log: BoundedLog[BackpressureMessage] = BoundedLog(BACKPRESSURE_LOG_LIMIT)
        self._blocked_pending: dict[str, tuple[BackpressureMessage, ScheduledTask]] = {}
        self._produced_times = ThroughputWindow()
        self._consumed_times = ThroughputWindow()
        self._waits = WaitTimeSamples()
        self._reset_counters()

        self._overflow_handlers: dict[BackpressureStrategy, Callable[[BackpressureMessage], None]] = {
            BackpressureStrategy.DROP: self._overflow_drop,
            BackpressureStrategy.REJECT: self._overflow_reject,
            BackpressureStrategy.BLOCK: self._overflow_block,
        }

    # =========================================================================
    # Control
    # =========================================================================

    def start(self, config: BackpressureConfig | dict[str, Any] | None = None) -> bool:
        """
        Start the producer and consumer timers.

        A partial config is merged onto the current one.

        Returns:
            False if already running (config is not changed)

        Raises:
            ConfigurationError: If the merged config is invalid (nothing starts)
        """
        if self._running:
            return False

        if isinstance(config, BackpressureConfig):
            self._config = config
        elif config:
            self._config = self._config.merged(config)

        self._running = True
        self._tasks.register(
            self._scheduler.every(self._config.producer_interval_ms, self._producer_tick, name="bp.producer")
        )
        self._tasks.register(
            self._scheduler.every(self._config.consumer_interval_ms, self._consumer_tick, name="bp.consumer")
        )
        logger.info(
            f"[BP] Starting - producer: {self._config.producer_rate_per_sec}/s, "
            f"consumer: {self._config.consumer_rate_per_sec}/s, strategy: {self._config.strategy.value}",
            stage="BP.1",
        )
        return True

    def stop(self) -> None:
        """
        Cancel every timer of the controller. Idempotent.

        Messages waiting on a block retry are dropped.
        """
        was_running = self._running
        self._running = False
        self._tasks.cancel_all()

        pending, self._blocked_pending = self._blocked_pending, {}
        for message, _ in pending.values():
            self._mark_dropped(message)

        if was_running or pending:
            logger.info("[BP] Stopped", stage="BP.1", dropped_blocked=len(pending))

    def clear(self) -> None:
        self.stop()
        self._queue.clear()
        self._log.clear()
        self._produced_times.clear()
        self._consumed_times.clear()
        self._waits.clear()
        self._reset_counters()
        self._metrics.set_backpressure_depth(0)
        logger.info("[BP] Cleared", stage="BP.1")

    def update_config(self, partial: dict[str, Any] | None = None, **overrides: Any) -> BackpressureConfig:
        """
        Merge ``partial`` into the config; a running controller restarts with it.

        Lowering ``maxQueueDepth`` below the current depth drops the oldest
        queued messages, whatever the strategy.

        Raises:
            ConfigurationError: If the merged config is invalid (state unchanged)
        """
        new_config = self._config.merged(partial, **overrides)
        was_running = self._running
        if was_running:
            self.stop()
        self._config = new_config
        self._trim_to_depth()
        if was_running:
            self.start()
        logger.info("[BP] Config updated", stage="BP.1", config=new_config.to_dict())
        return new_config

    def _trim_to_depth(self) -> None:
        while len(self._queue) > self._config.max_queue_depth:
            dropped = self._queue.popleft()
            self._mark_dropped(dropped)
            logger.warning(f"[BP] DROPPED (over max depth) {dropped.id}", stage="BP.3")
        self._metrics.set_backpressure_depth(len(self._queue))

    def is_running(self) -> bool:
        return self._running

    @property
    def config(self) -> BackpressureConfig:
        return self._config

    # =========================================================================
    # Producer
    # =========================================================================

    def _producer_tick(self) -> None:
        if not self._running:
            return
        self.produce()

    def produce(self, payload: str | None = None) -> BackpressureMessage:
        """
        Produce one message and apply the overflow policy if the queue is full.

        Returns:
            A copy of the message as it stands after the produce
        """
        now_ms = self._clock.now_ms()
        message = BackpressureMessage(
            id=generate_id("MSG", self._clock, suffix_length=3),
            payload=payload or f"Order-{self._produced + 1:04d}",
            produced_at=self._clock.now_iso(),
            produced_at_ms=now_ms,
        )

        self._produced += 1
        self._produced_times.record(now_ms)
        self._metrics.record_backpressure_event("produced")

        if len(self._queue) >= self._config.max_queue_depth:
            self._overflow_handlers[self._config.strategy](message)
        else:
            self._queue.append(message)
            logger.debug(f"[BP] Produced {message.id} | queue: {len(self._queue)}", stage="BP.2")

        self._metrics.set_backpressure_depth(len(self._queue))
        return message.model_copy()

    def _overflow_drop(self, message: BackpressureMessage) -> None:
        if self._config.drop_policy == DropPolicy.NEWEST:
            self._mark_dropped(message)
            logger.warning(f"[BP] DROPPED (newest) {message.id}", stage="BP.3")
            return

        # Evict from the head until the new message fits
        while self._queue and len(self._queue) >= self._config.max_queue_depth:
            dropped = self._queue.popleft()
            self._mark_dropped(dropped)
            logger.warning(f"[BP] DROPPED (oldest) {dropped.id}", stage="BP.3")
        self._queue.append(message)

    def _overflow_reject(self, message: BackpressureMessage) -> None:
        message.status = BackpressureMessageStatus.REJECTED
        message.dropped_at = self._clock.now_iso()
        self._log.append(message)
        self._rejected += 1
        self._metrics.record_backpressure_event("rejected")
        logger.warning(f"[BP] REJECTED {message.id} (429 - queue full)", stage="BP.3")

    def _overflow_block(self, message: BackpressureMessage) -> None:
        self._blocked += 1
        self._metrics.record_backpressure_event("blocked")
        logger.warning(f"[BP] BLOCKED producer - queue full ({len(self._queue)})", stage="BP.3")

        def retry() -> None:
            if self._blocked_pending.pop(message.id, None) is None:
                return
            if len(self._queue) < self._config.max_queue_depth:
                self._queue.append(message)
                self._metrics.set_backpressure_depth(len(self._queue))
            else:
                # One retry only
                self._mark_dropped(message)

        task = self._tasks.register(
            self._scheduler.after(BLOCK_RETRY_DELAY_MS, retry, name="bp.block-retry")
        )
        self._blocked_pending[message.id] = (message, task)

    # =========================================================================
    # Consumer
    # =========================================================================

    def _consumer_tick(self) -> None:
        if not self._running:
            return
        batch = min(self._config.prefetch_count, len(self._queue))
        for _ in range(batch):
            self._consume(self._queue.popleft())
        if batch:
            self._metrics.set_backpressure_depth(len(self._queue))

    def _consume(self, message: BackpressureMessage) -> None:
        now_ms = self._clock.now_ms()
        message.status = BackpressureMessageStatus.DONE
        message.processed_at = self._clock.now_iso()
        message.wait_ms = now_ms - message.produced_at_ms

        self._consumed += 1
        self._waits.add(message.wait_ms)
        self._consumed_times.record(now_ms)
        self._log.append(message)
        self._metrics.record_backpressure_event("consumed")
        self._metrics.record_backpressure_wait(message.wait_ms)
        logger.debug(f"[BP] Consumed {message.id} (wait: {message.wait_ms:.0f}ms)", stage="BP.4")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_stats(self) -> BackpressureStats:
        now_ms = self._clock.now_ms()
        return BackpressureStats(
            is_running=self._running,
            queue_depth=len(self._queue),
            max_queue_depth=self._config.max_queue_depth,
            produced=self._produced,
            consumed=self._consumed,
            dropped=self._dropped,
            rejected=self._rejected,
            blocked=self._blocked,
            throughput_produced=self._produced_times.rate_per_sec(now_ms),
            throughput_consumed=self._consumed_times.rate_per_sec(now_ms),
            avg_wait_ms=self._waits.average,
            p95_wait_ms=self._waits.p95,
            config=self._config,
        )

    def get_message_log(self) -> list[BackpressureMessage]:
        """Finished messages (done/dropped/rejected), newest first."""
        return [m.model_copy() for m in self._log]

    def get_queue_snapshot(self) -> list[BackpressureMessage]:
        """Queued messages, head first."""
        return [m.model_copy() for m in self._queue]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _reset_counters(self) -> None:
        self._produced = 0
        self._consumed = 0
        self._dropped = 0
        self._rejected = 0
        self._blocked = 0

    def _mark_dropped(self, message: BackpressureMessage) -> None:
        message.status = BackpressureMessageStatus.DROPPED
        message.dropped_at = self._clock.now_iso()
        self._log.append(message)
        self._dropped += 1
        self._metrics.record_backpressure_event("dropped")
