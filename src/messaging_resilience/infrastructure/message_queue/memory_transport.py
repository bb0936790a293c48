"""
In-Memory Transport - AMQP-style broker simulation

Architecture:
    InMemoryTransport (Public API)
        ├── MessageSerializer (orjson payload encoding/decoding)
        ├── ExchangeRouter (direct / topic routing, default exchange)
        ├── QueueState (ready messages, TTL expiry, dead-letter settings)
        └── ConsumerDispatcher (one unacked delivery per consumer)

Semantics mirrored from AMQP 0-9-1:
    - The default exchange ("") routes to the queue named by the routing key
    - Topic bindings support "*" (one word) and "#" (zero or more words)
    - A queue with message_ttl_ms dead-letters expired messages to its DLX
    - nack(requeue=False) dead-letters; nack(requeue=True) puts the message
      back at the head of its queue
    - Unroutable messages are dropped (no mandatory flag)

Deliveries are dispatched through the Scheduler (after(0)), so the same
transport runs on the asyncio loop or on a VirtualClock.
"""

import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import orjson

from messaging_resilience.core.config.constants import HEADER_DEATH_REASON
from messaging_resilience.core.exceptions import MessageEncodingError, TransportError, TransportUnavailableError
from messaging_resilience.core.interfaces.scheduling import ScheduledTask, Scheduler
from messaging_resilience.core.interfaces.transport import (
    DEFAULT_EXCHANGE,
    Delivery,
    MessageHandler,
    PublishOptions,
    QueueStats,
    Transport,
)
from messaging_resilience.core.logging.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: MESSAGE SERIALIZATION
# =============================================================================


class MessageSerializer:
    """
    Serializes message payloads to bytes and back.

    Payloads cross the transport as bytes, as they would on a real broker,
    so consumers never share mutable state with producers.
    """

    @staticmethod
    def serialize(payload: dict[str, Any]) -> bytes:
        """
        Raises:
            MessageEncodingError: If the payload is not JSON serializable
        """
        try:
            return orjson.dumps(payload)
        except orjson.JSONEncodeError as e:
            raise MessageEncodingError.from_exception(e, message=f"Payload is not JSON serializable: {e}") from e

    @staticmethod
    def deserialize(body: bytes) -> dict[str, Any]:
        return orjson.loads(body)


@dataclass
class StoredMessage:
    """A message sitting in a queue."""
    body: bytes
    exchange: str
    routing_key: str
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    persistent: bool = True
    redelivered: bool = False
    expiry: ScheduledTask | None = None

    def copy_for_route(self) -> "StoredMessage":
        return StoredMessage(
            body=self.body,
            exchange=self.exchange,
            routing_key=self.routing_key,
            headers=dict(self.headers),
            message_id=self.message_id,
            persistent=self.persistent,
        )


# =============================================================================
# LAYER 2: EXCHANGE ROUTING
# =============================================================================


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    AMQP topic match.

    >>> topic_matches("order.*", "order.created")
    True
    >>> topic_matches("order.#", "order")
    True
    """
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


class ExchangeRouter:
    """Resolves (exchange, routing key) to destination queue names."""

    def __init__(self):
        self._kinds: dict[str, str] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = {}

    def declare(self, name: str, kind: str) -> None:
        if kind not in ("direct", "topic"):
            raise TransportError(
                f"Unsupported exchange type: {kind}",
                details={"exchange": name, "kind": kind},
            )
        existing = self._kinds.get(name)
        if existing is not None and existing != kind:
            raise TransportError(
                f"Exchange {name} already declared as {existing}",
                details={"exchange": name, "kind": kind},
            )
        self._kinds[name] = kind
        self._bindings.setdefault(name, [])

    def bind(self, exchange: str, queue: str, routing_key: str) -> None:
        if exchange not in self._kinds:
            raise TransportError(f"Unknown exchange: {exchange}", details={"exchange": exchange})
        binding = (queue, routing_key)
        if binding not in self._bindings[exchange]:
            self._bindings[exchange].append(binding)

    def route(self, exchange: str, routing_key: str, queues: dict[str, "QueueState"]) -> list[str]:
        if exchange == DEFAULT_EXCHANGE:
            return [routing_key] if routing_key in queues else []

        kind = self._kinds.get(exchange)
        if kind is None:
            raise TransportError(f"Unknown exchange: {exchange}", details={"exchange": exchange})

        destinations: list[str] = []
        for queue, key in self._bindings[exchange]:
            matched = topic_matches(key, routing_key) if kind == "topic" else key == routing_key
            if matched and queue not in destinations:
                destinations.append(queue)
        return destinations

    def clear(self) -> None:
        self._kinds.clear()
        self._bindings.clear()


# =============================================================================
# LAYER 3: QUEUE STATE
# =============================================================================


@dataclass
class QueueState:
    name: str
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    message_ttl_ms: float | None = None
    messages: deque[StoredMessage] = field(default_factory=deque)
    dispatch_scheduled: bool = False


# =============================================================================
# LAYER 4: CONSUMER DISPATCH
# =============================================================================


class InMemoryDelivery(Delivery):
    """Delivery handed to a consumer handler."""

    def __init__(self, transport: "InMemoryTransport", consumer: "Consumer", message: StoredMessage):
        self._transport = transport
        self._consumer = consumer
        self._message = message
        self.queue = consumer.queue
        self.payload = MessageSerializer.deserialize(message.body)
        self.headers = dict(message.headers)
        self.message_id = message.message_id
        self.routing_key = message.routing_key
        self.redelivered = message.redelivered
        self.settled = False

    async def ack(self) -> None:
        if self._settle():
            self._transport._release(self._consumer)

    async def nack(self, requeue: bool = False) -> None:
        if not self._settle():
            return
        if requeue:
            self._transport._requeue(self.queue, self._message)
        else:
            self._transport._dead_letter(self.queue, self._message, reason="rejected")
        self._transport._release(self._consumer)

    def _settle(self) -> bool:
        if self.settled:
            return False
        self.settled = True
        return True


@dataclass
class Consumer:
    tag: str
    queue: str
    handler: MessageHandler
    unacked: InMemoryDelivery | None = None


# =============================================================================
# LAYER 5: PUBLIC API
# =============================================================================


class InMemoryTransport(Transport):
    """
    Single-process broker used by the engines in tests, demos and simulations.

    Usage:
        transport = InMemoryTransport(scheduler=clock)
        await transport.declare_queue("work")
        tag = await transport.consume("work", handler)
        await transport.send_to_queue("work", {"id": "MSG-1"})
    """

    def __init__(self, scheduler: Scheduler):
        self._scheduler = scheduler
        self._router = ExchangeRouter()
        self._queues: dict[str, QueueState] = {}
        self._consumers: dict[str, Consumer] = {}
        self._tag_seq = itertools.count(1)
        self._available = True
        self._closed = False

    # =========================================================================
    # Availability (outage simulation)
    # =========================================================================

    def set_available(self, available: bool) -> None:
        self._available = available
        logger.info(
            "Transport availability changed",
            stage="TRANSPORT.0",
            available=available,
        )

    @property
    def available(self) -> bool:
        return self._available

    # =========================================================================
    # Topology
    # =========================================================================

    async def declare_exchange(self, name: str, kind: str = "direct") -> None:
        self._router.declare(name, kind)

    async def declare_queue(
        self,
        name: str,
        dead_letter_exchange: str | None = None,
        dead_letter_routing_key: str | None = None,
        message_ttl_ms: float | None = None,
    ) -> None:
        if name in self._queues:
            return
        self._queues[name] = QueueState(
            name=name,
            dead_letter_exchange=dead_letter_exchange,
            dead_letter_routing_key=dead_letter_routing_key,
            message_ttl_ms=message_ttl_ms,
        )
        logger.debug("Queue declared", stage="TRANSPORT.1", queue=name, ttl_ms=message_ttl_ms)

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        self._require_queue(queue)
        self._router.bind(exchange, queue, routing_key)

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: dict[str, Any],
        options: PublishOptions | None = None,
    ) -> bool:
        if self._closed:
            raise TransportError("Transport is closed", details={"exchange": exchange})
        if not self._available:
            raise TransportUnavailableError(
                "Broker unavailable",
                details={"exchange": exchange, "routing_key": routing_key},
            )

        options = options or PublishOptions()
        message = StoredMessage(
            body=MessageSerializer.serialize(payload),
            exchange=exchange,
            routing_key=routing_key,
            headers=dict(options.headers),
            message_id=options.message_id,
            persistent=options.persistent,
        )
        self._route(exchange, routing_key, message)
        return True

    def _route(self, exchange: str, routing_key: str, message: StoredMessage) -> None:
        destinations = self._router.route(exchange, routing_key, self._queues)
        if not destinations:
            logger.debug(
                "Unroutable message dropped",
                stage="TRANSPORT.2",
                exchange=exchange,
                routing_key=routing_key,
            )
            return
        for index, queue_name in enumerate(destinations):
            # Each destination queue gets its own copy
            copy = message if index == 0 else message.copy_for_route()
            self._enqueue(self._queues[queue_name], copy)

    def _enqueue(self, queue: QueueState, message: StoredMessage, at_head: bool = False) -> None:
        if at_head:
            queue.messages.appendleft(message)
        else:
            queue.messages.append(message)

        if queue.message_ttl_ms is not None and message.expiry is None:
            message.expiry = self._scheduler.after(
                queue.message_ttl_ms,
                lambda: self._expire(queue.name, message),
                name=f"transport.ttl.{queue.name}",
            )
        self._schedule_dispatch(queue)

    def _expire(self, queue_name: str, message: StoredMessage) -> None:
        queue = self._queues.get(queue_name)
        if queue is None or message not in queue.messages:
            return
        queue.messages.remove(message)
        message.expiry = None
        self._dead_letter(queue_name, message, reason="expired")

    def _dead_letter(self, queue_name: str, message: StoredMessage, reason: str) -> None:
        queue = self._queues.get(queue_name)
        if queue is None or queue.dead_letter_exchange is None:
            logger.debug("Message discarded (no DLX)", stage="TRANSPORT.3", queue=queue_name, reason=reason)
            return

        routing_key = queue.dead_letter_routing_key or message.routing_key
        dead = message.copy_for_route()
        dead.exchange = queue.dead_letter_exchange
        dead.routing_key = routing_key
        dead.headers[HEADER_DEATH_REASON] = reason
        dead.headers["x-first-death-queue"] = dead.headers.get("x-first-death-queue", queue_name)
        logger.debug(
            "Message dead-lettered",
            stage="TRANSPORT.3",
            queue=queue_name,
            dlx=queue.dead_letter_exchange,
            routing_key=routing_key,
            reason=reason,
        )
        self._route(queue.dead_letter_exchange, routing_key, dead)

    def _requeue(self, queue_name: str, message: StoredMessage) -> None:
        queue = self._queues.get(queue_name)
        if queue is None:
            return
        message.redelivered = True
        self._enqueue(queue, message, at_head=True)

    # =========================================================================
    # Consuming
    # =========================================================================

    async def consume(self, queue: str, handler: MessageHandler) -> str:
        state = self._require_queue(queue)
        tag = f"ctag-{next(self._tag_seq)}"
        self._consumers[tag] = Consumer(tag=tag, queue=queue, handler=handler)
        logger.info("Consumer registered", stage="TRANSPORT.4", queue=queue, consumer_tag=tag)
        self._schedule_dispatch(state)
        return tag

    async def cancel(self, consumer_tag: str) -> bool:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return False

        # An unsettled delivery goes back to the head of its queue
        delivery = consumer.unacked
        if delivery is not None and not delivery.settled:
            delivery.settled = True
            self._requeue(consumer.queue, delivery._message)
        consumer.unacked = None
        logger.info("Consumer cancelled", stage="TRANSPORT.4", queue=consumer.queue, consumer_tag=consumer_tag)
        return True

    def _schedule_dispatch(self, queue: QueueState) -> None:
        if queue.dispatch_scheduled or not queue.messages:
            return
        if not any(c.queue == queue.name for c in self._consumers.values()):
            return
        queue.dispatch_scheduled = True
        self._scheduler.after(0, lambda: self._dispatch(queue.name), name=f"transport.dispatch.{queue.name}")

    async def _dispatch(self, queue_name: str) -> None:
        queue = self._queues.get(queue_name)
        if queue is None:
            return
        queue.dispatch_scheduled = False

        while queue.messages:
            consumer = self._free_consumer(queue_name)
            if consumer is None:
                return

            message = queue.messages.popleft()
            if message.expiry is not None:
                message.expiry.cancel()
                message.expiry = None

            delivery = InMemoryDelivery(self, consumer, message)
            consumer.unacked = delivery
            try:
                await consumer.handler(delivery)
            except Exception as e:
                logger.error(
                    f"Consumer handler failed on {queue_name}: {e}",
                    stage="TRANSPORT.ERR",
                    consumer_tag=consumer.tag,
                    exc_info=True,
                )
                await delivery.nack(requeue=False)

    def _free_consumer(self, queue_name: str) -> Consumer | None:
        for consumer in self._consumers.values():
            if consumer.queue == queue_name and consumer.unacked is None:
                return consumer
        return None

    def _release(self, consumer: Consumer) -> None:
        consumer.unacked = None
        queue = self._queues.get(consumer.queue)
        if queue is not None and consumer.tag in self._consumers:
            self._schedule_dispatch(queue)

    # =========================================================================
    # Inspection
    # =========================================================================

    async def queue_stats(self, queue: str) -> QueueStats:
        state = self._queues.get(queue)
        if state is None:
            return QueueStats()
        consumers = sum(1 for c in self._consumers.values() if c.queue == queue)
        return QueueStats(message_count=len(state.messages), consumer_count=consumers)

    def peek(self, queue: str) -> list[dict[str, Any]]:
        """Decoded payloads of the ready messages in ``queue`` (head first)."""
        state = self._queues.get(queue)
        if state is None:
            return []
        return [MessageSerializer.deserialize(m.body) for m in state.messages]

    def peek_headers(self, queue: str) -> list[dict[str, Any]]:
        state = self._queues.get(queue)
        if state is None:
            return []
        return [dict(m.headers) for m in state.messages]

    async def purge_queue(self, queue: str) -> int:
        state = self._queues.get(queue)
        if state is None:
            return 0
        count = len(state.messages)
        for message in state.messages:
            if message.expiry is not None:
                message.expiry.cancel()
        state.messages.clear()
        return count

    async def close(self) -> None:
        for tag in list(self._consumers):
            await self.cancel(tag)
        for name in list(self._queues):
            await self.purge_queue(name)
        self._closed = True
        logger.info("Transport closed", stage="TRANSPORT.5")

    def _require_queue(self, queue: str) -> QueueState:
        state = self._queues.get(queue)
        if state is None:
            raise TransportError(f"Unknown queue: {queue}", details={"queue": queue})
        return state
