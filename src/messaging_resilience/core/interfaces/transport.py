"""
Transport Interface

Minimal broker abstraction consumed by the DLQ pipeline, the outbox relay
and the saga orchestrator. The shape follows AMQP semantics (exchanges,
routing keys, dead-letter exchanges, per-queue TTL) without binding the
engines to a wire-level client.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

# The default exchange routes a message straight to the queue named by the routing key.
DEFAULT_EXCHANGE = ""


@dataclass
class PublishOptions:
    """Per-message publish options."""
    persistent: bool = True
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None


@dataclass
class QueueStats:
    """Depth and consumer count of a queue."""
    message_count: int = 0
    consumer_count: int = 0


class Delivery(ABC):
    """
    A message handed to a consumer.

    Exactly one of ack() / nack() settles a delivery; settling twice is a no-op.
    A delivery is also settled when its consumer is cancelled, in which case
    the transport has already put the message back on its queue.
    """

    queue: str
    payload: dict[str, Any]
    headers: dict[str, Any]
    message_id: str | None
    settled: bool

    @abstractmethod
    async def ack(self) -> None:
        """Acknowledge: the message is removed for good."""

    @abstractmethod
    async def nack(self, requeue: bool = False) -> None:
        """
        Reject the message.

        requeue=True puts it back at the head of its queue; requeue=False
        dead-letters it through the queue's dead-letter exchange (or drops it
        if the queue has none).
        """


MessageHandler = Callable[[Delivery], Awaitable[None]]


class Transport(ABC):
    """
    Abstract base class for transport implementations.
    """

    @abstractmethod
    async def declare_exchange(self, name: str, kind: str = "direct") -> None:
        """Declare an exchange (``direct`` or ``topic``). Idempotent."""

    @abstractmethod
    async def declare_queue(
        self,
        name: str,
        dead_letter_exchange: str | None = None,
        dead_letter_routing_key: str | None = None,
        message_ttl_ms: float | None = None,
    ) -> None:
        """
        Declare a queue. Idempotent.

        Args:
            name: Queue name
            dead_letter_exchange: Where rejected/expired messages go
            dead_letter_routing_key: Routing key used when dead-lettering
                (defaults to the message's original routing key)
            message_ttl_ms: Messages expire (and are dead-lettered) after this long
        """

    @abstractmethod
    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        """Bind a queue to an exchange with a routing key / pattern."""

    @abstractmethod
    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: dict[str, Any],
        options: PublishOptions | None = None,
    ) -> bool:
        """
        Publish a message.

        Returns:
            True once the transport accepted the message.

        Raises:
            TransportUnavailableError: If the broker cannot accept it
        """

    async def send_to_queue(
        self,
        queue: str,
        payload: dict[str, Any],
        options: PublishOptions | None = None,
    ) -> bool:
        """Publish straight to a queue through the default exchange."""
        return await self.publish(DEFAULT_EXCHANGE, queue, payload, options)

    @abstractmethod
    async def consume(self, queue: str, handler: MessageHandler) -> str:
        """
        Start consuming a queue.

        Returns:
            Consumer tag used to cancel the consumer.
        """

    @abstractmethod
    async def cancel(self, consumer_tag: str) -> bool:
        """Cancel a consumer. Returns False if the tag is unknown."""

    @abstractmethod
    async def queue_stats(self, queue: str) -> QueueStats:
        """Current depth and consumer count of a queue."""

    @abstractmethod
    async def close(self) -> None:
        """Close the transport."""
