"""
Unit Tests for InMemoryTransport

Tests exchange routing, consumer dispatch (one unacked delivery per
consumer), TTL dead-lettering, nack semantics and outage simulation.
"""

import pytest

from messaging_resilience.core.config.constants import HEADER_DEATH_REASON
from messaging_resilience.core.exceptions import MessageEncodingError, TransportError, TransportUnavailableError
from messaging_resilience.core.interfaces.transport import PublishOptions
from messaging_resilience.infrastructure.message_queue.memory_transport import (
    ExchangeRouter,
    MessageSerializer,
    topic_matches,
)


def collector(received, action="ack"):
    async def handler(delivery):
        received.append(delivery)
        if action == "ack":
            await delivery.ack()
        elif action == "nack":
            await delivery.nack(requeue=False)

    return handler


@pytest.mark.unit
class TestTopicMatching:
    @pytest.mark.parametrize(
        "pattern,key,expected",
        [
            ("order.*", "order.created", True),
            ("order.*", "order.created.v2", False),
            ("order.#", "order", True),
            ("order.#", "order.created.v2", True),
            ("#", "anything.at.all", True),
            ("*.created", "order.created", True),
            ("order.created", "order.cancelled", False),
        ],
    )
    def test_topic_matches(self, pattern, key, expected):
        assert topic_matches(pattern, key) is expected

    def test_router_rejects_unknown_kind(self):
        with pytest.raises(TransportError):
            ExchangeRouter().declare("x", "fanout")

    def test_router_rejects_redeclare_with_other_kind(self):
        router = ExchangeRouter()
        router.declare("events", "topic")
        with pytest.raises(TransportError):
            router.declare("events", "direct")

    def test_serializer_round_trip(self):
        body = MessageSerializer.serialize({"orderId": "ORD-1", "amount": 9.5})
        assert isinstance(body, bytes)
        assert MessageSerializer.deserialize(body)["amount"] == 9.5

    def test_serializer_rejects_unencodable_payload(self):
        with pytest.raises(MessageEncodingError):
            MessageSerializer.serialize({"tags": {"a", "b"}})

    @pytest.mark.asyncio
    async def test_unencodable_publish_enqueues_nothing(self, transport):
        await transport.declare_queue("work")

        with pytest.raises(MessageEncodingError):
            await transport.send_to_queue("work", {"tags": {"a"}})

        assert transport.peek("work") == []


@pytest.mark.unit
class TestRouting:
    @pytest.mark.asyncio
    async def test_default_exchange_routes_by_queue_name(self, transport):
        await transport.declare_queue("work")

        assert await transport.send_to_queue("work", {"n": 1}) is True

        assert transport.peek("work") == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_topic_exchange_fans_out_copies(self, transport):
        await transport.declare_exchange("events", "topic")
        await transport.declare_queue("orders")
        await transport.declare_queue("audit")
        await transport.bind_queue("orders", "events", "order.*")
        await transport.bind_queue("audit", "events", "#")

        await transport.publish("events", "order.created", {"id": 1}, PublishOptions(headers={"h": "v"}))

        assert transport.peek("orders") == [{"id": 1}]
        assert transport.peek("audit") == [{"id": 1}]
        assert transport.peek_headers("audit") == [{"h": "v"}]

    @pytest.mark.asyncio
    async def test_unroutable_message_is_dropped(self, transport):
        await transport.declare_exchange("events", "direct")

        assert await transport.publish("events", "nobody", {"x": 1}) is True

    @pytest.mark.asyncio
    async def test_publish_to_unknown_exchange_fails(self, transport):
        with pytest.raises(TransportError):
            await transport.publish("missing", "key", {})

    @pytest.mark.asyncio
    async def test_bind_unknown_queue_fails(self, transport):
        await transport.declare_exchange("events", "topic")
        with pytest.raises(TransportError):
            await transport.bind_queue("missing", "events", "#")

    @pytest.mark.asyncio
    async def test_payload_is_decoupled_from_producer(self, transport):
        await transport.declare_queue("work")
        payload = {"items": [1]}
        await transport.send_to_queue("work", payload)
        payload["items"].append(2)

        assert transport.peek("work") == [{"items": [1]}]


@pytest.mark.unit
class TestConsuming:
    @pytest.mark.asyncio
    async def test_delivery_dispatched_on_scheduler(self, transport, clock):
        await transport.declare_queue("work")
        received = []
        await transport.consume("work", collector(received))

        await transport.send_to_queue("work", {"n": 1}, PublishOptions(message_id="MSG-1"))
        assert received == []

        await clock.run_pending()
        assert [d.payload for d in received] == [{"n": 1}]
        assert received[0].message_id == "MSG-1"
        assert (await transport.queue_stats("work")).message_count == 0

    @pytest.mark.asyncio
    async def test_one_unacked_delivery_per_consumer(self, transport, clock):
        await transport.declare_queue("work")
        received = []
        await transport.consume("work", collector(received, action="hold"))
        for n in range(3):
            await transport.send_to_queue("work", {"n": n})

        await clock.run_pending()
        assert len(received) == 1
        assert (await transport.queue_stats("work")).message_count == 2

        await received[0].ack()
        await clock.run_pending()
        assert [d.payload["n"] for d in received] == [0, 1]

    @pytest.mark.asyncio
    async def test_nack_with_requeue_redelivers_at_head(self, transport, clock):
        await transport.declare_queue("work")
        received = []
        await transport.consume("work", collector(received, action="hold"))
        await transport.send_to_queue("work", {"n": 0})
        await transport.send_to_queue("work", {"n": 1})
        await clock.run_pending()

        await received[0].nack(requeue=True)
        await clock.run_pending()

        assert received[1].payload == {"n": 0}
        assert received[1].redelivered is True

    @pytest.mark.asyncio
    async def test_nack_without_requeue_dead_letters(self, transport, clock):
        await transport.declare_exchange("dlx", "direct")
        await transport.declare_queue("parked")
        await transport.bind_queue("parked", "dlx", "dead")
        await transport.declare_queue("work", dead_letter_exchange="dlx", dead_letter_routing_key="dead")
        await transport.consume("work", collector([], action="nack"))

        await transport.send_to_queue("work", {"n": 1})
        await clock.run_pending()

        assert transport.peek("parked") == [{"n": 1}]
        assert transport.peek_headers("parked")[0][HEADER_DEATH_REASON] == "rejected"

    @pytest.mark.asyncio
    async def test_handler_exception_dead_letters(self, transport, clock):
        async def broken(delivery):
            raise RuntimeError("handler bug")

        await transport.declare_exchange("dlx", "direct")
        await transport.declare_queue("parked")
        await transport.bind_queue("parked", "dlx", "work")
        await transport.declare_queue("work", dead_letter_exchange="dlx")
        await transport.consume("work", broken)

        await transport.send_to_queue("work", {"n": 1})
        await clock.run_pending()

        assert transport.peek("parked") == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_cancel_requeues_unsettled_delivery(self, transport, clock):
        await transport.declare_queue("work")
        received = []
        tag = await transport.consume("work", collector(received, action="hold"))
        await transport.send_to_queue("work", {"n": 1})
        await clock.run_pending()

        assert await transport.cancel(tag) is True
        assert await transport.cancel(tag) is False
        assert transport.peek("work") == [{"n": 1}]
        assert (await transport.queue_stats("work")).consumer_count == 0


@pytest.mark.unit
class TestTtlAndOutage:
    @pytest.mark.asyncio
    async def test_expired_message_goes_to_dlx(self, transport, clock):
        await transport.declare_exchange("back", "direct")
        await transport.declare_queue("main")
        await transport.bind_queue("main", "back", "main")
        await transport.declare_queue(
            "retry.1", dead_letter_exchange="back", dead_letter_routing_key="main", message_ttl_ms=2_000
        )

        await transport.send_to_queue("retry.1", {"n": 1})
        await clock.advance(1_999)
        assert transport.peek("main") == []

        await clock.advance(1)
        assert transport.peek("retry.1") == []
        assert transport.peek("main") == [{"n": 1}]
        assert transport.peek_headers("main")[0][HEADER_DEATH_REASON] == "expired"

    @pytest.mark.asyncio
    async def test_purge_cancels_expiry(self, transport, clock):
        await transport.declare_queue("retry.1", message_ttl_ms=1_000)
        await transport.send_to_queue("retry.1", {"n": 1})

        assert await transport.purge_queue("retry.1") == 1
        assert clock.pending_timers == 0

    @pytest.mark.asyncio
    async def test_unavailable_broker_rejects_publish(self, transport):
        await transport.declare_queue("work")
        transport.set_available(False)

        with pytest.raises(TransportUnavailableError):
            await transport.send_to_queue("work", {"n": 1})

        transport.set_available(True)
        assert await transport.send_to_queue("work", {"n": 1}) is True

    @pytest.mark.asyncio
    async def test_closed_transport_rejects_publish(self, transport):
        await transport.declare_queue("work")
        await transport.close()

        with pytest.raises(TransportError):
            await transport.send_to_queue("work", {})

    @pytest.mark.asyncio
    async def test_stats_for_unknown_queue(self, transport):
        stats = await transport.queue_stats("missing")
        assert stats.message_count == 0
        assert stats.consumer_count == 0
