"""
Integration Tests for the Resilience Engines

End-to-end scenarios on the in-memory transport and a shared virtual clock:
each engine is driven the way an operator would drive it and observed
through its public queries only.
"""

import pytest

from messaging_resilience.core.config.constants import (
    CallOutcome,
    CircuitState,
    DlqStatus,
    OutboxStatus,
    SagaOutcome,
    SagaStepStatus,
)


@pytest.mark.integration
class TestCircuitBreakerScenario:
    @pytest.mark.asyncio
    async def test_trip_fallback_probe_and_recover(self, breaker, clock):
        breaker.set_service_down(True)
        for i in range(3):
            await breaker.call(f"outage-{i}")
        assert breaker.get_status().state == CircuitState.OPEN

        fallback = await breaker.call("while-open")
        assert fallback.outcome == CallOutcome.FALLBACK

        await clock.advance(15_000)
        breaker.set_service_down(False)
        trial = await breaker.call("probe")

        assert trial.state_at_call_start == CircuitState.HALF_OPEN
        assert trial.outcome == CallOutcome.SUCCESS
        status = breaker.get_status()
        assert status.state == CircuitState.CLOSED
        assert status.total_calls == 5
        assert [r.outcome for r in breaker.get_call_log()] == [
            CallOutcome.SUCCESS,
            CallOutcome.FALLBACK,
            CallOutcome.FAILURE,
            CallOutcome.FAILURE,
            CallOutcome.FAILURE,
        ]


@pytest.mark.integration
class TestDeadLetterScenario:
    @pytest.mark.asyncio
    async def test_message_walks_retry_buffers_into_dead_letter(self, pipeline, clock):
        await pipeline.start_consuming({"failureMode": "always", "maxRetries": 2})
        message = await pipeline.send_message({"orderId": "ORD-42"})

        # attempt 1 at t=0 (+500ms processing), parked for 2s
        await clock.advance(1_000)
        assert (await pipeline.get_message(message.id)).status == DlqStatus.RETRY_1

        # attempt 2 at t=2.5s, parked for 8s
        await clock.advance(4_000)
        assert (await pipeline.get_message(message.id)).status == DlqStatus.RETRY_2

        # attempt 3 at t=11s exceeds max retries
        await clock.advance(15_000)
        dead = await pipeline.get_message(message.id)
        assert dead.status == DlqStatus.DEAD
        assert dead.retry_count == 2
        assert [h.delay_ms for h in dead.retry_history] == [2_000, 8_000, 0]

        await pipeline.start_consuming()  # already consuming
        await pipeline.stop_consuming()
        assert await pipeline.retry_dead_message(message.id) is True
        assert (await pipeline.get_stats()).main_queue.messages == 1


@pytest.mark.integration
class TestOutboxScenario:
    @pytest.mark.asyncio
    async def test_orders_accumulate_during_outage_and_publish_in_order(self, outbox, transport, clock):
        await outbox.start_relay()
        outbox.set_broker_down(True)

        created = []
        for i in range(5):
            created.append(await outbox.create_order(f"Customer {i}", 10.0 * (i + 1)))
            await clock.advance(100)

        await clock.advance(2_000)
        stats = await outbox.get_relay_stats()
        assert stats.pending_count == 5
        assert stats.published_count == 0
        assert all(e.status == OutboxStatus.PENDING for e in await outbox.get_outbox())

        outbox.set_broker_down(False)
        await clock.advance(1_000)

        stats = await outbox.get_relay_stats()
        assert stats.pending_count == 0
        assert stats.published_count == 5
        delivered = [payload["orderId"] for payload in transport.peek("outbox.orders")]
        assert delivered == [c.record.id for c in created]

        outbox.stop_relay()
        assert outbox.is_relay_running() is False


@pytest.mark.integration
class TestBackpressureScenario:
    def test_drop_oldest_keeps_most_recent_orders(self, controller):
        controller.update_config(max_queue_depth=5, strategy="drop", drop_policy="oldest")

        for _ in range(8):
            controller.produce()

        payloads = [m.payload for m in controller.get_queue_snapshot()]
        assert payloads == ["Order-0004", "Order-0005", "Order-0006", "Order-0007", "Order-0008"]
        stats = controller.get_stats()
        assert stats.dropped == 3
        assert stats.queue_depth <= stats.max_queue_depth

    @pytest.mark.asyncio
    async def test_slow_consumer_builds_backlog_then_reject_sheds_load(self, controller, clock):
        controller.start({"producerRatePerSec": 10, "consumerRatePerSec": 2, "maxQueueDepth": 10, "strategy": "reject"})

        await clock.advance(5_000)
        controller.stop()

        stats = controller.get_stats()
        assert stats.queue_depth >= 9
        assert stats.rejected > 0
        assert stats.produced == stats.consumed + stats.rejected + stats.queue_depth
        assert stats.avg_wait_ms > 0


@pytest.mark.integration
class TestSagaScenario:
    @pytest.mark.asyncio
    async def test_payment_failure_rolls_back_created_order(self, orchestrator, transport):
        execution = await orchestrator.run_order_saga({"orderId": "ORD-9"}, {"failAtStep": 1})

        assert execution.outcome == SagaOutcome.COMPENSATED
        assert execution.steps[0].status == SagaStepStatus.COMPENSATED
        assert execution.steps[1].status == SagaStepStatus.FAILED
        assert execution.total_duration == 2 * 500 + 300
        cancel = transport.peek("saga.order.cancel")
        assert cancel[0]["reason"] == 'Rolling back due to failure at "Reserve Payment"'
        assert transport.peek("saga.inventory.reserve") == []

        assert orchestrator.get_saga_by_id(execution.saga_id).outcome == SagaOutcome.COMPENSATED
