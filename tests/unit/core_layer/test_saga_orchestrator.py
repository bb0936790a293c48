"""
Unit Tests for SagaOrchestrator

Tests the forward pass, reverse-order compensation after a failure,
compensation publish failures, the bounded saga log and correlation ids.
"""

from decimal import Decimal

import pytest

from messaging_resilience.core.config.constants import (
    CompensationStatus,
    SagaOutcome,
    SagaStepStatus,
)
from messaging_resilience.core.exceptions import (
    ConfigurationError,
    InvalidRecordError,
    MessageEncodingError,
    TransportUnavailableError,
)
from messaging_resilience.core.logging.logger import get_correlation_id
from messaging_resilience.core.models.saga import SagaDefinition, SagaStepDefinition
from messaging_resilience.core.resilience.saga_orchestrator import ORDER_SAGA, SagaOrchestrator

FAST = {"stepDelayMs": 10, "compensationDelayMs": 5}


def queues_called(mock_transport):
    return [call.args[0] for call in mock_transport.send_to_queue.await_args_list]


@pytest.mark.unit
class TestOrderSagaDefinition:
    def test_five_steps_last_not_compensable(self):
        assert len(ORDER_SAGA.steps) == 5
        assert [s.compensable for s in ORDER_SAGA.steps] == [True, True, True, True, False]
        assert ORDER_SAGA.steps[1].compensation_queue == "saga.payment.refund"


@pytest.mark.unit
class TestForwardPass:
    @pytest.mark.asyncio
    async def test_all_steps_succeed(self, orchestrator, clock):
        start = clock.now_ms()

        execution = await orchestrator.run_order_saga({"orderId": 42}, FAST)

        assert execution.saga_id.startswith("SAGA-")
        assert execution.outcome == SagaOutcome.SUCCEEDED
        assert all(s.status == SagaStepStatus.DONE for s in execution.steps)
        assert execution.failed_at_step is None
        assert execution.compensated_steps is None
        assert execution.total_duration == 5 * 10
        assert clock.now_ms() - start == 50

    @pytest.mark.asyncio
    async def test_commands_published_in_step_order(self, mock_transport, clock):
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        await orchestrator.run_order_saga({"orderId": 1}, FAST)

        assert queues_called(mock_transport) == [s.queue for s in ORDER_SAGA.steps]
        command = mock_transport.send_to_queue.await_args_list[0].args[1]
        assert command["step"] == "Create Order"
        assert command["service"] == "Order Service"
        assert command["payload"] == {"orderId": 1}

    @pytest.mark.asyncio
    async def test_commands_reach_the_broker(self, orchestrator, transport):
        await orchestrator.run_order_saga({"orderId": 7}, FAST)

        assert transport.peek("saga.payment.reserve")[0]["payload"] == {"orderId": 7}

    @pytest.mark.asyncio
    async def test_correlation_id_cleared_after_run(self, orchestrator):
        await orchestrator.run_order_saga({}, FAST)

        assert get_correlation_id() is None


@pytest.mark.unit
class TestCompensation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_at", [0, 1, 2, 3, 4])
    async def test_failure_compensates_prior_steps_in_reverse(self, mock_transport, clock, fail_at):
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        execution = await orchestrator.run_order_saga({}, {**FAST, "failAtStep": fail_at})

        assert execution.outcome == SagaOutcome.COMPENSATED
        assert execution.failed_at_step == fail_at
        assert execution.steps[fail_at].status == SagaStepStatus.FAILED
        assert "is unavailable" in execution.steps[fail_at].error
        assert execution.compensated_steps == fail_at

        forward = [s.queue for s in ORDER_SAGA.steps[: fail_at + 1]]
        undo = [ORDER_SAGA.steps[i].compensation_queue for i in range(fail_at - 1, -1, -1)]
        assert queues_called(mock_transport) == forward + undo

        for index in range(fail_at):
            assert execution.steps[index].status == SagaStepStatus.COMPENSATED
            assert execution.steps[index].compensation_status == CompensationStatus.COMPLETED
        for index in range(fail_at + 1, 5):
            assert execution.steps[index].status == SagaStepStatus.PENDING

    @pytest.mark.asyncio
    async def test_compensation_message_names_failed_step(self, mock_transport, clock):
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        await orchestrator.run_order_saga({}, {**FAST, "failAtStep": 1})

        undo = mock_transport.send_to_queue.await_args_list[-1].args[1]
        assert undo["step"] == "Compensate: Create Order"
        assert undo["originalStep"] == "Create Order"
        assert undo["reason"] == 'Rolling back due to failure at "Reserve Payment"'

    @pytest.mark.asyncio
    async def test_duration_includes_compensations(self, orchestrator):
        execution = await orchestrator.run_order_saga({}, {**FAST, "failAtStep": 2})

        assert execution.total_duration == 3 * 10 + 2 * 5

    @pytest.mark.asyncio
    async def test_step_without_compensation_is_skipped(self, mock_transport, clock):
        definition = SagaDefinition(
            name="Notify then charge",
            steps=(
                SagaStepDefinition(name="Notify", service="Mailer", queue="q.notify"),
                SagaStepDefinition(name="Charge", service="Billing", queue="q.charge", compensation_queue="q.refund"),
            ),
        )
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        execution = await orchestrator.run_saga(definition, {}, {**FAST, "failAtStep": 1})

        assert execution.outcome == SagaOutcome.COMPENSATED
        assert execution.compensated_steps == 0
        assert execution.steps[0].status == SagaStepStatus.DONE
        assert queues_called(mock_transport) == ["q.notify", "q.charge"]

    @pytest.mark.asyncio
    async def test_failed_compensation_publish_fails_saga(self, mock_transport, clock):
        async def send(queue, message, options=None):
            if queue == "saga.order.cancel":
                raise TransportUnavailableError("Broker unavailable")
            return True

        mock_transport.send_to_queue.side_effect = send
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        execution = await orchestrator.run_order_saga({}, {**FAST, "failAtStep": 2})

        assert execution.outcome == SagaOutcome.FAILED
        assert execution.compensated_steps == 1
        assert execution.steps[1].compensation_status == CompensationStatus.COMPLETED
        assert execution.steps[0].compensation_status == CompensationStatus.FAILED
        assert execution.steps[0].status == SagaStepStatus.DONE

    @pytest.mark.asyncio
    async def test_forward_publish_failure_fails_the_step(self, mock_transport, clock):
        async def send(queue, message, options=None):
            if queue == "saga.inventory.reserve":
                raise TransportUnavailableError("Broker unavailable")
            return True

        mock_transport.send_to_queue.side_effect = send
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        execution = await orchestrator.run_order_saga({}, FAST)

        assert execution.failed_at_step == 2
        assert execution.steps[2].error == "Broker unavailable"
        assert execution.outcome == SagaOutcome.COMPENSATED

    @pytest.mark.asyncio
    async def test_encoding_failure_at_publish_fails_the_step(self, mock_transport, clock):
        async def send(queue, message, options=None):
            if queue == "saga.payment.reserve":
                raise MessageEncodingError("Payload is not JSON serializable")
            return True

        mock_transport.send_to_queue.side_effect = send
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        execution = await orchestrator.run_order_saga({}, FAST)

        assert execution.failed_at_step == 1
        assert execution.steps[0].status == SagaStepStatus.COMPENSATED
        assert execution.outcome == SagaOutcome.COMPENSATED


@pytest.mark.unit
class TestSagaLog:
    @pytest.mark.asyncio
    async def test_log_newest_first_capped_at_20(self, orchestrator):
        ids = [(await orchestrator.run_order_saga({}, {"stepDelayMs": 0})).saga_id for _ in range(22)]

        logs = orchestrator.get_saga_logs()
        assert len(logs) == 20
        assert logs[0].saga_id == ids[-1]
        assert orchestrator.get_saga_by_id(ids[0]) is None
        assert orchestrator.get_saga_by_id(ids[-1]).saga_id == ids[-1]

    @pytest.mark.asyncio
    async def test_returned_runs_are_copies(self, orchestrator):
        execution = await orchestrator.run_order_saga({}, FAST)
        execution.steps[0].status = SagaStepStatus.FAILED

        assert orchestrator.get_saga_by_id(execution.saga_id).steps[0].status == SagaStepStatus.DONE

    @pytest.mark.asyncio
    async def test_clear_logs(self, orchestrator):
        await orchestrator.run_order_saga({}, FAST)
        orchestrator.clear_logs()

        assert orchestrator.get_saga_logs() == []

    @pytest.mark.asyncio
    async def test_invalid_options_run_nothing(self, orchestrator):
        with pytest.raises(ConfigurationError):
            await orchestrator.run_order_saga({}, {"failAtStep": -1})

        assert orchestrator.get_saga_logs() == []

    @pytest.mark.asyncio
    async def test_unencodable_payload_runs_nothing(self, mock_transport, clock):
        orchestrator = SagaOrchestrator(mock_transport, clock=clock)

        with pytest.raises(InvalidRecordError):
            await orchestrator.run_order_saga({"amount": Decimal("9.99")}, FAST)

        assert orchestrator.get_saga_logs() == []
        mock_transport.send_to_queue.assert_not_awaited()
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_wire_shape(self, orchestrator):
        execution = await orchestrator.run_order_saga({"orderId": 3}, {**FAST, "failAtStep": 1})

        data = execution.to_dict()
        assert data["outcome"] == "compensated"
        assert data["failedAtStep"] == 1
        assert data["steps"][0]["compensationStatus"] == "completed"
        assert "compensationQueue" in data["steps"][0]
