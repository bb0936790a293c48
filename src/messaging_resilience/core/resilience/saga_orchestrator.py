"""
Saga Orchestrator

Architecture:
    SagaOrchestrator (Public API)
        ├── SagaDefinition (ordered steps, each with an optional compensation queue)
        ├── Forward pass: publish command -> simulate work -> done | failed
        ├── Compensation pass: reverse order over the steps that were DONE
        └── Saga log (BoundedLog of SagaExecution, newest first, cap 20)

Outcomes:
    succeeded    every step completed
    compensated  a step failed and every compensation was published
    failed       a step failed and at least one compensation could not be published

The saga id is bound as the logging correlation id for the whole run.
"""

from typing import Any

from messaging_resilience.core.config.constants import (
    SAGA_LOG_LIMIT,
    CompensationStatus,
    SagaOutcome,
    SagaStepStatus,
)
from messaging_resilience.core.exceptions import (
    InvalidRecordError,
    MessageEncodingError,
    SimulatedFailureError,
    TransportError,
)
from messaging_resilience.core.identifiers import generate_id
from messaging_resilience.core.interfaces.scheduling import Clock
from messaging_resilience.core.interfaces.store import BoundedLog
from messaging_resilience.core.interfaces.transport import PublishOptions, Transport
from messaging_resilience.core.logging.logger import (
    clear_correlation_id,
    get_logger,
    log_stage,
    set_correlation_id,
)
from messaging_resilience.core.models.saga import (
    SagaDefinition,
    SagaExecution,
    SagaOptions,
    SagaStepDefinition,
    SagaStepRecord,
)
from messaging_resilience.infrastructure.message_queue.memory_transport import MessageSerializer
from messaging_resilience.infrastructure.monitoring.metrics_collector import get_metrics_collector
from messaging_resilience.infrastructure.scheduling.asyncio_scheduler import SystemClock

logger = get_logger(__name__)

ORDER_SAGA = SagaDefinition(
    name="Order Processing Saga",
    steps=(
        SagaStepDefinition(
            name="Create Order",
            service="Order Service",
            queue="saga.order.create",
            compensation_queue="saga.order.cancel",
        ),
        SagaStepDefinition(
            name="Reserve Payment",
            service="Payment Service",
            queue="saga.payment.reserve",
            compensation_queue="saga.payment.refund",
        ),
        SagaStepDefinition(
            name="Reserve Inventory",
            service="Inventory Service",
            queue="saga.inventory.reserve",
            compensation_queue="saga.inventory.release",
        ),
        SagaStepDefinition(
            name="Confirm Shipping",
            service="Shipping Service",
            queue="saga.shipping.confirm",
            compensation_queue="saga.shipping.cancel",
        ),
        SagaStepDefinition(
            name="Send Notification",
            service="Notification Service",
            queue="saga.notification.send",
        ),
    ),
)


class SagaOrchestrator:
    """
    Runs sagas step by step and unwinds them on failure.

    Usage:
        orchestrator = SagaOrchestrator(transport, clock=clock)
        execution = await orchestrator.run_order_saga({"orderId": 1}, {"failAtStep": 2})
    """

    def __init__(self, transport: Transport, clock: Clock | None = None):
        self._transport = transport
        self._clock = clock or SystemClock()
        self._metrics = get_metrics_collector()
        self._logs: BoundedLog[SagaExecution] = BoundedLog(SAGA_LOG_LIMIT)
        self._declared: set[str] = set()

    async def run_order_saga(
        self,
        payload: dict[str, Any] | None = None,
        options: SagaOptions | dict[str, Any] | None = None,
    ) -> SagaExecution:
        return await self.run_saga(ORDER_SAGA, payload, options)

    async def run_saga(
        self,
        definition: SagaDefinition,
        payload: dict[str, Any] | None = None,
        options: SagaOptions | dict[str, Any] | None = None,
    ) -> SagaExecution:
        """
        Execute ``definition`` and record the run.

        Raises:
            ConfigurationError: If options are invalid (nothing runs)
            InvalidRecordError: If the payload cannot be encoded (nothing runs)
        """
        options = SagaOptions.resolve(options)
        payload = dict(payload or {})
        try:
            MessageSerializer.serialize(payload)
        except MessageEncodingError as e:
            raise InvalidRecordError.from_exception(e, message=f"Invalid saga payload: {e.message}") from e

        saga_id = generate_id("SAGA", self._clock)

        execution = SagaExecution(
            saga_id=saga_id,
            name=definition.name,
            steps=[SagaStepRecord.from_definition(step) for step in definition.steps],
            started_at=self._clock.now_iso(),
            payload=payload,
        )
        started_ms = self._clock.now_ms()

        set_correlation_id(saga_id)
        try:
            logger.info(f"Starting saga {saga_id}: {definition.name}", stage="SAGA.1")
            await self._declare_queues(definition)

            failed_index = await self._run_forward(execution, definition, options)

            if failed_index is None:
                execution.outcome = SagaOutcome.SUCCEEDED
            else:
                execution.failed_at_step = failed_index
                all_compensated = await self._compensate(execution, definition, options, failed_index)
                execution.outcome = SagaOutcome.COMPENSATED if all_compensated else SagaOutcome.FAILED

            execution.completed_at = self._clock.now_iso()
            execution.total_duration = self._clock.now_ms() - started_ms

            self._logs.append(execution)
            self._metrics.record_saga_outcome(definition.name, execution.outcome.value, execution.total_duration)
            logger.info(
                f"Saga {saga_id} finished: {execution.outcome.value} ({execution.total_duration:.0f}ms)",
                stage="SAGA.4",
            )
            return execution.model_copy(deep=True)
        finally:
            clear_correlation_id()

    async def _run_forward(
        self, execution: SagaExecution, definition: SagaDefinition, options: SagaOptions
    ) -> int | None:
        total = len(definition.steps)
        for index, (step, record) in enumerate(zip(definition.steps, execution.steps)):
            record.started_at = self._clock.now_iso()
            try:
                await self._publish(
                    step.queue,
                    {
                        "sagaId": execution.saga_id,
                        "step": step.name,
                        "service": step.service,
                        "payload": execution.payload,
                        "timestamp": self._clock.now_iso(),
                    },
                )
                await self._clock.sleep(options.step_delay_ms)

                if options.fail_at_step == index:
                    raise SimulatedFailureError(
                        f'Simulated failure at step "{step.name}" — {step.service} is unavailable',
                        correlation_id=execution.saga_id,
                        details={"step": index},
                    )
            except (SimulatedFailureError, TransportError) as e:
                record.status = SagaStepStatus.FAILED
                record.finished_at = self._clock.now_iso()
                record.duration = options.step_delay_ms
                record.error = e.message
                logger.warning(
                    f"Saga {execution.saga_id} step {index + 1}/{total}: {step.name} failed: {e.message}",
                    stage="SAGA.2",
                )
                return index

            record.status = SagaStepStatus.DONE
            record.finished_at = self._clock.now_iso()
            record.duration = options.step_delay_ms
            logger.info(f"Saga {execution.saga_id} step {index + 1}/{total}: {step.name} done", stage="SAGA.2")
        return None

    async def _compensate(
        self,
        execution: SagaExecution,
        definition: SagaDefinition,
        options: SagaOptions,
        failed_index: int,
    ) -> bool:
        """Undo the DONE steps before ``failed_index``, last first. Returns False if any compensation failed."""
        log_stage(logger, "SAGA.3", f"Saga {execution.saga_id}: starting compensation from step {failed_index}")
        failed_step = definition.steps[failed_index]

        compensated = 0
        all_ok = True
        for index in range(failed_index - 1, -1, -1):
            step = definition.steps[index]
            record = execution.steps[index]
            if record.status != SagaStepStatus.DONE or not step.compensable:
                continue

            try:
                await self._publish(
                    step.compensation_queue,
                    {
                        "sagaId": execution.saga_id,
                        "step": f"Compensate: {step.name}",
                        "service": step.service,
                        "originalStep": step.name,
                        "reason": f'Rolling back due to failure at "{failed_step.name}"',
                        "payload": execution.payload,
                        "timestamp": self._clock.now_iso(),
                    },
                )
            except TransportError as e:
                record.compensation_status = CompensationStatus.FAILED
                all_ok = False
                log_stage(
                    logger,
                    "SAGA.3",
                    f"Saga {execution.saga_id} compensate failed: {step.name}",
                    level="error",
                    error=e.message,
                )
                continue

            await self._clock.sleep(options.compensation_delay_ms)
            record.status = SagaStepStatus.COMPENSATED
            record.compensation_status = CompensationStatus.COMPLETED
            record.compensation_duration = options.compensation_delay_ms
            compensated += 1
            log_stage(logger, "SAGA.3", f"Saga {execution.saga_id} compensate: {step.name} done")

        execution.compensated_steps = compensated
        return all_ok

    async def _publish(self, queue: str, message: dict[str, Any]) -> None:
        await self._transport.send_to_queue(queue, message, PublishOptions(persistent=True))

    async def _declare_queues(self, definition: SagaDefinition) -> None:
        for step in definition.steps:
            for queue in (step.queue, step.compensation_queue):
                if queue and queue not in self._declared:
                    await self._transport.declare_queue(queue)
                    self._declared.add(queue)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_saga_logs(self) -> list[SagaExecution]:
        """Recorded runs, newest first (copies)."""
        return [s.model_copy(deep=True) for s in self._logs]

    def get_saga_by_id(self, saga_id: str) -> SagaExecution | None:
        execution = self._logs.find(lambda s: s.saga_id == saga_id)
        return execution.model_copy(deep=True) if execution else None

    def clear_logs(self) -> None:
        self._logs.clear()
