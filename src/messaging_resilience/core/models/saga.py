"""
Saga definitions, execution records and run options.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from messaging_resilience.core.config.constants import CompensationStatus, SagaOutcome, SagaStepStatus
from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.models.base import EngineConfig, RecordModel


class SagaStepDefinition(BaseModel):
    """
    A forward step and its compensating action.

    An empty ``compensation_queue`` means the step has nothing to undo.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    service: str
    queue: str
    compensation_queue: str = ""

    @property
    def compensable(self) -> bool:
        return bool(self.compensation_queue)


class SagaDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    steps: tuple[SagaStepDefinition, ...] = Field(min_length=1)


class SagaOptions(EngineConfig):
    """
    Per-run options.

    fail_at_step forces the step with that 0-based index to fail.
    """

    fail_at_step: int | None = Field(default=None, ge=0)
    step_delay_ms: int = Field(ge=0)
    compensation_delay_ms: int = Field(ge=0)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "SagaOptions":
        s = get_settings().saga
        return cls.parse(
            {
                "step_delay_ms": s.SAGA_STEP_DELAY_MS,
                "compensation_delay_ms": s.SAGA_COMPENSATION_DELAY_MS,
            },
            **overrides,
        )


class SagaStepRecord(RecordModel):
    name: str
    service: str
    queue: str
    compensation_queue: str
    status: SagaStepStatus = SagaStepStatus.PENDING
    started_at: str | None = None
    finished_at: str | None = None
    duration: float | None = None
    error: str | None = None
    compensation_status: CompensationStatus | None = None
    compensation_duration: float | None = None

    @classmethod
    def from_definition(cls, step: SagaStepDefinition) -> "SagaStepRecord":
        return cls(
            name=step.name,
            service=step.service,
            queue=step.queue,
            compensation_queue=step.compensation_queue,
        )


class SagaExecution(RecordModel):
    """
    One saga run.

    Compensations only ever touch steps that were DONE when the failure hit,
    and run in reverse order.
    """

    saga_id: str
    name: str
    steps: list[SagaStepRecord]
    outcome: SagaOutcome | None = None
    started_at: str
    completed_at: str | None = None
    total_duration: float | None = None
    failed_at_step: int | None = None
    compensated_steps: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
