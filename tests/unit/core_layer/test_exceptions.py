"""
Unit Tests for Core Exceptions

Tests for the exception hierarchy and its structured context.
"""

import pytest
from pydantic import BaseModel, ValidationError

from messaging_resilience.core.exceptions import (
    ConfigurationError,
    InvalidRecordError,
    ResilienceError,
    SchedulerError,
    SimulatedFailureError,
    TransportError,
    TransportUnavailableError,
)


@pytest.mark.unit
class TestResilienceError:
    """Test the base exception class."""

    def test_base_error_creation(self):
        error = ResilienceError("Test message")
        assert str(error) == "Test message"
        assert error.message == "Test message"

    def test_base_error_default_values(self):
        error = ResilienceError("Test")
        assert error.details == {}  # Defaults to empty dict, not None
        assert error.correlation_id is None

    def test_details_are_copied(self):
        """Mutating the caller's dict must not change the error."""
        details = {"queue": "outbox.orders"}
        error = ResilienceError("Test", details=details)
        details["queue"] = "changed"

        assert error.details == {"queue": "outbox.orders"}

    def test_to_dict(self):
        error = TransportUnavailableError(
            "Broker unavailable",
            correlation_id="MSG-1704067200000-ABCD",
            details={"exchange": "outbox.events"},
        )

        assert error.to_dict() == {
            "error_type": "TransportUnavailableError",
            "message": "Broker unavailable",
            "correlation_id": "MSG-1704067200000-ABCD",
            "details": {"exchange": "outbox.events"},
        }

    def test_with_context_chains(self):
        error = ResilienceError("Test").with_context(attempt=2).with_context(queue="main")
        assert error.details == {"attempt": 2, "queue": "main"}

    def test_repr_includes_context(self):
        error = SimulatedFailureError("boom", correlation_id="SAGA-1", details={"step": 2})

        text = repr(error)
        assert text.startswith("SimulatedFailureError(message='boom'")
        assert "correlation_id='SAGA-1'" in text
        assert "'step': 2" in text

    def test_from_exception_wraps_original(self):
        original = ValueError("bad value")

        error = ConfigurationError.from_exception(original, engine="backpressure")

        assert isinstance(error, ConfigurationError)
        assert error.message == "bad value"
        assert error.details["original_error"] == "ValueError"
        assert error.details["engine"] == "backpressure"

    def test_from_pydantic_validation_error(self):
        class Sample(BaseModel):
            value: int

        with pytest.raises(ValidationError) as exc_info:
            Sample(value="not a number")

        error = ConfigurationError.from_exception(exc_info.value, message="Invalid Sample")
        assert error.message == "Invalid Sample"
        assert error.details["original_error"] == "ValidationError"


@pytest.mark.unit
class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_class",
        [
            ConfigurationError,
            InvalidRecordError,
            SchedulerError,
            SimulatedFailureError,
            TransportError,
            TransportUnavailableError,
        ],
    )
    def test_all_inherit_from_base(self, exc_class):
        error = exc_class("Test")
        assert isinstance(error, ResilienceError)
        assert isinstance(error, Exception)

    def test_unavailable_is_a_transport_error(self):
        with pytest.raises(TransportError):
            raise TransportUnavailableError("Broker unavailable")

    def test_simulated_failure_is_not_a_transport_error(self):
        assert not isinstance(SimulatedFailureError("x"), TransportError)
