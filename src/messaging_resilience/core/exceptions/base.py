"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.
"""

from typing import Any


class ResilienceError(Exception):
    """
    Base exception for all resilience engine errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Correlation ID tracking (saga id, message id)
    - Structured error logging

    Attributes:
        message: Error message
        correlation_id: Correlation ID (if available)
        details: Additional error details (dict)

    Example:
        raise TransportUnavailableError(
            "Broker unreachable",
            correlation_id="MSG-1700000000000-ABCD",
            details={"exchange": "outbox.events"}
        )
    """

    def __init__(
        self, message: str, correlation_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.correlation_id = correlation_id
        self.details = (details or {}).copy()  # Create a copy to prevent external modification
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, message, correlation_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "ResilienceError":
        """
        Add additional context to the error details.

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        correlation_str = f", correlation_id='{self.correlation_id}'" if self.correlation_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{correlation_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        correlation_id: str | None = None,
        **details
    ) -> "ResilienceError":
        """
        Create a ResilienceError from another exception.

        Useful for wrapping third-party exceptions (e.g. pydantic validation
        errors) with additional context.

        Example:
            >>> try:
            ...     CircuitBreakerConfig.model_validate(raw)
            ... except PydanticValidationError as e:
            ...     raise ConfigurationError.from_exception(e, engine="circuit_breaker")
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, correlation_id=correlation_id, details=error_details)


# Configuration exception (kept here as it's fundamental)
class ConfigurationError(ResilienceError):
    """Raised when an engine configuration is invalid. Engine state is left unchanged."""
    pass
