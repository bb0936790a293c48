"""
Core Module

Foundational components: configuration, logging, exceptions, collaborator
interfaces, models and the resilience engines.
"""

from .exceptions import (
    ConfigurationError,
    InvalidRecordError,
    ResilienceError,
    SchedulerError,
    SimulatedFailureError,
    TransportError,
    TransportUnavailableError,
)
from .logging import (
    clear_correlation_id,
    get_correlation_id,
    get_logger,
    log_stage,
    set_correlation_id,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "log_stage",
    "ResilienceError",
    "ConfigurationError",
    "InvalidRecordError",
    "SimulatedFailureError",
    "SchedulerError",
    "TransportError",
    "TransportUnavailableError",
]
