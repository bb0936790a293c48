"""
Exception Module

Structured exception hierarchy for the resilience engines.

Module Structure:
-----------------
- **base.py**: ResilienceError base class + ConfigurationError
- **transport.py**: Transport (broker) exceptions
- **simulation.py**: Simulated failures and scheduler errors
- **validation.py**: Business record validation errors

Usage:
------
```python
from messaging_resilience.core.exceptions import ConfigurationError, TransportUnavailableError
```
"""

from messaging_resilience.core.exceptions.base import ConfigurationError, ResilienceError
from messaging_resilience.core.exceptions.simulation import SchedulerError, SimulatedFailureError
from messaging_resilience.core.exceptions.transport import (
    MessageEncodingError,
    TransportError,
    TransportUnavailableError,
)
from messaging_resilience.core.exceptions.validation import InvalidRecordError

__all__ = [
    # Base
    "ResilienceError",
    "ConfigurationError",
    # Transport
    "TransportError",
    "TransportUnavailableError",
    "MessageEncodingError",
    # Simulation
    "SimulatedFailureError",
    "SchedulerError",
    # Validation
    "InvalidRecordError",
]
