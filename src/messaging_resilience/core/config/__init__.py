"""
Configuration Module

Centralized, type-safe configuration for the resilience engines.

Components:
-----------
- **settings.py**: Pydantic-based settings with environment variable loading
- **constants.py**: State enums, retention caps, topology names

Usage:
------
```python
from messaging_resilience.core.config import get_settings
from messaging_resilience.core.config.constants import CircuitState

settings = get_settings()
window = settings.circuit_breaker.CB_WINDOW_MS
```
"""

from messaging_resilience.core.config.constants import (
    BackpressureStrategy,
    CallOutcome,
    CircuitState,
    DlqStatus,
    DropPolicy,
    FailureMode,
    OutboxStatus,
    SagaOutcome,
    SagaStepStatus,
)
from messaging_resilience.core.config.settings import Settings, get_settings, reload_settings

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "reload_settings",
    # Enums
    "BackpressureStrategy",
    "CallOutcome",
    "CircuitState",
    "DlqStatus",
    "DropPolicy",
    "FailureMode",
    "OutboxStatus",
    "SagaOutcome",
    "SagaStepStatus",
]
