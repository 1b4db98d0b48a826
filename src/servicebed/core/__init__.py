"""servicebed core -- primitives shared by every layer.

Layer 1 -- Errors
    errors.py          Structured error hierarchy (HarnessError and subclasses)
"""

from servicebed.core.errors import (
    ConnectionFailure,
    ContainerExited,
    EngineCommandError,
    EngineUnavailable,
    ErrorCategory,
    ErrorContext,
    HarnessError,
    ImagePullFailure,
    PortNotExposed,
    QueryFailure,
    StartupTimeout,
)

__all__ = [
    "ConnectionFailure",
    "ContainerExited",
    "EngineCommandError",
    "EngineUnavailable",
    "ErrorCategory",
    "ErrorContext",
    "HarnessError",
    "ImagePullFailure",
    "PortNotExposed",
    "QueryFailure",
    "StartupTimeout",
]
