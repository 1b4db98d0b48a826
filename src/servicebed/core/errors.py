"""
Structured error types for servicebed.

Every failure the harness can surface is a ``HarnessError`` subclass that
carries a category, a context (service, image, container, port) and the
underlying cause. Callers (tests, the CLI) can branch on the type and log
``to_dict()`` without parsing messages.

None of these errors is retried by the harness. The readiness poll loop is
the only retry-like behaviour, and it is a one-time bounded wait.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────┐
        │                       HarnessError                          │
        │            (category, context, cause, retryable)            │
        ├────────────────────────────────────────────────────────────┤
        │  EngineUnavailable     ImagePullFailure    StartupTimeout   │
        │  (ENGINE)              (IMAGE)             (STARTUP)        │
        │  EngineCommandError                            │            │
        │  (ENGINE)                                ContainerExited    │
        │                                                             │
        │  PortNotExposed        ConnectionFailure   QueryFailure     │
        │  (CONFIG)              (CONNECTION)        (QUERY)          │
        └────────────────────────────────────────────────────────────┘

Examples:
    >>> error = StartupTimeout("redis not ready after 5s")
    >>> error.category
    <ErrorCategory.STARTUP: 'STARTUP'>
    >>> error.with_context(service="redis", port=6379).context.service
    'redis'

Tags:
    error-handling, exception-hierarchy, error-context, harness
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for routing and reporting."""

    ENGINE = "ENGINE"
    IMAGE = "IMAGE"
    STARTUP = "STARTUP"
    CONFIG = "CONFIG"
    CONNECTION = "CONNECTION"
    QUERY = "QUERY"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only fields that are set show up in ``to_dict()``; anything that does
    not fit a typed field goes into ``metadata``.

    Attributes:
        service: Logical service name (e.g. ``"redis"``)
        image: Image reference (``name:tag``)
        container: Container name
        port: Internal port involved in the failure
        session_id: Harness session the container belongs to
        metadata: Additional key-value pairs (e.g. last log lines)
    """

    service: str | None = None
    image: str | None = None
    container: str | None = None
    port: int | None = None
    session_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["service", "image", "container", "port", "session_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class HarnessError(Exception):
    """
    Base exception for all servicebed errors.

    Subclasses set ``default_category``; ``cause`` is chained as
    ``__cause__`` so tracebacks show the original client or engine error.

    Examples:
        >>> try:
        ...     raise OSError("connection refused")
        ... except OSError as e:
        ...     error = ConnectionFailure("redis unreachable", cause=e)
        >>> error.cause
        OSError('connection refused')
        >>> error.to_dict()["category"]
        'CONNECTION'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        # Nothing in the harness retries a failed operation.
        return False

    def with_context(self, **kwargs: Any) -> HarnessError:
        """
        Add context to this error (fluent API).

        Usage:
            raise PortNotExposed("port 5432").with_context(service="postgres")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONTAINER ENGINE ERRORS
# =============================================================================


class EngineUnavailable(HarnessError):
    """The container engine CLI is missing or its daemon cannot be reached."""

    default_category = ErrorCategory.ENGINE


class EngineCommandError(HarnessError):
    """A container engine command exited non-zero for another reason."""

    default_category = ErrorCategory.ENGINE

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.stderr = stderr


class ImagePullFailure(HarnessError):
    """The requested image is not present locally and cannot be fetched."""

    default_category = ErrorCategory.IMAGE


# =============================================================================
# STARTUP ERRORS
# =============================================================================


class StartupTimeout(HarnessError):
    """The readiness condition was not observed before the deadline."""

    default_category = ErrorCategory.STARTUP

    def __init__(
        self,
        message: str,
        *,
        timeout: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ContainerExited(StartupTimeout):
    """The container stopped before the readiness condition was met."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


# =============================================================================
# ENDPOINT / CLIENT ERRORS
# =============================================================================


class PortNotExposed(HarnessError):
    """An endpoint was requested for a port that was never declared."""

    default_category = ErrorCategory.CONFIG

    def __init__(self, port: int, message: str | None = None, **kwargs: Any):
        super().__init__(message or f"Port {port}/tcp was not exposed", **kwargs)
        self.context.port = port


class ConnectionFailure(HarnessError):
    """A client could not open a connection to the service endpoint."""

    default_category = ErrorCategory.CONNECTION


class QueryFailure(HarnessError):
    """A request sent over an open connection failed."""

    default_category = ErrorCategory.QUERY


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, HarnessError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.CONNECTION
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "HarnessError",
    "EngineUnavailable",
    "EngineCommandError",
    "ImagePullFailure",
    "StartupTimeout",
    "ContainerExited",
    "PortNotExposed",
    "ConnectionFailure",
    "QueryFailure",
    "categorize_error",
]
