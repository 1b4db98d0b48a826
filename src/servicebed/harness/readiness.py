"""Readiness conditions and the bounded poll loop.

A service is *ready* when its readiness condition holds. Conditions are
evaluated against what the harness can observe about a starting container:
its console output, the engine's health status, and its published ports.
``wait_until_ready()`` polls a condition at a fixed interval until it holds
or a deadline passes. This is the only retry-like behaviour in the harness.

Key Concepts:
    ReadinessCondition: Base class, ``async is_ready(target) -> bool``.
    LogMessage: Message appears N times on stdout, stderr or either.
    HealthCheck: Engine reports the container ``healthy``.
    PortOpen: A TCP connect to the published port succeeds.
    ProtocolProbe: A client-level probe (PING, ``SELECT 1``) succeeds.
    AllOf: Every sub-condition holds.
    WaitFor: Factory namespace mirroring the common cases.

Architecture Decisions:
    - The loop suspends with ``asyncio.sleep`` so cancelling the owning task
      interrupts it at once; the caller's ``finally`` does the cleanup.
    - Each check, including the liveness check, is bounded by the time left
      before the deadline, so a hanging probe or a slow engine cannot
      stretch it.
    - Exceptions raised by probes mean "not ready yet", except
      ``ContainerExited`` from ``ensure_running()`` which aborts at once.

Tags:
    readiness, polling, deadline, health, probe, asyncio
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Literal, NamedTuple, Protocol

from servicebed.core.errors import HarnessError, PortNotExposed, StartupTimeout
from servicebed.framework.logging import get_logger

logger = get_logger(__name__)

CONSOLE_GRACE_SECONDS = 1.0
"""Time allowed for reading the last console lines once the deadline has passed."""

Stream = Literal["stdout", "stderr", "any"]

ProbeFn = Callable[[str, int], Awaitable[Any]]
"""Async probe called with the published ``(host, port)``; truthy means ready."""


class ConsoleOutput(NamedTuple):
    """Console output captured from a container so far."""

    stdout: str
    stderr: str

    def stream(self, name: Stream) -> str:
        if name == "stdout":
            return self.stdout
        if name == "stderr":
            return self.stderr
        return self.stdout + self.stderr

    def tail(self, lines: int = 20) -> str:
        combined = (self.stdout + self.stderr).splitlines()
        return "\n".join(combined[-lines:])


class ReadinessTarget(Protocol):
    """What a readiness condition can observe about a starting service."""

    name: str

    async def console(self) -> ConsoleOutput: ...

    async def health_status(self) -> str: ...

    def host_port(self, internal_port: int) -> tuple[str, int]: ...

    async def ensure_running(self) -> None:
        """Raise ``ContainerExited`` if the service is no longer running."""
        ...


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class ReadinessCondition(ABC):
    """A predicate over a starting service."""

    @abstractmethod
    async def is_ready(self, target: ReadinessTarget) -> bool:
        """Return True once the service is ready to accept requests."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable description used in timeout messages."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"


class NoWait(ReadinessCondition):
    """Ready as soon as the container has started."""

    async def is_ready(self, target: ReadinessTarget) -> bool:
        return True

    def describe(self) -> str:
        return "container started"


class LogMessage(ReadinessCondition):
    """The console stream contains ``message`` at least ``times`` times."""

    def __init__(self, message: str, stream: Stream = "stdout", times: int = 1) -> None:
        if not message:
            raise ValueError("LogMessage requires a non-empty message")
        if times < 1:
            raise ValueError(f"times must be >= 1, got {times}")
        self.message = message
        self.stream = stream
        self.times = times

    async def is_ready(self, target: ReadinessTarget) -> bool:
        output = await target.console()
        return output.stream(self.stream).count(self.message) >= self.times

    def describe(self) -> str:
        suffix = f" x{self.times}" if self.times > 1 else ""
        return f"{self.message!r} on {self.stream}{suffix}"


class HealthCheck(ReadinessCondition):
    """The engine reports the container's HEALTHCHECK as ``healthy``."""

    async def is_ready(self, target: ReadinessTarget) -> bool:
        return await target.health_status() == "healthy"

    def describe(self) -> str:
        return "engine health status 'healthy'"


class PortOpen(ReadinessCondition):
    """A TCP connection to the published port succeeds.

    With a userland port proxy the connect can succeed before the service
    itself listens; prefer ``LogMessage`` or ``ProtocolProbe`` when it matters.
    """

    def __init__(self, port: int, connect_timeout: float = 1.0) -> None:
        self.port = port
        self.connect_timeout = connect_timeout

    async def is_ready(self, target: ReadinessTarget) -> bool:
        host, port = target.host_port(self.port)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout,
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    def describe(self) -> str:
        return f"tcp port {self.port} accepting connections"


class ProtocolProbe(ReadinessCondition):
    """A client-level probe against the published port returns truthy."""

    def __init__(self, probe: ProbeFn, port: int, name: str | None = None) -> None:
        self.probe = probe
        self.port = port
        self.name = name or getattr(probe, "__name__", "probe")

    async def is_ready(self, target: ReadinessTarget) -> bool:
        host, port = target.host_port(self.port)
        try:
            return bool(await self.probe(host, port))
        except PortNotExposed:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("readiness.probe_failed", probe=self.name, error=str(exc))
            return False

    def describe(self) -> str:
        return f"{self.name} on port {self.port}"


class AllOf(ReadinessCondition):
    """Every sub-condition holds (evaluated in order, short-circuiting)."""

    def __init__(self, *conditions: ReadinessCondition) -> None:
        if not conditions:
            raise ValueError("AllOf requires at least one condition")
        self.conditions = conditions

    async def is_ready(self, target: ReadinessTarget) -> bool:
        for condition in self.conditions:
            if not await condition.is_ready(target):
                return False
        return True

    def describe(self) -> str:
        return " and ".join(c.describe() for c in self.conditions)


class WaitFor:
    """Factory shortcuts for readiness conditions.

    Example::

        spec = GenericImage("redis").with_wait_for(
            WaitFor.message_on_stdout("Ready to accept connections")
        )
    """

    @staticmethod
    def nothing() -> ReadinessCondition:
        return NoWait()

    @staticmethod
    def message_on_stdout(message: str, times: int = 1) -> ReadinessCondition:
        return LogMessage(message, stream="stdout", times=times)

    @staticmethod
    def message_on_stderr(message: str, times: int = 1) -> ReadinessCondition:
        return LogMessage(message, stream="stderr", times=times)

    @staticmethod
    def message_on_either(message: str, times: int = 1) -> ReadinessCondition:
        return LogMessage(message, stream="any", times=times)

    @staticmethod
    def healthcheck() -> ReadinessCondition:
        return HealthCheck()

    @staticmethod
    def port_open(port: int) -> ReadinessCondition:
        return PortOpen(port)

    @staticmethod
    def probe(probe: ProbeFn, port: int, name: str | None = None) -> ReadinessCondition:
        return ProtocolProbe(probe, port, name=name)

    @staticmethod
    def all_of(*conditions: ReadinessCondition) -> ReadinessCondition:
        return AllOf(*conditions)


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------


async def wait_until_ready(
    condition: ReadinessCondition,
    target: ReadinessTarget,
    *,
    interval: float,
    timeout: float,
) -> int:
    """Poll ``condition`` every ``interval`` seconds until it holds.

    Parameters
    ----------
    condition
        Readiness condition to evaluate.
    target
        The starting service.
    interval
        Seconds between checks.
    timeout
        Deadline in seconds, measured from the call.

    Returns
    -------
    int
        Number of checks performed.

    Raises
    ------
    ContainerExited
        If the service stops running before it is ready.
    StartupTimeout
        If the condition does not hold before the deadline.
    """
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0

    while True:
        attempts += 1
        try:
            await asyncio.wait_for(target.ensure_running(), timeout=_remaining(loop, deadline))
            ready = await asyncio.wait_for(condition.is_ready(target), timeout=_remaining(loop, deadline))
        except TimeoutError:
            ready = False
        if ready:
            logger.debug("readiness.satisfied", attempts=attempts, condition=condition.describe())
            return attempts

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))

    output = await _safe_console(target)
    logger.warning(
        "readiness.timeout",
        timeout_s=timeout,
        attempts=attempts,
        condition=condition.describe(),
    )
    raise StartupTimeout(
        f"{target.name} did not become ready within {timeout:g}s "
        f"(waiting for {condition.describe()})",
        timeout=timeout,
    ).with_context(last_logs=output.tail() if output else "")


def _remaining(loop: asyncio.AbstractEventLoop, deadline: float) -> float:
    return max(deadline - loop.time(), 0.001)


async def _safe_console(target: ReadinessTarget) -> ConsoleOutput | None:
    try:
        return await asyncio.wait_for(target.console(), timeout=CONSOLE_GRACE_SECONDS)
    except (HarnessError, TimeoutError):
        return None
