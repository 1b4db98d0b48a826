"""Ephemeral service harness: scoped acquisition of disposable services.

``Harness`` starts a container from a ``ServiceSpec``, waits for its
readiness condition, exposes the published endpoint through a
``ServiceHandle`` and guarantees teardown. The intended entry point in tests
is the scoped form, which releases the container on every exit path
(normal return, failed assertion, cancellation)::

    async with ephemeral_service(REDIS) as redis:
        host, port = redis.endpoint()

Lifecycle::

    STARTING ──ready──► READY ──stop()──► STOPPED
        │                                   ▲
        └──── timeout / exit / error ───────┘

Key Concepts:
    ServiceHandle: Owned reference to a running instance (container,
        host, port map, state).
    Harness: ``start()``, ``resolve_endpoint()``, ``stop()``,
        ``service()`` (scoped), ``cleanup_orphans()``.
    ephemeral_service(): Factory for one scoped service per test, instead
        of a shared fixture.

Architecture Decisions:
    - Failed starts remove the container before the error propagates, so a
      ``StartupTimeout`` never leaves an instance running.
    - Removal after an error or cancellation runs under ``asyncio.shield``.
    - Containers not yet removed are tracked in a process-wide registry and
      force-removed from an ``atexit`` hook as a last resort.
    - No shared mutable state between handles: concurrent tests each own
      their container, name and ports.

Tags:
    harness, lifecycle, scoped-resource, teardown, asyncio, containers
"""

from __future__ import annotations

import asyncio
import atexit
import re
import threading
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from servicebed.core.errors import ContainerExited, HarnessError, PortNotExposed
from servicebed.framework.logging import get_logger, log_step, push_context
from servicebed.harness.config import HarnessConfig
from servicebed.harness.engine import DockerEngine
from servicebed.harness.readiness import ConsoleOutput, wait_until_ready
from servicebed.harness.specs import ServiceSpec

logger = get_logger(__name__)

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


class ServiceState(str, Enum):
    """Lifecycle state of a service handle."""

    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"


@dataclass(eq=False)
class ServiceHandle:
    """Reference to one running service instance.

    Owned exclusively by the scope that created it. Connections opened
    from its endpoint must be closed before the handle is stopped.
    """

    spec: ServiceSpec
    container_name: str
    session_id: str
    container_id: str = ""
    host: str = "127.0.0.1"
    ports: dict[int, int] = field(default_factory=dict)
    state: ServiceState = ServiceState.STARTING
    started_at: float = 0.0
    startup_ms: float = 0.0
    readiness_checks: int = 0

    @property
    def name(self) -> str:
        return self.spec.service_name

    @property
    def image(self) -> str:
        return self.spec.reference

    @property
    def uptime_seconds(self) -> float:
        if self.state is not ServiceState.READY or not self.started_at:
            return 0.0
        return time.time() - self.started_at

    def endpoint(self, internal_port: int | None = None) -> tuple[str, int]:
        """Host address of ``internal_port`` (default: first exposed port)."""
        port = internal_port if internal_port is not None else self.spec.primary_port
        if port is None or port not in self.ports:
            raise PortNotExposed(port or 0).with_context(
                service=self.name,
                container=self.container_name,
            )
        if self.state is ServiceState.STOPPED:
            raise PortNotExposed(port, f"Service {self.name} is stopped; port {port} is gone").with_context(
                service=self.name,
                container=self.container_name,
            )
        return self.host, self.ports[port]

    def url(self, internal_port: int | None = None) -> str:
        """Connection URL built from the spec's template."""
        host, port = self.endpoint(internal_port)
        return self.spec.connection_url(host=host, port=port)


class _LiveContainers:
    """Process-wide record of containers that still need removal."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_engine: dict[DockerEngine, set[str]] = {}
        self._hooked = False

    def add(self, engine: DockerEngine, container: str) -> None:
        with self._lock:
            self._by_engine.setdefault(engine, set()).add(container)
            if not self._hooked:
                atexit.register(self.remove_all)
                self._hooked = True

    def discard(self, engine: DockerEngine, container: str) -> None:
        with self._lock:
            names = self._by_engine.get(engine)
            if names is not None:
                names.discard(container)
                if not names:
                    del self._by_engine[engine]

    def snapshot(self) -> dict[DockerEngine, list[str]]:
        with self._lock:
            return {engine: sorted(names) for engine, names in self._by_engine.items()}

    def remove_all(self) -> None:
        for engine, names in self.snapshot().items():
            logger.warning("container.exit_cleanup", containers=names)
            engine.remove_sync(names)
            for name in names:
                self.discard(engine, name)


_live_containers = _LiveContainers()


class _StartingService:
    """Readiness target backed by the engine."""

    def __init__(self, engine: DockerEngine, handle: ServiceHandle) -> None:
        self.engine = engine
        self.handle = handle
        self.name = f"{handle.name} ({handle.container_name})"

    async def console(self) -> ConsoleOutput:
        stdout, stderr = await self.engine.logs(self.handle.container_name)
        return ConsoleOutput(stdout, stderr)

    async def health_status(self) -> str:
        return await self.engine.health(self.handle.container_name)

    def host_port(self, internal_port: int) -> tuple[str, int]:
        if internal_port not in self.handle.ports:
            raise PortNotExposed(internal_port).with_context(service=self.handle.name)
        return self.handle.host, self.handle.ports[internal_port]

    async def ensure_running(self) -> None:
        state = await self.engine.state(self.handle.container_name)
        if state.running:
            return
        stdout, stderr = await self.engine.logs(self.handle.container_name, tail=20)
        raise ContainerExited(
            f"Container {self.handle.container_name} exited before becoming ready "
            f"(status={state.status}, exit_code={state.exit_code})",
            exit_code=state.exit_code,
        ).with_context(last_logs=ConsoleOutput(stdout, stderr).tail())


class Harness:
    """Starts, resolves and stops ephemeral services.

    Parameters
    ----------
    config
        Harness settings (defaults to ``HarnessConfig.from_env()``).
    engine
        Container engine client (defaults to a ``DockerEngine`` built from
        the config).

    Example::

        harness = Harness()
        handle = await harness.start(POSTGRES)
        try:
            host, port = harness.resolve_endpoint(handle, 5432)
        finally:
            await harness.stop(handle)
    """

    def __init__(
        self,
        config: HarnessConfig | None = None,
        engine: DockerEngine | None = None,
    ) -> None:
        self.config = config or HarnessConfig.from_env()
        self.engine = engine or DockerEngine(
            docker_command=self.config.docker_command,
            timeout=self.config.engine_timeout_seconds,
        )
        self._engine_version: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, spec: ServiceSpec) -> ServiceHandle:
        """Start a service and wait until its readiness condition holds.

        Raises
        ------
        EngineUnavailable
            If the container engine cannot be reached.
        ImagePullFailure
            If the image cannot be fetched.
        StartupTimeout
            If the service is not ready before the deadline (the container
            is removed first). ``ContainerExited`` if it died while starting.
        """
        handle = ServiceHandle(
            spec=spec,
            container_name=self._container_name(spec),
            session_id=self.config.session_id,
        )
        timeout = spec.startup_timeout or self.config.startup_timeout_seconds
        token = push_context(
            session_id=handle.session_id,
            service=handle.name,
            container=handle.container_name,
            image=handle.image,
        )
        created = False
        try:
            with log_step("service.start", image=handle.image, timeout_s=timeout) as timer:
                await self._ensure_engine()
                await self.engine.ensure_image(spec.reference, self.config.pull_policy)

                created = True
                _live_containers.add(self.engine, handle.container_name)
                handle.container_id = await self.engine.run(
                    spec.reference,
                    name=handle.container_name,
                    ports=spec.exposed_ports,
                    env=spec.env,
                    labels=self._labels(handle),
                    command=spec.command,
                    bind_host=self.config.bind_host,
                )
                handle.started_at = time.time()

                for internal_port in spec.exposed_ports:
                    host, host_port = await self.engine.host_port(handle.container_name, internal_port)
                    handle.host = host
                    handle.ports[internal_port] = host_port

                handle.readiness_checks = await wait_until_ready(
                    spec.wait_for,
                    _StartingService(self.engine, handle),
                    interval=self.config.poll_interval_seconds,
                    timeout=timeout,
                )
                handle.state = ServiceState.READY
                handle.startup_ms = timer.duration_ms
                timer.add_metric("ports", dict(handle.ports))
                timer.add_metric("checks", handle.readiness_checks)
        except BaseException as exc:
            handle.state = ServiceState.STOPPED
            if created:
                await asyncio.shield(self._discard(handle))
            if isinstance(exc, HarnessError):
                exc.with_context(
                    service=handle.name,
                    image=handle.image,
                    container=handle.container_name,
                    session_id=handle.session_id,
                )
            raise
        finally:
            token.restore()

        logger.info(
            "service.ready",
            service=handle.name,
            container=handle.container_name,
            host=handle.host,
            ports=dict(handle.ports),
            startup_ms=f"{handle.startup_ms:.0f}",
        )
        return handle

    def resolve_endpoint(self, handle: ServiceHandle, internal_port: int) -> tuple[str, int]:
        """Map an internal port to the externally reachable ``(host, port)``.

        Raises ``PortNotExposed`` if the port was not declared at start time.
        """
        return handle.endpoint(internal_port)

    async def stop(self, handle: ServiceHandle) -> None:
        """Release the service instance. Calling it again is a no-op."""
        if handle.state is ServiceState.STOPPED:
            return
        uptime = handle.uptime_seconds
        handle.state = ServiceState.STOPPED

        if self.config.keep_containers:
            _live_containers.discard(self.engine, handle.container_name)
            logger.warning("container.kept", container=handle.container_name, ports=dict(handle.ports))
            return

        await self.engine.remove(handle.container_name, stop_timeout=self.config.stop_timeout_seconds)
        _live_containers.discard(self.engine, handle.container_name)
        logger.info(
            "service.stopped",
            service=handle.name,
            container=handle.container_name,
            uptime_s=round(uptime, 2),
        )

    @asynccontextmanager
    async def service(self, spec: ServiceSpec) -> AsyncIterator[ServiceHandle]:
        """Scoped acquisition: start on entry, stop on every exit path."""
        handle = await self.start(spec)
        try:
            yield handle
        except BaseException:
            await asyncio.shield(self._stop_quietly(handle))
            raise
        await asyncio.shield(self.stop(handle))

    # ------------------------------------------------------------------
    # Diagnostics / housekeeping
    # ------------------------------------------------------------------

    async def collect_logs(self, handle: ServiceHandle, tail: int | None = None) -> str:
        """Return the container's console output (stdout then stderr)."""
        stdout, stderr = await self.engine.logs(handle.container_name, tail=tail)
        return stdout + stderr

    async def cleanup_orphans(self, session_only: bool = False) -> int:
        """Remove leftover harness containers; returns how many were removed."""
        await self._ensure_engine()
        filters = {f"{self.config.label_prefix}.managed": "true"}
        if session_only:
            filters[f"{self.config.label_prefix}.session"] = self.config.session_id
        removed = 0
        for container in await self.engine.list_containers(filters):
            name = container.get("Names") or container.get("ID", "")
            if not name:
                continue
            await self.engine.remove(name, stop_timeout=0)
            _live_containers.discard(self.engine, name)
            removed += 1
        if removed:
            logger.info("cleanup.complete", containers_removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _ensure_engine(self) -> None:
        if self._engine_version is None:
            self._engine_version = await self.engine.ping()
            logger.debug("engine.available", version=self._engine_version)

    async def _discard(self, handle: ServiceHandle) -> None:
        """Remove a container whose start failed; never masks the original error."""
        try:
            await self.engine.remove(handle.container_name, stop_timeout=0)
            _live_containers.discard(self.engine, handle.container_name)
        except (HarnessError, OSError) as exc:
            logger.warning("container.discard_failed", container=handle.container_name, error=str(exc))

    async def _stop_quietly(self, handle: ServiceHandle) -> None:
        try:
            await self.stop(handle)
        except (HarnessError, OSError) as exc:
            logger.warning("service.stop_failed", container=handle.container_name, error=str(exc))

    def _container_name(self, spec: ServiceSpec) -> str:
        service = _NAME_UNSAFE.sub("-", spec.service_name).strip("-.") or "service"
        return f"{self.config.label_prefix}-{service}-{self.config.session_id[:8]}-{uuid.uuid4().hex[:6]}"

    def _labels(self, handle: ServiceHandle) -> dict[str, str]:
        prefix = self.config.label_prefix
        return {
            **handle.spec.labels,
            f"{prefix}.managed": "true",
            f"{prefix}.session": handle.session_id,
            f"{prefix}.service": handle.name,
        }


@asynccontextmanager
async def ephemeral_service(
    spec: ServiceSpec,
    config: HarnessConfig | None = None,
    engine: DockerEngine | None = None,
) -> AsyncIterator[ServiceHandle]:
    """Start one service for the current scope and stop it on exit.

    Call it at the start of each test that needs the service; every call
    owns its own container.
    """
    async with Harness(config, engine=engine).service(spec) as handle:
        yield handle


async def engine_available(config: HarnessConfig | None = None) -> bool:
    """True if the configured container engine can be reached."""
    config = config or HarnessConfig.from_env()
    engine = DockerEngine(config.docker_command, timeout=config.engine_timeout_seconds)
    return await engine.is_available()
