"""Container engine access via the ``docker`` CLI.

Drives the container engine through its CLI with
``asyncio.create_subprocess_exec``, so every engine call suspends the
calling task rather than blocking the event loop. No docker SDK
dependency; works with any runtime exposing a ``docker``-compatible CLI
(Docker Desktop, Podman, Colima, CI runners).

Key Concepts:
    DockerEngine: Async wrapper: ``ping()``, ``ensure_image()``,
        ``run()``, ``host_port()``, ``logs()``, ``state()``, ``health()``,
        ``remove()``, ``list_containers()``.
    ContainerState: Status/exit code/health snapshot from ``docker inspect``.
    remove_sync(): Blocking removal used from ``atexit`` hooks.

Architecture Decisions:
    - subprocess, not docker-py: Avoids a heavy dependency and works with
      any container runtime exposing a ``docker`` CLI.
    - Label-based tracking: Every container gets ``<prefix>.*`` labels
      so ``cleanup_orphans()`` can find and remove leftovers.
    - Random host ports: Exposed ports are published as
      ``<bind_host>::<port>`` and resolved afterwards with ``docker port``,
      so concurrent instances never collide.
    - Error mapping: CLI missing / daemon down -> ``EngineUnavailable``,
      pull errors -> ``ImagePullFailure``, anything else non-zero ->
      ``EngineCommandError``.

Tags:
    container, docker, lifecycle, subprocess, asyncio, labels, cleanup
"""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any

from servicebed.core.errors import (
    EngineCommandError,
    EngineUnavailable,
    ImagePullFailure,
    PortNotExposed,
)
from servicebed.framework.logging import get_logger
from servicebed.harness.config import PullPolicy
from servicebed.harness.specs import url_host

logger = get_logger(__name__)

# Substrings the docker CLI prints when an image reference cannot be fetched
_PULL_ERROR_MARKERS = (
    "pull access denied",
    "manifest unknown",
    "not found",
    "repository does not exist",
    "unauthorized",
    "invalid reference format",
)

# Substrings the docker CLI prints when it cannot reach the daemon
_DAEMON_ERROR_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "connection refused",
)


@dataclass
class CommandResult:
    """Outcome of one engine CLI call."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ContainerState:
    """Snapshot of a container's runtime state."""

    status: str  # created, running, exited, dead, not_found
    exit_code: int | None = None
    health: str = "none"  # healthy, unhealthy, starting, none

    @property
    def running(self) -> bool:
        return self.status in ("created", "running", "restarting")


class DockerEngine:
    """Async container engine client backed by the ``docker`` CLI.

    Parameters
    ----------
    docker_command
        CLI name on PATH or absolute path.
    timeout
        Default timeout in seconds for a single CLI call.

    Example::

        engine = DockerEngine()
        await engine.ping()
        container_id = await engine.run("redis:latest", name="sb-redis", ports=[6379])
        host, port = await engine.host_port("sb-redis", 6379)
        await engine.remove("sb-redis")
    """

    def __init__(self, docker_command: str = "docker", timeout: float = 120.0) -> None:
        self.docker_command = docker_command
        self.timeout = timeout
        self._docker_path: str | None = None

    # ------------------------------------------------------------------
    # CLI discovery
    # ------------------------------------------------------------------

    def _find_docker(self) -> str:
        """Resolve the docker CLI binary."""
        if self._docker_path is None:
            docker = shutil.which(self.docker_command)
            if docker is None:
                raise EngineUnavailable(
                    f"Container engine CLI {self.docker_command!r} not found on PATH. "
                    "Install Docker (or a compatible runtime) or set SERVICEBED_DOCKER."
                )
            self._docker_path = docker
        return self._docker_path

    async def ping(self) -> str:
        """Check that the engine daemon answers; returns the server version."""
        result = await self._run(["version", "--format", "{{.Server.Version}}"], timeout=30)
        if not result.ok:
            raise EngineUnavailable(
                f"Container engine is not reachable: {result.stderr.strip() or 'docker version failed'}"
            )
        return result.stdout.strip()

    async def is_available(self) -> bool:
        """True if the CLI exists and the daemon answers."""
        try:
            await self.ping()
        except EngineUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def image_exists(self, reference: str) -> bool:
        result = await self._run(["image", "inspect", "--format", "{{.Id}}", reference])
        return result.ok

    async def pull(self, reference: str) -> None:
        """Pull an image, mapping failures to ``ImagePullFailure``."""
        logger.info("image.pull", image=reference)
        result = await self._run(["pull", "--quiet", reference])
        if not result.ok:
            raise ImagePullFailure(
                f"Failed to pull image {reference!r}: {result.stderr.strip()}"
            ).with_context(image=reference)

    async def ensure_image(self, reference: str, policy: PullPolicy = PullPolicy.MISSING) -> None:
        """Make sure ``reference`` is available locally according to ``policy``."""
        if policy == PullPolicy.ALWAYS:
            await self.pull(reference)
            return
        if await self.image_exists(reference):
            return
        if policy == PullPolicy.NEVER:
            raise ImagePullFailure(
                f"Image {reference!r} is not present locally and pull policy is 'never'"
            ).with_context(image=reference)
        await self.pull(reference)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def run(
        self,
        reference: str,
        *,
        name: str,
        ports: list[int] | tuple[int, ...] = (),
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
        command: list[str] | tuple[str, ...] = (),
        bind_host: str = "127.0.0.1",
    ) -> str:
        """Create and start a detached container; returns its short id."""
        cmd = ["run", "--detach", "--name", name]

        for port in ports:
            cmd.extend(["--publish", f"{url_host(bind_host)}::{port}/tcp"])

        for key, value in (env or {}).items():
            cmd.extend(["--env", f"{key}={value}"])

        for key, value in (labels or {}).items():
            cmd.extend(["--label", f"{key}={value}"])

        cmd.append(reference)
        cmd.extend(command)

        result = await self._run(cmd)
        if not result.ok:
            if _looks_like_pull_error(result.stderr):
                raise ImagePullFailure(
                    f"Failed to start {reference!r}: {result.stderr.strip()}"
                ).with_context(image=reference, container=name)
            raise EngineCommandError(
                f"docker run failed for {reference!r} (exit {result.returncode}): {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            ).with_context(image=reference, container=name)

        container_id = result.stdout.strip()[:12]
        logger.info("container.started", container=name, image=reference, container_id=container_id)
        return container_id

    async def host_port(self, container: str, internal_port: int) -> tuple[str, int]:
        """Resolve the host address a container port is published on."""
        result = await self._run(["port", container, f"{internal_port}/tcp"])
        if not result.ok or not result.stdout.strip():
            raise PortNotExposed(
                internal_port,
                f"Port {internal_port}/tcp of {container} is not published",
            ).with_context(container=container)
        # One line per binding: "127.0.0.1:49153" or "[::]:49153"
        first = result.stdout.strip().splitlines()[0].strip()
        host, _, port_str = first.rpartition(":")
        host = host.strip("[]")
        if host in ("0.0.0.0", "::", ""):
            host = "127.0.0.1"
        return host, int(port_str)

    async def logs(self, container: str, tail: int | None = None) -> tuple[str, str]:
        """Return the container's (stdout, stderr) so far."""
        cmd = ["logs"]
        if tail is not None:
            cmd.extend(["--tail", str(tail)])
        cmd.append(container)
        result = await self._run(cmd)
        return result.stdout, result.stderr

    async def state(self, container: str) -> ContainerState:
        """Inspect status, exit code and health of a container."""
        result = await self._run(["inspect", "--format", "{{json .State}}", container])
        if not result.ok:
            return ContainerState(status="not_found")
        try:
            raw = json.loads(result.stdout.strip() or "{}")
        except json.JSONDecodeError:
            return ContainerState(status="unknown")
        health = (raw.get("Health") or {}).get("Status", "none")
        return ContainerState(
            status=raw.get("Status", "unknown"),
            exit_code=raw.get("ExitCode"),
            health=health,
        )

    async def health(self, container: str) -> str:
        return (await self.state(container)).health

    async def remove(self, container: str, stop_timeout: int = 10) -> None:
        """Stop and remove a container and its anonymous volumes.

        Missing containers are not an error.
        """
        if stop_timeout:
            await self._run(["stop", "--time", str(stop_timeout), container])
        result = await self._run(["rm", "--force", "--volumes", container])
        if not result.ok and "no such container" not in result.stderr.lower():
            raise EngineCommandError(
                f"Failed to remove container {container}: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            ).with_context(container=container)
        logger.info("container.removed", container=container)

    async def list_containers(self, label_filters: dict[str, str]) -> list[dict[str, Any]]:
        """List containers (any state) matching all label filters."""
        cmd = ["ps", "--all", "--format", "{{json .}}"]
        for key, value in label_filters.items():
            cmd.extend(["--filter", f"label={key}={value}" if value else f"label={key}"])
        result = await self._run(cmd)
        containers = []
        for line in result.stdout.strip().splitlines():
            if line.strip():
                try:
                    containers.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.debug("docker.ps.unparsable", line=line)
        return containers

    def remove_sync(self, containers: list[str]) -> None:
        """Blocking removal for interpreter shutdown (no event loop)."""
        if not containers:
            return
        try:
            subprocess.run(
                [self._find_docker(), "rm", "--force", "--volumes", *containers],
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError, EngineUnavailable) as exc:
            logger.warning("container.remove_sync_failed", containers=containers, error=str(exc))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run(
        self,
        args: list[str],
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a docker CLI command without blocking the event loop.

        A non-zero exit is returned to the caller, except daemon errors which
        raise ``EngineUnavailable``.
        """
        cmd = [self._find_docker(), *args]
        effective = timeout or self.timeout
        logger.debug("docker.exec", cmd=" ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EngineUnavailable(f"Failed to execute {cmd[0]}: {exc}", cause=exc) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=effective)
        except TimeoutError as exc:
            _kill(process)
            await process.wait()
            raise EngineUnavailable(
                f"Container engine command timed out after {effective:g}s: {' '.join(args)}",
                cause=exc,
            ) from exc
        except asyncio.CancelledError:
            _kill(process)
            raise

        result = CommandResult(
            args=args,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if not result.ok and _looks_like_daemon_error(result.stderr):
            raise EngineUnavailable(f"Container engine is not reachable: {result.stderr.strip()}")
        return result


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _looks_like_pull_error(stderr: str) -> bool:
    lowered = stderr.lower()
    if not any(marker in lowered for marker in _PULL_ERROR_MARKERS):
        return False
    return "unable to find image" in lowered or "pull" in lowered or "manifest" in lowered


def _looks_like_daemon_error(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _DAEMON_ERROR_MARKERS)
