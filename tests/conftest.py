"""
Shared pytest fixtures and configuration for servicebed tests.

This module provides:
- Auto-marking of unit / integration tests by location
- ``FakeEngine``: an in-memory stand-in for ``DockerEngine``
- A fast ``HarnessConfig`` for lifecycle tests

Usage:
    async def test_start(fake_engine, fast_config):
        harness = Harness(fast_config, engine=fake_engine)
"""

import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure servicebed package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from servicebed.core.errors import PortNotExposed
from servicebed.harness.config import HarnessConfig, PullPolicy
from servicebed.harness.engine import ContainerState


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Fake container engine
# =============================================================================


class FakeEngine:
    """In-memory container engine.

    Containers "run" until removed. Console output is whatever ``stdout`` /
    ``stderr`` hold when ``logs()`` is called; ``ready_after`` delays it by
    that many ``logs()`` calls.
    """

    def __init__(
        self,
        stdout: str = "",
        stderr: str = "",
        status: str = "running",
        exit_code: int | None = None,
        health: str = "none",
        ready_after: int = 0,
    ) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.status = status
        self.exit_code = exit_code
        self.health_status = health
        self.ready_after = ready_after
        self.ping_error: Exception | None = None
        self.pull_error: Exception | None = None
        self.run_error: Exception | None = None
        self.containers: dict[str, dict[str, Any]] = {}
        self.removed: list[str] = []
        self.pulled: list[tuple[str, PullPolicy]] = []
        self.log_calls = 0
        self._next_port = 49000

    async def ping(self) -> str:
        if self.ping_error:
            raise self.ping_error
        return "fake-25.0"

    async def ensure_image(self, reference: str, policy: PullPolicy = PullPolicy.MISSING) -> None:
        self.pulled.append((reference, policy))
        if self.pull_error:
            raise self.pull_error

    async def run(self, reference, *, name, ports=(), env=None, labels=None, command=(), bind_host="127.0.0.1"):
        if self.run_error:
            raise self.run_error
        published = {}
        for port in ports:
            self._next_port += 1
            published[port] = self._next_port
        self.containers[name] = {
            "image": reference,
            "ports": published,
            "env": dict(env or {}),
            "labels": dict(labels or {}),
            "command": tuple(command),
            "bind_host": bind_host,
        }
        return f"c{len(self.containers):011d}"

    async def host_port(self, container: str, internal_port: int) -> tuple[str, int]:
        info = self.containers.get(container)
        if info is None or internal_port not in info["ports"]:
            raise PortNotExposed(internal_port)
        return info["bind_host"], info["ports"][internal_port]

    async def logs(self, container: str, tail: int | None = None) -> tuple[str, str]:
        self.log_calls += 1
        if self.log_calls <= self.ready_after:
            return "", ""
        return self.stdout, self.stderr

    async def state(self, container: str) -> ContainerState:
        if container not in self.containers:
            return ContainerState(status="not_found")
        return ContainerState(status=self.status, exit_code=self.exit_code, health=self.health_status)

    async def health(self, container: str) -> str:
        return (await self.state(container)).health

    async def remove(self, container: str, stop_timeout: int = 10) -> None:
        self.removed.append(container)
        self.containers.pop(container, None)

    async def list_containers(self, label_filters: dict[str, str]) -> list[dict[str, Any]]:
        return [
            {"Names": name, "Image": info["image"]}
            for name, info in self.containers.items()
            if all(info["labels"].get(k) == v for k, v in label_filters.items())
        ]

    def remove_sync(self, containers: list[str]) -> None:
        for name in containers:
            self.removed.append(name)
            self.containers.pop(name, None)


@pytest.fixture
def fake_engine() -> FakeEngine:
    """Engine whose containers print the redis ready line immediately."""
    return FakeEngine(stdout="* Ready to accept connections tcp\n")


@pytest.fixture
def fast_config() -> HarnessConfig:
    """Harness config with short poll interval and deadline."""
    return HarnessConfig(poll_interval_seconds=0.01, startup_timeout_seconds=1.0)


@pytest.fixture
def make_engine():
    """Factory for FakeEngine with custom console/state behaviour."""
    return FakeEngine
