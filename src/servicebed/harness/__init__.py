"""
Ephemeral service harness.

Starts disposable service containers for tests, waits until they are
ready, hands out their published endpoints and guarantees teardown.

Usage::

    from servicebed.harness import POSTGRES, ephemeral_service

    async with ephemeral_service(POSTGRES) as pg:
        host, port = pg.endpoint(5432)
"""

from servicebed.harness.config import HarnessConfig, PullPolicy
from servicebed.harness.engine import ContainerState, DockerEngine
from servicebed.harness.readiness import (
    AllOf,
    HealthCheck,
    LogMessage,
    NoWait,
    PortOpen,
    ProtocolProbe,
    ReadinessCondition,
    WaitFor,
    wait_until_ready,
)
from servicebed.harness.results import CheckResult, CheckStep, OverallStatus
from servicebed.harness.service import (
    Harness,
    ServiceHandle,
    ServiceState,
    engine_available,
    ephemeral_service,
)
from servicebed.harness.specs import POSTGRES, PRESETS, REDIS, GenericImage, ServiceSpec, get_preset

__all__ = [
    # Config
    "HarnessConfig",
    "PullPolicy",
    # Engine
    "DockerEngine",
    "ContainerState",
    # Readiness
    "ReadinessCondition",
    "NoWait",
    "LogMessage",
    "HealthCheck",
    "PortOpen",
    "ProtocolProbe",
    "AllOf",
    "WaitFor",
    "wait_until_ready",
    # Specs
    "ServiceSpec",
    "GenericImage",
    "REDIS",
    "POSTGRES",
    "PRESETS",
    "get_preset",
    # Lifecycle
    "Harness",
    "ServiceHandle",
    "ServiceState",
    "ephemeral_service",
    "engine_available",
    # Results
    "CheckResult",
    "CheckStep",
    "OverallStatus",
]
