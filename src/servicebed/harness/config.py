"""Configuration model for the ephemeral service harness.

``HarnessConfig`` is a Pydantic v2 model. Every tuning knob of the harness
(poll interval, startup deadline, pull policy, engine binary) lives here
rather than in code, and each can be overridden from ``SERVICEBED_*``
environment variables so CI can stretch deadlines on slow runners without
touching tests.

Key Concepts:
    HarnessConfig: Harness settings. ``from_env()`` reads ``SERVICEBED_*``.
    PullPolicy: Enum of missing, always, never.

Architecture Decisions:
    - from_env() classmethod: Explicit env-var parsing rather than
      ``pydantic-settings``, keeping the dependency surface small.
    - Override precedence: kwargs > env vars > field defaults.
    - ``session_id`` is auto-generated so every container started by one
      config can be found again by label.

Tags:
    config, settings, pydantic, harness, environment
"""

from __future__ import annotations

import os
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class PullPolicy(str, Enum):
    """When to pull the image before starting a container."""

    MISSING = "missing"  # Pull only if not present locally
    ALWAYS = "always"  # Pull on every start
    NEVER = "never"  # Fail if not present locally


class HarnessConfig(BaseModel):
    """Configuration for starting and tearing down ephemeral services.

    Example::

        config = HarnessConfig(startup_timeout_seconds=30, poll_interval_seconds=0.5)
    """

    # Container engine
    docker_command: str = Field(
        default="docker",
        description="Container engine CLI (name on PATH or absolute path)",
    )
    engine_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single engine CLI call (covers image pulls)",
    )
    pull_policy: PullPolicy = Field(
        default=PullPolicy.MISSING,
        description="When to pull images before starting a container",
    )

    # Networking
    bind_host: str = Field(
        default="127.0.0.1",
        description="Host interface exposed ports are published on",
    )

    # Readiness
    poll_interval_seconds: float = Field(
        default=0.25,
        gt=0,
        description="Interval between readiness checks",
    )
    startup_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Deadline for a service to become ready",
    )
    stop_timeout_seconds: int = Field(
        default=0,
        ge=0,
        description="Grace period before force removal (0 removes immediately)",
    )

    # Lifecycle
    keep_containers: bool = Field(
        default=False,
        description="Leave containers running after stop() (for debugging)",
    )
    label_prefix: str = Field(
        default="servicebed",
        description="Label prefix used to find harness containers",
    )

    # Internal
    session_id: str = Field(default="", description="Harness session identifier (auto-generated)")

    @model_validator(mode="after")
    def _set_defaults(self) -> HarnessConfig:
        if not self.session_id:
            self.session_id = uuid.uuid4().hex[:12]
        if self.poll_interval_seconds > self.startup_timeout_seconds:
            raise ValueError(
                "poll_interval_seconds must not exceed startup_timeout_seconds "
                f"({self.poll_interval_seconds} > {self.startup_timeout_seconds})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> HarnessConfig:
        """Create config from SERVICEBED_* environment variables."""
        env_map = {
            "docker_command": "SERVICEBED_DOCKER",
            "engine_timeout_seconds": "SERVICEBED_ENGINE_TIMEOUT",
            "pull_policy": "SERVICEBED_PULL_POLICY",
            "bind_host": "SERVICEBED_BIND_HOST",
            "poll_interval_seconds": "SERVICEBED_POLL_INTERVAL",
            "startup_timeout_seconds": "SERVICEBED_STARTUP_TIMEOUT",
            "keep_containers": "SERVICEBED_KEEP_CONTAINERS",
        }
        values: dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            env_val = os.environ.get(env_var)
            if env_val is not None:
                if field_name == "keep_containers":
                    values[field_name] = env_val.lower() in ("true", "1", "yes")
                elif field_name in ("engine_timeout_seconds", "poll_interval_seconds", "startup_timeout_seconds"):
                    values[field_name] = float(env_val)
                else:
                    values[field_name] = env_val
        values.update(overrides)
        return cls(**values)
