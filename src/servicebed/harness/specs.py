"""Service specifications and the preset registry.

A ``ServiceSpec`` carries everything needed to start, wait for, and connect
to one disposable service container: image and tag, exposed ports,
environment, readiness condition and, for presets, a connection URL
template. Specs are frozen; the ``with_*`` builder methods return copies,
so a preset can be customised per test without affecting other tests.

Key Concepts:
    ServiceSpec: Frozen dataclass of image, ports, env, readiness condition.
    GenericImage: Builder entry point, ``GenericImage("redis", "7")``.
    REDIS / POSTGRES: Pre-defined specs for the two services the
        integration suite exercises.
    PRESETS: Registry dict mapping name -> ServiceSpec.

Architecture Decisions:
    - Frozen dataclasses (not Pydantic): Specs are constants built in code,
      not user input. Frozen prevents accidental mutation across tests.
    - ``connection_url_template`` with ``{user}/{password}/{host}/{port}/{db}``
      placeholders: Defers binding until the published port is known.
    - Case-insensitive lookup: ``get_preset("Redis")`` works.

Tags:
    specs, images, presets, registry, builder
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from servicebed.harness.readiness import NoWait, ReadinessCondition, WaitFor


@dataclass(frozen=True)
class ServiceSpec:
    """Specification for a disposable service container."""

    image: str
    """Image repository (e.g. 'redis', 'postgres')."""

    tag: str = "latest"
    """Image tag."""

    exposed_ports: tuple[int, ...] = ()
    """Internal TCP ports published on random host ports."""

    env: dict[str, str] = field(default_factory=dict)
    """Environment variables for the container (credentials etc.)."""

    wait_for: ReadinessCondition = field(default_factory=NoWait)
    """Condition that must hold before the service counts as ready."""

    labels: dict[str, str] = field(default_factory=dict)
    """Extra container labels."""

    command: tuple[str, ...] = ()
    """Overrides the image's default command when non-empty."""

    startup_timeout: float | None = None
    """Per-spec readiness deadline; falls back to the harness config."""

    name: str = ""
    """Logical service name used in container names and logs."""

    connection_url_template: str = ""
    """URL template with {user}, {password}, {host}, {port}, {db} placeholders."""

    default_user: str = ""
    default_password: str = ""
    default_database: str = ""

    credential_env: tuple[str, str, str] | None = None
    """Env var names holding (user, password, database); they win over the defaults."""

    @property
    def reference(self) -> str:
        """Full image reference (``image:tag``)."""
        return f"{self.image}:{self.tag}" if self.tag else self.image

    @property
    def service_name(self) -> str:
        return self.name or self.image.rsplit("/", 1)[-1]

    @property
    def primary_port(self) -> int | None:
        return self.exposed_ports[0] if self.exposed_ports else None

    # ------------------------------------------------------------------
    # Builder
    # ------------------------------------------------------------------

    def with_exposed_port(self, port: int) -> ServiceSpec:
        if not 0 < port < 65536:
            raise ValueError(f"Invalid port: {port}")
        if port in self.exposed_ports:
            return self
        return replace(self, exposed_ports=(*self.exposed_ports, port))

    def with_env_var(self, key: str, value: str) -> ServiceSpec:
        return replace(self, env={**self.env, key: str(value)})

    def with_wait_for(self, condition: ReadinessCondition) -> ServiceSpec:
        return replace(self, wait_for=condition)

    def with_label(self, key: str, value: str) -> ServiceSpec:
        return replace(self, labels={**self.labels, key: value})

    def with_command(self, *command: str) -> ServiceSpec:
        return replace(self, command=tuple(command))

    def with_startup_timeout(self, seconds: float) -> ServiceSpec:
        if seconds <= 0:
            raise ValueError(f"startup timeout must be positive, got {seconds}")
        return replace(self, startup_timeout=seconds)

    def with_name(self, name: str) -> ServiceSpec:
        return replace(self, name=name)

    def connection_url(self, host: str, port: int) -> str:
        """Build a connection URL for a running instance."""
        if not self.connection_url_template:
            raise ValueError(f"Service {self.service_name!r} has no connection URL template")
        user, password, database = self.default_user, self.default_password, self.default_database
        if self.credential_env:
            user_var, password_var, db_var = self.credential_env
            user = self.env.get(user_var, user)
            password = self.env.get(password_var, password)
            database = self.env.get(db_var, database)
        return self.connection_url_template.format(
            user=user,
            password=password,
            host=url_host(host),
            port=port,
            db=database,
        )


def url_host(host: str) -> str:
    """Host as it appears in a URL or ``--publish`` spec; IPv6 gets brackets."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


def GenericImage(image: str, tag: str = "latest") -> ServiceSpec:  # noqa: N802
    """Start building a spec for an arbitrary image."""
    return ServiceSpec(image=image, tag=tag)


# ---------------------------------------------------------------------------
# Pre-defined services
# ---------------------------------------------------------------------------

REDIS = ServiceSpec(
    name="redis",
    image="redis",
    tag="latest",
    exposed_ports=(6379,),
    wait_for=WaitFor.message_on_stdout("Ready to accept connections"),
    connection_url_template="redis://{host}:{port}/0",
)

POSTGRES = ServiceSpec(
    name="postgres",
    image="postgres",
    tag="latest",
    exposed_ports=(5432,),
    env={
        "POSTGRES_PASSWORD": "password",
        "POSTGRES_USER": "postgres",
        "POSTGRES_DB": "postgres",
    },
    # The entrypoint runs a temporary server for initdb first; the second
    # occurrence comes from the real server.
    wait_for=WaitFor.message_on_stderr("database system is ready to accept connections", times=2),
    connection_url_template="postgresql://{user}:{password}@{host}:{port}/{db}",
    default_user="postgres",
    default_password="password",
    default_database="postgres",
    credential_env=("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_DB"),
)


PRESETS: dict[str, ServiceSpec] = {
    "redis": REDIS,
    "postgres": POSTGRES,
}


def get_preset(name: str) -> ServiceSpec:
    """Look up a preset spec by name.

    Parameters
    ----------
    name
        Preset name (case-insensitive).

    Raises
    ------
    ValueError
        If the preset name is not recognized.
    """
    key = name.lower().strip()
    if key not in PRESETS:
        available = ", ".join(sorted(PRESETS.keys()))
        raise ValueError(f"Unknown preset: {name!r}. Available: {available}")
    return PRESETS[key]
