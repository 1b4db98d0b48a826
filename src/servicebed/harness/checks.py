"""Service checks: start a preset, exercise it, stop it.

A check is the smallest end-to-end proof that a service works from the
caller's side: the harness starts it, a client connects to the published
endpoint and performs one round trip, and the service is stopped again.
The outcome is a ``CheckResult`` with one step per stage.

Round trips:
    redis: SET ``test_key`` = ``test_value``, GET it back byte-equal.
    postgres: ``SELECT 1 AS result`` returns exactly one row holding 1.

Tags:
    checks, smoke, redis, postgres, harness
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from servicebed.core.errors import ConnectionFailure, HarnessError, QueryFailure
from servicebed.framework.logging import get_logger, timed_block
from servicebed.harness.clients import (
    kv_roundtrip,
    postgres_connection,
    query_scalar,
    redis_client,
)
from servicebed.harness.config import HarnessConfig
from servicebed.harness.engine import DockerEngine
from servicebed.harness.results import CheckResult
from servicebed.harness.service import Harness, ServiceHandle
from servicebed.harness.specs import ServiceSpec

logger = get_logger(__name__)

RoundTrip = Callable[[ServiceHandle], Awaitable[str]]

TEST_KEY = "test_key"
TEST_VALUE = "test_value"
PROBE_QUERY = "SELECT 1 AS result"


async def redis_set_get(handle: ServiceHandle) -> str:
    async with redis_client(handle) as client:
        stored = await kv_roundtrip(client, TEST_KEY, TEST_VALUE)
    if stored != TEST_VALUE.encode():
        raise QueryFailure(f"GET {TEST_KEY!r} returned {stored!r}, expected {TEST_VALUE!r}")
    return f"SET/GET {TEST_KEY} -> {stored.decode()}"


async def postgres_select_one(handle: ServiceHandle) -> str:
    async with postgres_connection(handle) as conn:
        value = await query_scalar(conn, PROBE_QUERY)
    if value != 1:
        raise QueryFailure(f"{PROBE_QUERY!r} returned {value!r}, expected 1")
    return f"{PROBE_QUERY} -> {value}"


ROUND_TRIPS: dict[str, RoundTrip] = {
    "redis": redis_set_get,
    "postgres": postgres_select_one,
}


async def check_service(
    spec: ServiceSpec,
    config: HarnessConfig | None = None,
    engine: DockerEngine | None = None,
) -> CheckResult:
    """Start ``spec``, run its round trip and stop it.

    Harness errors are captured in the result rather than raised: a failed
    round trip gives FAILED, any other harness error gives ERROR.
    """
    harness = Harness(config, engine=engine)
    result = CheckResult(service=spec.service_name, image=spec.reference)
    round_trip = ROUND_TRIPS.get(spec.service_name)

    try:
        async with harness.service(spec) as handle:
            result.container = handle.container_name
            result.startup_ms = round(handle.startup_ms, 1)
            host, port = handle.endpoint()
            result.endpoint = f"{host}:{port}"
            if spec.connection_url_template:
                result.url = handle.url()
            result.add_step(
                "start",
                True,
                handle.startup_ms,
                detail=f"ready after {handle.readiness_checks} check(s)",
            )

            if round_trip is not None:
                with timed_block("check.round_trip") as timer:
                    try:
                        detail = await round_trip(handle)
                    except (ConnectionFailure, QueryFailure) as exc:
                        detail, error = "", str(exc)
                    else:
                        error = None
                result.add_step("round_trip", error is None, timer.duration_ms, detail=detail, error=error)

            stop_started = time.perf_counter()
        result.add_step("stop", True, (time.perf_counter() - stop_started) * 1000, detail="container removed")
    except HarnessError as exc:
        logger.warning("check.error", service=spec.service_name, **exc.to_dict())
        result.error = exc.message
        result.error_category = exc.category.value

    result.mark_complete()
    logger.info(
        "check.complete",
        service=result.service,
        status=result.overall_status.value,
        duration_s=round(result.duration_seconds, 2),
    )
    return result


__all__ = [
    "ROUND_TRIPS",
    "check_service",
    "postgres_select_one",
    "redis_set_get",
]
