"""Integration tests against real containers.

Each test acquires its own service through ``ephemeral_service``; nothing is
shared between tests. Skipped when no container engine is reachable.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess

import pytest

from servicebed.core.errors import StartupTimeout
from servicebed.harness import (
    POSTGRES,
    REDIS,
    Harness,
    HarnessConfig,
    ServiceState,
    WaitFor,
    ephemeral_service,
)
from servicebed.harness.clients import (
    kv_roundtrip,
    postgres_connection,
    postgres_pool,
    postgres_probe,
    query_scalar,
    redis_client,
    redis_ping,
)


@pytest.fixture(scope="module")
def docker_available() -> bool:
    docker = shutil.which(HarnessConfig.from_env().docker_command)
    if docker is None:
        return False
    try:
        probe = subprocess.run([docker, "version", "--format", "{{.Server.Version}}"], capture_output=True, timeout=30)
    except subprocess.TimeoutExpired:
        return False
    return probe.returncode == 0


@pytest.fixture(autouse=True)
def _require_docker(docker_available):
    if not docker_available:
        pytest.skip("container engine not available")


@pytest.fixture
def config() -> HarnessConfig:
    return HarnessConfig.from_env()


class TestRedis:
    @pytest.mark.asyncio
    async def test_set_get_round_trip(self, config):
        async with ephemeral_service(REDIS, config) as redis:
            async with redis_client(redis) as client:
                assert await kv_roundtrip(client, "test_key", "test_value") == b"test_value"

    @pytest.mark.asyncio
    async def test_protocol_probe_readiness(self, config):
        spec = REDIS.with_wait_for(WaitFor.probe(redis_ping, 6379))
        async with ephemeral_service(spec, config) as redis:
            host, port = redis.endpoint(6379)
            assert await redis_ping(host, port)


class TestPostgres:
    @pytest.mark.asyncio
    async def test_select_one(self, config):
        async with ephemeral_service(POSTGRES, config) as pg:
            async with postgres_connection(pg) as conn:
                rows = await conn.fetch("SELECT 1 as result")
        assert len(rows) == 1
        assert rows[0]["result"] == 1

    @pytest.mark.asyncio
    async def test_pooled_query_in_spawned_task(self, config):
        async with ephemeral_service(POSTGRES, config) as pg:
            async with postgres_pool(pg) as pool:
                value = await asyncio.create_task(query_scalar(pool, "SELECT 1 as result"))
        assert value == 1

    @pytest.mark.asyncio
    async def test_probe_readiness(self, config):
        spec = POSTGRES.with_wait_for(
            WaitFor.all_of(POSTGRES.wait_for, WaitFor.probe(postgres_probe(), 5432))
        )
        async with ephemeral_service(spec, config) as pg:
            async with postgres_connection(pg) as conn:
                assert await query_scalar(conn, "SELECT 1") == 1

    @pytest.mark.asyncio
    async def test_concurrent_instances_are_isolated(self, config):
        async def select_one():
            async with ephemeral_service(POSTGRES, config) as pg:
                async with postgres_connection(pg) as conn:
                    value = await query_scalar(conn, "SELECT 1 as result")
                return pg.endpoint(5432), value

        (addr_a, value_a), (addr_b, value_b) = await asyncio.gather(select_one(), select_one())
        assert addr_a != addr_b
        assert value_a == value_b == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_removes_container(self, config):
        harness = Harness(config)
        handle = await harness.start(REDIS)
        await harness.stop(handle)
        await harness.stop(handle)
        assert handle.state is ServiceState.STOPPED
        assert (await harness.engine.state(handle.container_name)).status == "not_found"

    @pytest.mark.asyncio
    async def test_forced_timeout_leaves_no_container(self, config):
        harness = Harness(config)
        spec = REDIS.with_wait_for(WaitFor.message_on_stdout("this line never appears")).with_startup_timeout(3)
        with pytest.raises(StartupTimeout) as exc_info:
            await harness.start(spec)
        container = exc_info.value.context.container
        assert (await harness.engine.state(container)).status == "not_found"
        leftovers = await harness.engine.list_containers(
            {f"{config.label_prefix}.session": config.session_id}
        )
        assert leftovers == []
