# tests/test_core/test_redis_client.py

import asyncio

import pytest
from loguru import logger

import passkeys.core.logger  # noqa: F401  stdlib logging intercepted into loguru
from passkeys.core.exceptions import ErrorKind, InfrastructureError
from passkeys.core.redis_client import RedisClient
from passkeys.services.lockout import LOCKOUT_FAILURE_LUA


def test_key__namespacing():
    assert RedisClient("redis://x", key_prefix="pk:").key("challenge", "abc") == "pk:challenge:abc"
    assert RedisClient("redis://x", key_prefix="").key("a", "b") == "a:b"


@pytest.mark.anyio
async def test_bounded__not_connected_is_infrastructure_error():
    client = RedisClient("redis://x")
    with pytest.raises(InfrastructureError) as ei:
        await client.bounded("get", lambda c: c.get("k"), timeout=0.5)
    assert ei.value.kind is ErrorKind.INFRASTRUCTURE_ERROR


@pytest.mark.anyio
async def test_bounded__redis_error_is_infrastructure_error(redis_client, mock_redis):
    mock_redis.broken = True
    with pytest.raises(InfrastructureError):
        await redis_client.bounded("get", lambda c: c.get("k"), timeout=0.5)


@pytest.mark.anyio
async def test_bounded__timeout_is_infrastructure_error(redis_client):
    async def _slow(_client):
        await asyncio.sleep(1)

    with pytest.raises(InfrastructureError):
        await redis_client.bounded("slow", _slow, timeout=0.01)


@pytest.mark.anyio
async def test_run_script__loads_once_then_evalsha(redis_client, mock_redis):
    keys = ["f", "s", "l", "i"]
    args = [1000, 60000, 5, 900000, "member"]

    assert await redis_client.run_script(LOCKOUT_FAILURE_LUA, keys=keys, args=args) == [1, 0]
    assert await redis_client.run_script(LOCKOUT_FAILURE_LUA, keys=keys, args=[2000, 60000, 5, 900000, "member"]) == [2, 0]
    assert mock_redis.calls.count("SCRIPT LOAD") == 1
    assert mock_redis.calls.count("EVALSHA") == 2


@pytest.mark.anyio
async def test_run_script__reloads_after_script_flush(redis_client, mock_redis):
    keys = ["f", "s", "l", "i"]
    await redis_client.run_script(LOCKOUT_FAILURE_LUA, keys=keys, args=[1000, 60000, 5, 900000, "m"])
    await mock_redis.flushdb()  # also forgets loaded scripts

    result = await redis_client.run_script(LOCKOUT_FAILURE_LUA, keys=keys, args=[2000, 60000, 5, 900000, "m"])
    assert result == [1, 0]
    assert mock_redis.calls.count("SCRIPT LOAD") == 2


@pytest.mark.anyio
async def test_lifecycle__close_forgets_client(redis_client, mock_redis):
    assert await redis_client.is_connected() is True
    await redis_client.close()
    assert await redis_client.is_connected() is False
    with pytest.raises(RuntimeError):
        redis_client.client


@pytest.mark.anyio
async def test_bounded__outage_is_logged_through_loguru(redis_client, mock_redis):
    messages = []
    sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    try:
        mock_redis.broken = True
        with pytest.raises(InfrastructureError):
            await redis_client.bounded("get", lambda c: c.get("k"), timeout=0.5)

        async def _slow(_client):
            await asyncio.sleep(1)

        mock_redis.broken = False
        with pytest.raises(InfrastructureError):
            await redis_client.bounded("slow", _slow, timeout=0.01)
    finally:
        logger.remove(sink_id)

    assert any(m.startswith("Redis get failed: ") for m in messages)
    assert "Redis slow timed out after 0.01s" in messages
