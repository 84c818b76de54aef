from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from buildcache.storage import ArtifactNotFound, RedisArtifactStorage, StorageError, build_storage, iter_bytes
from tests.utils.fakes import FakeRedis


async def _read_all(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


@pytest.mark.asyncio
async def test_put_get_exists_delete() -> None:
    client = FakeRedis()
    storage = RedisArtifactStorage(client)

    await storage.put("abc123", iter_bytes(b"hello"), 5)
    assert client.store == {"abc123": b"hello"}
    assert await storage.exists("abc123")

    stream, size = await storage.get("abc123")
    assert size == 5
    assert await _read_all(stream) == b"hello"

    await storage.delete("abc123")
    await storage.delete("abc123")
    assert not await storage.exists("abc123")
    with pytest.raises(ArtifactNotFound) as exc_info:
        await storage.get("abc123")
    assert exc_info.value.key == "abc123"


@pytest.mark.asyncio
async def test_large_value_is_streamed_in_chunks() -> None:
    client = FakeRedis()
    storage = RedisArtifactStorage(client)
    payload = b"x" * (200 * 1024)
    await storage.put("big", iter_bytes(payload, chunk_size=1000), len(payload))

    stream, size = await storage.get("big")
    chunks = [chunk async for chunk in stream]
    assert size == len(payload)
    assert len(chunks) > 1
    assert b"".join(chunks) == payload


@pytest.mark.asyncio
async def test_namespace_views_are_isolated() -> None:
    client = FakeRedis()
    team_a = RedisArtifactStorage(client, "team-a")
    team_b = team_a.with_namespace("team-b")
    unscoped = team_a.with_namespace(None)

    await team_a.put("k", iter_bytes(b"a"), 1)
    await team_b.put("k", iter_bytes(b"b"), 1)

    assert client.store == {"team-a:k": b"a", "team-b:k": b"b"}
    assert team_b.namespace == "team-b"
    assert unscoped.namespace is None
    assert not await unscoped.exists("k")
    assert await unscoped.exists("team-a:k")


@pytest.mark.asyncio
async def test_size_mismatch_stores_nothing() -> None:
    client = FakeRedis()
    storage = RedisArtifactStorage(client)
    with pytest.raises(StorageError):
        await storage.put("short", iter_bytes(b"abc"), 5)
    with pytest.raises(StorageError):
        await storage.put("long", iter_bytes(b"abcdef"), 5)
    assert client.store == {}


@pytest.mark.asyncio
async def test_backend_failures_become_storage_errors() -> None:
    client = FakeRedis()
    storage = RedisArtifactStorage(client)
    client.fail_with = RedisConnectionError("Connection refused")

    with pytest.raises(StorageError) as exc_info:
        await storage.get("abc123")
    assert exc_info.value.operation == "get"
    assert exc_info.value.key == "abc123"
    assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    with pytest.raises(StorageError):
        await storage.ping()

    client.fail_with = RedisTimeoutError("Timeout reading from socket")
    with pytest.raises(StorageError) as exc_info:
        await storage.put("abc123", iter_bytes(b"x"), 1)
    assert "Timeout" in str(exc_info.value)


@pytest.mark.asyncio
async def test_only_owner_closes_client() -> None:
    client = FakeRedis()
    owner = RedisArtifactStorage(client, "ns")
    await owner.with_namespace("other").aclose()
    assert not client.closed
    await owner.aclose()
    assert client.closed


def test_build_storage_uses_redis_settings(make_settings) -> None:
    storage = build_storage(make_settings(redis_url="redis://cache.internal:6380/2", namespace="ci"))
    assert isinstance(storage, RedisArtifactStorage)
    assert storage.backend_name == "redis"
    assert storage.namespace == "ci"
