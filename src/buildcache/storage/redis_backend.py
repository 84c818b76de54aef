"""Artifact storage backed by Redis (in-memory, volatile)."""

from __future__ import annotations

from typing import Optional

import structlog
from redis.asyncio import Redis, from_url as redis_from_url
from redis.exceptions import RedisError

from ..common.settings import GatewaySettings
from .base import ArtifactNotFound, ArtifactStream, StorageError, copy_stream, iter_bytes


LOGGER = structlog.get_logger("buildcache.storage.redis")


class RedisArtifactStorage:
    """Stores each artifact as a single Redis string value with no expiry."""

    backend_name = "redis"

    def __init__(self, client: Redis, namespace: Optional[str] = None, *, owns_client: bool = True) -> None:
        self._client = client
        self._namespace = namespace or None
        self._owns_client = owns_client

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "RedisArtifactStorage":
        client = redis_from_url(
            settings.redis_url.get_secret_value(),
            decode_responses=False,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_connect_timeout_seconds,
        )
        return cls(client, settings.namespace)

    @property
    def namespace(self) -> Optional[str]:
        return self._namespace

    def _redis_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> tuple[ArtifactStream, int]:
        try:
            data = await self._client.get(self._redis_key(key))
        except RedisError as exc:
            raise StorageError("get", key, str(exc) or type(exc).__name__) from exc
        if data is None:
            raise ArtifactNotFound(key)
        return iter_bytes(data), len(data)

    async def put(self, key: str, content: ArtifactStream, size: int) -> None:
        buffer = bytearray()
        await copy_stream(content, buffer.extend, expected_size=size, key=key)
        try:
            await self._client.set(self._redis_key(key), bytes(buffer))
        except RedisError as exc:
            raise StorageError("put", key, str(exc) or type(exc).__name__) from exc

    async def exists(self, key: str) -> bool:
        try:
            count = await self._client.exists(self._redis_key(key))
        except RedisError as exc:
            raise StorageError("exists", key, str(exc) or type(exc).__name__) from exc
        return count > 0

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._redis_key(key))
        except RedisError as exc:
            raise StorageError("delete", key, str(exc) or type(exc).__name__) from exc

    async def ping(self) -> None:
        try:
            await self._client.ping()
        except RedisError as exc:
            raise StorageError("ping", reason=str(exc) or type(exc).__name__) from exc

    def with_namespace(self, namespace: Optional[str]) -> "RedisArtifactStorage":
        return RedisArtifactStorage(self._client, namespace, owns_client=False)

    async def aclose(self) -> None:
        if not self._owns_client:
            return
        await self._client.aclose()
        LOGGER.debug("redis_client_closed")
