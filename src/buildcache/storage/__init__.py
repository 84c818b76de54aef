"""Artifact storage port and its backends."""

from __future__ import annotations

from ..common.settings import GatewaySettings
from .base import (
    ArtifactNotFound,
    ArtifactStorage,
    ArtifactStream,
    StorageError,
    close_stream,
    iter_bytes,
)
from .redis_backend import RedisArtifactStorage
from .s3_backend import S3ArtifactStorage


def build_storage(settings: GatewaySettings) -> ArtifactStorage:
    """Construct the configured backend, scoped to the configured namespace."""

    if settings.storage_backend == "s3":
        return S3ArtifactStorage.from_settings(settings)
    return RedisArtifactStorage.from_settings(settings)


__all__ = [
    "ArtifactNotFound",
    "ArtifactStorage",
    "ArtifactStream",
    "RedisArtifactStorage",
    "S3ArtifactStorage",
    "StorageError",
    "build_storage",
    "close_stream",
    "iter_bytes",
]
