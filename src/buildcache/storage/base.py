"""Storage port separating the cache protocol from the backing engine."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Callable, Optional, Protocol


ArtifactStream = AsyncIterator[bytes]

DEFAULT_CHUNK_SIZE = 64 * 1024


class ArtifactNotFound(LookupError):
    """No artifact is stored under the requested key."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key


class StorageError(Exception):
    """The backend is unreachable or failed while serving an operation.

    The message is meant for server-side logs; the backend exception, when
    there is one, is chained as ``__cause__``.
    """

    def __init__(self, operation: str, key: Optional[str] = None, reason: str = "storage backend failure") -> None:
        detail = f"{operation} failed: {reason}" if key is None else f"{operation} {key!r} failed: {reason}"
        super().__init__(detail)
        self.operation = operation
        self.key = key
        self.reason = reason


class ArtifactStorage(Protocol):
    """Contract every artifact storage backend must satisfy.

    Cancelling the awaiting task cancels the operation; implementations must
    not shield backend calls from cancellation.
    """

    backend_name: str

    @property
    @abc.abstractmethod
    def namespace(self) -> Optional[str]:
        """Prefix applied to every key, or ``None`` for the unscoped view."""
        ...

    @abc.abstractmethod
    async def get(self, key: str) -> tuple[ArtifactStream, int]:
        """Return a byte stream and its exact size; raise ``ArtifactNotFound`` on a miss."""
        ...

    @abc.abstractmethod
    async def put(self, key: str, content: ArtifactStream, size: int) -> None:
        """Store ``size`` bytes from ``content`` under ``key``, replacing any previous value."""
        ...

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; succeeds when it is already absent."""
        ...

    @abc.abstractmethod
    async def ping(self) -> None:
        """Raise ``StorageError`` when the backend cannot be reached."""
        ...

    @abc.abstractmethod
    def with_namespace(self, namespace: Optional[str]) -> "ArtifactStorage":
        """Return an independent view whose keys are prefixed with ``namespace``."""
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        ...


async def iter_bytes(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ArtifactStream:
    view = memoryview(data)
    for offset in range(0, len(view), chunk_size):
        yield bytes(view[offset : offset + chunk_size])


async def copy_stream(
    content: ArtifactStream,
    write: Callable[[bytes], object],
    *,
    expected_size: int,
    key: str,
) -> int:
    """Drain ``content`` into ``write`` and check it delivered exactly ``expected_size`` bytes."""

    received = 0
    async for chunk in content:
        if not chunk:
            continue
        received += len(chunk)
        if received > expected_size:
            raise StorageError("put", key, f"content exceeds declared size of {expected_size} bytes")
        write(chunk)
    if received != expected_size:
        raise StorageError("put", key, f"expected {expected_size} bytes, received {received}")
    return received


async def close_stream(content: ArtifactStream) -> None:
    """Release the resources behind ``content``; safe to call more than once."""

    aclose = getattr(content, "aclose", None)
    if aclose is not None:
        await aclose()
