"""Artifact storage backed by an S3-compatible object store."""

from __future__ import annotations

import asyncio
import tempfile
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from ..common.settings import GatewaySettings
from .base import DEFAULT_CHUNK_SIZE, ArtifactNotFound, ArtifactStream, StorageError, copy_stream


LOGGER = structlog.get_logger("buildcache.storage.s3")

MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}
MISSING_BUCKET_CODES = {"404", "NoSuchBucket", "NotFound"}
# uploads larger than this roll over from memory to a temporary file
SPOOL_MAX_MEMORY = 8 * 1024 * 1024


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class ObjectBodyStream:
    """Chunked async reader over a botocore streaming body.

    ``aclose`` releases the body even when iteration never started.
    """

    def __init__(self, key: str, body: Any) -> None:
        self._key = key
        self._body = body
        self._closed = False

    def __aiter__(self) -> "ObjectBodyStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await asyncio.to_thread(self._body.read, DEFAULT_CHUNK_SIZE)
        except (BotoCoreError, OSError) as exc:
            await self.aclose()
            raise StorageError("get", self._key, type(exc).__name__) from exc
        if not chunk:
            await self.aclose()
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._body.close()


class S3ArtifactStorage:
    """Stores each artifact as one object in a bucket; blocking calls run in worker threads."""

    backend_name = "s3"

    def __init__(
        self,
        client: Any,
        bucket: str,
        namespace: Optional[str] = None,
        *,
        owns_client: bool = True,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._namespace = namespace or None
        self._owns_client = owns_client

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "S3ArtifactStorage":
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
            "aws_access_key_id": settings.s3_access_key.get_secret_value() if settings.s3_access_key else None,
            "aws_secret_access_key": settings.s3_secret_key.get_secret_value() if settings.s3_secret_key else None,
        }
        client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        return cls(client, settings.s3_bucket, settings.namespace)

    @property
    def namespace(self) -> Optional[str]:
        return self._namespace

    @property
    def bucket(self) -> str:
        return self._bucket

    def _object_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace.rstrip('/')}/{key}"

    async def _call(self, operation: str, key: Optional[str], func, *, not_found: bool = True, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ClientError as exc:
            if not_found and key is not None and _error_code(exc) in MISSING_OBJECT_CODES:
                raise ArtifactNotFound(key) from exc
            raise StorageError(operation, key, _error_code(exc) or "client error") from exc
        except BotoCoreError as exc:
            raise StorageError(operation, key, type(exc).__name__) from exc

    async def get(self, key: str) -> tuple[ArtifactStream, int]:
        response = await self._call(
            "get",
            key,
            self._client.get_object,
            Bucket=self._bucket,
            Key=self._object_key(key),
        )
        return ObjectBodyStream(key, response["Body"]), int(response["ContentLength"])

    async def put(self, key: str, content: ArtifactStream, size: int) -> None:
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
            await copy_stream(content, spool.write, expected_size=size, key=key)
            spool.seek(0)
            await self._call(
                "put",
                key,
                self._client.put_object,
                not_found=False,
                Bucket=self._bucket,
                Key=self._object_key(key),
                Body=spool,
                ContentLength=size,
                ContentType="application/octet-stream",
            )

    async def exists(self, key: str) -> bool:
        try:
            await self._call(
                "exists",
                key,
                self._client.head_object,
                Bucket=self._bucket,
                Key=self._object_key(key),
            )
        except ArtifactNotFound:
            return False
        return True

    async def delete(self, key: str) -> None:
        try:
            await self._call(
                "delete",
                key,
                self._client.delete_object,
                Bucket=self._bucket,
                Key=self._object_key(key),
            )
        except ArtifactNotFound:
            return

    async def ping(self) -> None:
        await self._call("ping", None, self._client.head_bucket, Bucket=self._bucket)

    async def ensure_bucket(self, region: Optional[str] = None) -> bool:
        """Create the bucket when it does not exist. Returns ``True`` if it was created."""

        try:
            await asyncio.to_thread(self._client.head_bucket, Bucket=self._bucket)
            return False
        except ClientError as exc:
            if _error_code(exc) not in MISSING_BUCKET_CODES:
                raise StorageError("ensure_bucket", reason=_error_code(exc) or "client error") from exc
        except BotoCoreError as exc:
            raise StorageError("ensure_bucket", reason=type(exc).__name__) from exc

        create_args: dict[str, Any] = {"Bucket": self._bucket}
        if region and region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {"LocationConstraint": region}
        await self._call("ensure_bucket", None, self._client.create_bucket, **create_args)
        LOGGER.info("s3_bucket_created", bucket=self._bucket)
        return True

    def with_namespace(self, namespace: Optional[str]) -> "S3ArtifactStorage":
        return S3ArtifactStorage(self._client, self._bucket, namespace, owns_client=False)

    async def aclose(self) -> None:
        if not self._owns_client:
            return
        await asyncio.to_thread(self._client.close)
