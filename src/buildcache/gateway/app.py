"""Build cache gateway serving GET/HEAD/PUT on ``/cache/{key}`` against a storage backend."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import HealthStatus, Identity, Role
from ..common.settings import GatewaySettings, load_settings
from ..storage import (
    ArtifactNotFound,
    ArtifactStorage,
    ArtifactStream,
    S3ArtifactStorage,
    StorageError,
    build_storage,
    close_stream,
    iter_bytes,
)
from .auth import AccessControlGate, require_role
from .errors import BadRequest, EntryTooLarge, GatewayError, RequestTimeout, gateway_error_handler
from .ingest import guard_size, parse_content_length, read_bounded, with_deadline


REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_requests_total", "Total HTTP requests"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "buildcache_request_duration_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        description="Seconds until response headers are sent; streamed downloads are timed separately",
    )
)
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_cache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_cache_misses_total", "Cache misses"))
BYTES_READ_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_bytes_read_total", "Bytes served from cache"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(Counter("buildcache_bytes_written_total", "Bytes written to cache"))
TOO_LARGE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("buildcache_entries_rejected_too_large_total", "Writes rejected for exceeding the entry size limit")
)
ENTRY_SIZE_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "buildcache_entry_size_bytes",
        buckets=[1024.0, 16384.0, 262144.0, 1048576.0, 16777216.0, 104857600.0],
        description="Size of stored cache entries",
    )
)
TRANSFER_DURATION_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "buildcache_download_duration_seconds",
        buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 120.0],
        description="Seconds spent streaming a cache entry body to the client",
    )
)
TRACER = trace.get_tracer("buildcache.gateway")

# any other method is counted under "other"
METRIC_METHODS = frozenset({"GET", "HEAD", "PUT"})


def _method_label(method: str) -> str:
    return method if method in METRIC_METHODS else "other"


class ArtifactResponse(StreamingResponse):
    """Streaming response that always releases its backing stream, even if the body is never sent."""

    def __init__(self, content: AsyncIterator[bytes], *, release: Callable[[], Awaitable[None]], **kwargs) -> None:
        super().__init__(content, **kwargs)
        self._release = release

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._release()


class GatewayState:
    def __init__(self, settings: GatewaySettings, storage: ArtifactStorage, gate: AccessControlGate):
        self.settings = settings
        self.storage = storage
        self.gate = gate
        self.max_entry_size = settings.max_entry_size_bytes
        self.logger = structlog.get_logger("buildcache.gateway").bind(
            backend=storage.backend_name,
            namespace=storage.namespace,
        )

    async def stream_artifact(self, cache_key: str, content: ArtifactStream, identity: Identity) -> AsyncIterator[bytes]:
        sent = 0
        start = time.perf_counter()
        try:
            async for chunk in with_deadline(
                content,
                self.settings.write_timeout_seconds,
                lambda: TimeoutError(f"write timeout after {self.settings.write_timeout_seconds}s"),
            ):
                sent += len(chunk)
                yield chunk
        except (TimeoutError, StorageError) as exc:
            self.logger.error(
                "cache_stream_aborted",
                cache_key=cache_key,
                user=identity.username,
                bytes_sent=sent,
                error=str(exc),
            )
            raise
        finally:
            TRANSFER_DURATION_HISTOGRAM.observe(time.perf_counter() - start)
            BYTES_READ_COUNTER.inc(sent)


def get_state(request: Request) -> GatewayState:
    return request.app.state.gateway  # type: ignore[attr-defined]


def _require_key(cache_key: str) -> str:
    if not cache_key:
        raise BadRequest("empty cache key")
    return cache_key


def create_app(settings: Optional[GatewaySettings] = None, storage: Optional[ArtifactStorage] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging("buildcache.gateway", settings.log_level, settings.log_format)
    configure_tracing(
        service_name="buildcache.gateway",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    storage = storage or build_storage(settings)
    state = GatewayState(settings, storage, AccessControlGate.from_settings(settings))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if isinstance(storage, S3ArtifactStorage) and settings.s3_create_bucket:
            try:
                await storage.ensure_bucket(settings.s3_region)
            except StorageError as exc:
                state.logger.error("s3_bucket_check_failed", bucket=storage.bucket, error=str(exc))
        state.logger.info(
            "gateway_started",
            auth_enabled=state.gate.enabled,
            max_entry_size_bytes=state.max_entry_size,
        )
        try:
            yield
        finally:
            await storage.aclose()
            state.logger.info("gateway_stopped")

    app = FastAPI(title="buildcache", lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.gateway = state
    app.add_exception_handler(GatewayError, gateway_error_handler)

    @app.middleware("http")
    async def record_request(request: Request, call_next):
        start = time.perf_counter()
        method = _method_label(request.method)
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration, method=method)
            REQUEST_COUNTER.inc(method=method, status="500")
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration, method=method)
        REQUEST_COUNTER.inc(method=method, status=str(response.status_code))

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
            "client_ip": request.client.host if request.client else None,
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif response.status_code >= 400 or duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping() -> PlainTextResponse:
        return PlainTextResponse("pong")

    @app.get("/health")
    async def health(state: GatewayState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("gateway.health"):
            try:
                await state.storage.ping()
            except StorageError as exc:
                state.logger.error("health_check_failed", error=str(exc))
                body = HealthStatus(status="unhealthy", storage="unreachable", error=str(exc))
                return JSONResponse(body.model_dump(), status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
            body = HealthStatus(status="healthy", storage="connected")
            return JSONResponse(body.model_dump(exclude_none=True))

    @app.get("/cache/{cache_key:path}")
    async def get_cache(
        cache_key: str,
        state: GatewayState = Depends(get_state),
        identity: Identity = Depends(require_role(Role.READER)),
    ) -> Response:
        key = _require_key(cache_key)
        with TRACER.start_as_current_span("cache.get", attributes={"buildcache.cache_key": key}) as span:
            try:
                content, size = await state.storage.get(key)
            except ArtifactNotFound:
                MISS_COUNTER.inc(operation="get")
                state.logger.info("cache_miss", cache_key=key, user=identity.username)
                return Response(status_code=status.HTTP_404_NOT_FOUND)
            except StorageError as exc:
                state.logger.error("cache_storage_error", operation="get", cache_key=key, error=str(exc))
                return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
            HIT_COUNTER.inc(operation="get")
            span.set_attribute("buildcache.bytes", size)
            state.logger.info("cache_hit", cache_key=key, user=identity.username, bytes=size)
            return ArtifactResponse(
                state.stream_artifact(key, content, identity),
                release=lambda: close_stream(content),
                media_type="application/octet-stream",
                headers={"Content-Length": str(size)},
            )

    @app.head("/cache/{cache_key:path}")
    async def head_cache(
        cache_key: str,
        state: GatewayState = Depends(get_state),
        identity: Identity = Depends(require_role(Role.READER)),
    ) -> Response:
        key = _require_key(cache_key)
        with TRACER.start_as_current_span("cache.head", attributes={"buildcache.cache_key": key}):
            try:
                present = await state.storage.exists(key)
            except StorageError as exc:
                state.logger.error("cache_storage_error", operation="exists", cache_key=key, error=str(exc))
                return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
            if not present:
                MISS_COUNTER.inc(operation="head")
                state.logger.info("cache_miss", cache_key=key, user=identity.username)
                return Response(status_code=status.HTTP_404_NOT_FOUND)
            HIT_COUNTER.inc(operation="head")
            return Response(status_code=status.HTTP_200_OK)

    @app.put("/cache/{cache_key:path}", status_code=status.HTTP_201_CREATED)
    async def put_cache(
        cache_key: str,
        request: Request,
        state: GatewayState = Depends(get_state),
        identity: Identity = Depends(require_role(Role.WRITER)),
    ) -> Response:
        key = _require_key(cache_key)
        limit = state.max_entry_size
        declared = parse_content_length(request.headers.get("content-length"))
        with TRACER.start_as_current_span("cache.put", attributes={"buildcache.cache_key": key}) as span:
            try:
                if declared is not None and declared > limit:
                    raise EntryTooLarge(limit, declared)
                body = with_deadline(
                    request.stream(),
                    state.settings.read_timeout_seconds,
                    lambda: RequestTimeout("request body not received in time"),
                )
                if declared is None:
                    data = await read_bounded(body, limit)
                    size = len(data)
                    content = iter_bytes(data)
                else:
                    size = declared
                    content = guard_size(body, limit)
                await state.storage.put(key, content, size)
            except EntryTooLarge as exc:
                TOO_LARGE_COUNTER.inc()
                state.logger.warning(
                    "cache_entry_too_large",
                    cache_key=key,
                    user=identity.username,
                    size=exc.size,
                    max_size=limit,
                )
                raise
            except ClientDisconnect:
                state.logger.info("cache_upload_aborted", cache_key=key, user=identity.username)
                return Response(status_code=status.HTTP_400_BAD_REQUEST)
            except StorageError as exc:
                state.logger.error(
                    "cache_storage_error",
                    operation="put",
                    cache_key=key,
                    user=identity.username,
                    error=str(exc),
                )
                return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

            BYTES_WRITTEN_COUNTER.inc(size)
            ENTRY_SIZE_HISTOGRAM.observe(float(size))
            span.set_attribute("buildcache.bytes_written", size)
            state.logger.info("cache_write", cache_key=key, user=identity.username, bytes=size)
            return Response(status_code=status.HTTP_201_CREATED)

    if settings.metrics_enabled:

        @app.get("/metrics", response_class=PlainTextResponse)
        async def metrics_endpoint(
            request: Request,
            state: GatewayState = Depends(get_state),
        ) -> PlainTextResponse:
            token = (
                state.settings.metrics_token.get_secret_value()
                if state.settings.metrics_token
                else None
            )
            require_metrics_access(request, token)
            return PlainTextResponse(GLOBAL_REGISTRY.render(), media_type="text/plain; version=0.0.4")

    return app
