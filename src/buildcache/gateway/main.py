"""Command-line entrypoint for running the build cache gateway."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional, Sequence

import structlog
import uvicorn

from ..common.settings import GatewaySettings, load_settings
from .app import create_app


LOGGER = structlog.get_logger("buildcache.gateway.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the build cache gateway")
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument("--host", help="Override the bind address")
    parser.add_argument("--port", type=int, help="Override the listen port")
    return parser.parse_args(argv)


def build_server_config(settings: GatewaySettings) -> uvicorn.Config:
    app = create_app(settings)
    return uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        access_log=False,
        lifespan="on",
        timeout_keep_alive=max(1, int(settings.keepalive_timeout_seconds)),
        timeout_graceful_shutdown=max(1, int(settings.shutdown_grace_seconds)),
        limit_concurrency=settings.max_concurrency,
        ssl_certfile=str(settings.tls_cert_file) if settings.tls_cert_file else None,
        ssl_keyfile=str(settings.tls_key_file) if settings.tls_key_file else None,
    )


async def serve(settings: GatewaySettings) -> None:
    server = uvicorn.Server(build_server_config(settings))
    LOGGER.info(
        "gateway_listening",
        host=settings.host,
        port=settings.port,
        tls=settings.tls_enabled,
        backend=settings.storage_backend,
    )
    await server.serve()


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    settings = load_settings(args.config)
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if overrides:
        settings = settings.model_copy(update=overrides)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
