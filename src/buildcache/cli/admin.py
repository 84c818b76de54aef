"""Operator CLI for inspecting the storage behind a build cache gateway."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Optional, Sequence

from ..common.observability import configure_logging
from ..common.settings import load_settings
from ..storage import ArtifactStorage, StorageError, build_storage


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect build cache storage")
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument("--namespace", help="Override the configured key namespace")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of plain text")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("ping", help="Check that the storage backend is reachable")

    exists_parser = subparsers.add_parser("exists", help="Check whether cache entries are present")
    exists_parser.add_argument("keys", nargs="+", help="Cache keys to look up")

    delete_parser = subparsers.add_parser("delete", help="Remove cache entries")
    delete_parser.add_argument("keys", nargs="+", help="Cache keys to delete")
    return parser.parse_args(argv)


async def execute(storage: ArtifactStorage, args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "ping":
        await storage.ping()
        return {"backend": storage.backend_name, "namespace": storage.namespace, "status": "ok"}
    if args.command == "exists":
        return {key: await storage.exists(key) for key in args.keys}
    if args.command == "delete":
        for key in args.keys:
            await storage.delete(key)
        return {"deleted": list(args.keys)}
    raise ValueError(f"unknown command: {args.command}")


def render(command: str, result: dict[str, Any]) -> str:
    if command == "ping":
        namespace = result["namespace"] or "-"
        return f"{result['backend']} storage reachable (namespace={namespace})"
    if command == "exists":
        return "\n".join(f"{key}: {'present' if present else 'missing'}" for key, present in result.items())
    return "\n".join(f"deleted {key}" for key in result["deleted"])


async def run(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.config)
    configure_logging("buildcache.admin", "WARNING", settings.log_format)

    storage = build_storage(settings)
    if args.namespace is not None:
        scoped = storage.with_namespace(args.namespace)
    else:
        scoped = storage
    try:
        result = await execute(scoped, args)
    except StorageError as exc:
        if args.json:
            print(json.dumps({"error": str(exc)}, indent=2))
        else:
            print(f"Error: {exc}")
        return 1
    finally:
        await storage.aclose()

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(render(args.command, result))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    raise SystemExit(asyncio.run(run(argv)))


if __name__ == "__main__":
    main()
