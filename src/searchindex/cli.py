"""CLI entry point for the searchindex server and backend checks."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from searchindex.config.settings import Settings


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="searchindex",
        description="searchindex — Engine-agnostic search indexing and query API",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (overrides config)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"searchindex {_get_version()}",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None, help="Server bind address (overrides config)")
    serve.add_argument("--port", "-p", type=int, default=None, help="Server port (overrides config)")
    serve.add_argument("--workers", "-w", type=int, default=None, help="Number of worker processes")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    test = subparsers.add_parser("test-connection", help="Check the backend of one index (or all)")
    test.add_argument("handle", nargs="?", default=None, help="Index handle; omit to check every index")

    args = parser.parse_args(argv)
    settings = _load_settings(args.config)
    if args.log_level:
        settings.observability.log_level = args.log_level

    from searchindex.observability.logging import setup_logging

    setup_logging(settings.observability)

    if args.command == "serve":
        _serve(settings, args)
    else:
        sys.exit(asyncio.run(_test_connection(settings, args.handle)))


def _load_settings(config: str | None) -> Settings:
    from searchindex.config.settings import CONFIG_ENV_VAR, Settings

    if not config:
        return Settings()
    config_path = Path(config)
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)
    # Worker processes started by uvicorn re-read the file through this variable.
    os.environ[CONFIG_ENV_VAR] = str(config_path.resolve())
    return Settings.from_yaml(config_path)


def _serve(settings: Settings, args: argparse.Namespace) -> None:
    if args.host:
        os.environ["SEARCHINDEX_SERVER__HOST"] = args.host
        settings.server.host = args.host
    if args.port:
        os.environ["SEARCHINDEX_SERVER__PORT"] = str(args.port)
        settings.server.port = args.port
    if args.workers:
        settings.server.workers = args.workers

    import uvicorn

    uvicorn.run(
        "searchindex.api.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers if not args.reload else 1,
        reload=args.reload,
        log_level=settings.observability.log_level.lower(),
    )


async def _test_connection(settings: Settings, handle: str | None) -> int:
    """Print connection and existence status; return the process exit code."""
    from searchindex.engines.base.exceptions import EngineError
    from searchindex.engines.base.registry import EngineRegistry
    from searchindex.query.context import RequestContext

    if handle is not None and handle not in settings.index_map():
        print(f"Error: Index not found: {handle}", file=sys.stderr)
        return 1
    indexes = [settings.index_map()[handle]] if handle else settings.indexes
    if not indexes:
        print("No indexes configured.", file=sys.stderr)
        return 1

    failures = 0
    async with RequestContext(settings.index_map(), EngineRegistry(defaults=settings.engines)) as context:
        for index in indexes:
            try:
                engine = context.engine_for(index)
                connected = await engine.test_connection()
                exists = await engine.index_exists(index) if connected else False
            except EngineError as e:
                print(f"{index.handle:<24} {index.engine_type.value:<14} error: {e}")
                failures += 1
                continue
            status = "ok" if connected else "unreachable"
            print(f"{index.handle:<24} {index.engine_type.value:<14} {status:<12} exists={'yes' if exists else 'no'}")
            if not connected:
                failures += 1
    return 1 if failures else 0


def _get_version() -> str:
    """Get the package version."""
    try:
        from searchindex import __version__

        return __version__
    except ImportError:
        return "unknown"


if __name__ == "__main__":
    main()
