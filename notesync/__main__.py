"""CLI entry point for notesync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .reconciler import build_reconciler


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level = getattr(logging, log_level.upper(), logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API."""
    config = load_config(args.config)

    try:
        import uvicorn
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        return 1

    from .server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    reconciler = build_reconciler(config)
    app = create_app(config, reconciler)

    print("Starting notesync server")
    print(f"Storage: {config.storage.db_path} (mirror: {config.storage.mirror_path})")
    print(f"Remote replica: {config.remote.url if config.remote.active else 'disabled'}")
    print(f"URL: http://{host}:{port}")

    try:
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    finally:
        await reconciler.aclose()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show storage and replica status."""
    config = load_config(args.config)
    reconciler = build_reconciler(config)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "storage": {
                "db_path": str(config.storage.db_path),
                "mirror_path": str(config.storage.mirror_path),
                **reconciler.primary.get_stats(),
            },
            "remote": {
                "enabled": reconciler.has_remote,
                "url": config.remote.url or None,
            },
        }
        if reconciler.has_remote:
            status_data["remote"]["reachable"] = await reconciler.remote.health_check()
    finally:
        await reconciler.aclose()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    storage = status_data["storage"]
    print(f"Primary: {storage['db_path']}")
    print(f"  Notes: {storage['notes_count']} ({storage['tombstones_count']} deleted)")
    print(f"  Owners: {storage['owners_count']}")
    print(f"Mirror: {storage['mirror_path']}")

    remote = status_data["remote"]
    if not remote["enabled"]:
        print("Remote replica: disabled")
    else:
        state = "reachable" if remote.get("reachable") else "unreachable"
        print(f"Remote replica: {remote['url']} ({state})")

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run the device sync client against a server."""
    from .stores import SqliteNoteStore
    from .sync import SyncClient, SyncStatus

    config = load_config(args.config)
    client_config = config.client

    store = SqliteNoteStore(client_config.db_path)
    store.connect()

    client = SyncClient(
        store,
        client_config.server_url,
        token=client_config.token or None,
        state_path=client_config.state_path,
        batch_size=client_config.batch_size,
        max_retries=client_config.max_retries,
        timeout=client_config.timeout_seconds,
    )

    try:
        if args.loop:
            await client.sync_loop(interval_seconds=client_config.sync_interval_minutes * 60)
            return 0

        result = await client.full_sync()
        print(f"Sync: {result.status.value}")
        print(f"  Pushed: {result.notes_pushed} {result.outcomes or ''}")
        print(f"  Pulled: {result.notes_pulled}")
        if result.error:
            print(f"  Error: {result.error}", file=sys.stderr)
        return 0 if result.status == SyncStatus.SUCCESS else 1
    except KeyboardInterrupt:
        print("\nStopping sync...")
        return 0
    finally:
        store.close()


async def cmd_rebuild(args: argparse.Namespace) -> int:
    """Rebuild one durable tier from the other."""
    config = load_config(args.config)
    reconciler = build_reconciler(config)

    try:
        if args.target == "mirror":
            count = await reconciler.repair_mirror()
            print(f"Mirror rebuilt from primary: {count} notes written")
        else:
            count = await reconciler.restore_primary()
            print(f"Primary restored from mirror: {count} notes written")
    except Exception as e:
        print(f"Rebuild failed: {e}", file=sys.stderr)
        return 1
    finally:
        await reconciler.aclose()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="notesync",
        description="Replicated notes store with offline push/pull sync",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (YAML)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 3001)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    status_parser = subparsers.add_parser("status", help="Show storage status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    sync_parser = subparsers.add_parser("sync", help="Sync the local device store")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing at the configured interval",
    )
    sync_parser.set_defaults(func=cmd_sync)

    rebuild_parser = subparsers.add_parser("rebuild", help="Rebuild a storage tier")
    rebuild_parser.add_argument(
        "target",
        choices=["mirror", "primary"],
        help="mirror: copy primary into mirror; primary: restore primary from mirror",
    )
    rebuild_parser.set_defaults(func=cmd_rebuild)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
