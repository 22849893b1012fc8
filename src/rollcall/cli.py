"""CLI entry point for rollcall."""

import argparse
import asyncio
import json
import logging
import sys
import time

from .config import (
    RegistryConfig,
    STORE_KINDS,
    apply_env_overrides,
    config_to_yaml,
    find_config_file,
    load_config,
    merge_cli_args,
)
from .heartbeat import run_heartbeat
from .registry import (
    FileRegistry,
    NamespaceResolver,
    RegistryError,
    ServiceRegistry,
)
from .server import DEFAULT_PORT, start_snapshot_server


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by every subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--store", type=str, choices=STORE_KINDS,
        help="Record store to use (default: auto)",
    )
    parser.add_argument(
        "--registry-path", type=str, dest="registry_path",
        help="Snapshot file for the file store (default: ~/.rollcall/registry.json)",
    )
    parser.add_argument(
        "--registry-url", type=str, dest="registry_url",
        help="Snapshot endpoint for the http store",
    )
    parser.add_argument(
        "--event-store-url", type=str, dest="event_store_url",
        help="Event store connection URL, e.g. redis://localhost:6379/0",
    )
    parser.add_argument("--namespace", type=str, help="Namespace override for the event store")
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")


def _build_config(args) -> RegistryConfig:
    """Build a RegistryConfig from a config file, the environment and CLI overrides."""
    path = args.config or find_config_file()
    config = load_config(path) if path else RegistryConfig()
    apply_env_overrides(config)
    merge_cli_args(config, args)
    return config


def _format_record(record) -> str:
    pid = record.process_id if record.process_id is not None else "-"
    if record.is_healthy is None:
        health = "unknown"
    else:
        health = "healthy" if record.is_healthy else "unhealthy"
    return f"{record.name}  localhost:{record.port}  {record.status}  pid={pid}  {health}"


def _format_services(services, fmt: str) -> str:
    """Format a list of ServiceRecord objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in services], indent=2)
    lines = [_format_record(s) for s in services]
    return "\n".join(lines) if lines else "(no services)"


def _parse_metadata(pairs) -> dict:
    metadata = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid metadata '{pair}' (expected KEY=VALUE)")
        metadata[key] = value
    return metadata


# ---------------------------------------------------------------------------
# subcommands
# ---------------------------------------------------------------------------

async def cmd_list(args, registry: ServiceRegistry) -> None:
    services = await registry.list_services()
    print(_format_services(services, args.format))


async def cmd_discover(args, registry: ServiceRegistry) -> None:
    record = await registry.discover(args.name, include_health=args.health)
    if record is None:
        print(f"Service '{args.name}' not found.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(record.to_dict(), indent=2))
    else:
        print(_format_record(record))


async def cmd_health(args, registry: ServiceRegistry) -> None:
    healthy = await registry.check_health(args.name)
    if args.format == "json":
        print(json.dumps({"name": args.name, "healthy": healthy}))
    else:
        print(f"{args.name}: {'healthy' if healthy else 'unhealthy'}")
    if not healthy:
        sys.exit(1)


async def cmd_register(args, registry: ServiceRegistry) -> None:
    metadata = _parse_metadata(args.meta)
    record = await registry.register(
        args.name, args.port,
        process_id=args.pid, health_path=args.health_path, metadata=metadata,
    )
    if args.format == "json":
        print(json.dumps(record.to_dict(), indent=2))
    else:
        print(f"Registered {_format_record(record)}")


async def cmd_unregister(args, registry: ServiceRegistry) -> None:
    await registry.unregister(args.name)
    print(f"Unregistered {args.name}")


async def cmd_cleanup(args, registry: ServiceRegistry) -> None:
    removed = await registry.cleanup()
    if args.format == "json":
        print(json.dumps({"removed": removed}))
    elif removed:
        print("Removed: " + ", ".join(removed))
    else:
        print("Nothing to clean up.")


async def cmd_watch(args, registry: ServiceRegistry) -> None:
    await run_heartbeat(registry, args.names, interval=args.interval, cycles=args.cycles)


async def _run_with_registry(handler, args, config: RegistryConfig) -> None:
    async with ServiceRegistry(config) as registry:
        await handler(args, registry)


def cmd_serve(args, config: RegistryConfig) -> None:
    """Serve the file snapshot over HTTP until interrupted."""
    registry = FileRegistry(config)
    server = start_snapshot_server(registry, host=args.host, port=args.port)
    host, port = server.server_address[:2]
    print(f"Registry snapshot server listening on http://{host}:{port}/registry", file=sys.stderr)
    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()


def cmd_namespace(args, config: RegistryConfig) -> None:
    resolver = NamespaceResolver(override=config.namespace, user_id_path=config.user_id_path)
    print(asyncio.run(resolver.resolve()))


def cmd_config(args, config: RegistryConfig) -> None:
    print(config_to_yaml(config), end="")


_ASYNC_COMMANDS = {
    "list": cmd_list,
    "discover": cmd_discover,
    "health": cmd_health,
    "register": cmd_register,
    "unregister": cmd_unregister,
    "cleanup": cmd_cleanup,
    "watch": cmd_watch,
}

_SYNC_COMMANDS = {
    "serve": cmd_serve,
    "namespace": cmd_namespace,
    "config": cmd_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollcall",
        description="rollcall: service registry for local development",
    )
    subparsers = parser.add_subparsers(dest="command")

    p = subparsers.add_parser("list", help="List registered services")
    _add_common_args(p)

    p = subparsers.add_parser("discover", help="Look up a single service")
    _add_common_args(p)
    p.add_argument("name", type=str, help="Service name")
    p.add_argument("--health", action="store_true", help="Probe the health endpoint as well")

    p = subparsers.add_parser("health", help="Health-check a service (exit 1 if unhealthy)")
    _add_common_args(p)
    p.add_argument("name", type=str, help="Service name")

    p = subparsers.add_parser("register", help="Register a service")
    _add_common_args(p)
    p.add_argument("name", type=str, help="Service name")
    p.add_argument("--port", type=int, required=True, help="Port the service listens on")
    p.add_argument("--pid", type=int, default=None, help="Owning process id (default: this process)")
    p.add_argument(
        "--health-path", type=str, dest="health_path", default=None,
        help="Health endpoint path, e.g. /health",
    )
    p.add_argument(
        "--meta", nargs="*", metavar="KEY=VALUE",
        help="Metadata entries stored with the record",
    )

    p = subparsers.add_parser("unregister", help="Remove a service")
    _add_common_args(p)
    p.add_argument("name", type=str, help="Service name")

    p = subparsers.add_parser("cleanup", help="Remove stale services")
    _add_common_args(p)

    p = subparsers.add_parser("watch", help="Print health transitions of services")
    _add_common_args(p)
    p.add_argument("names", nargs="+", help="Service names")
    p.add_argument("--interval", type=float, default=30.0, help="Seconds between checks (default: 30)")
    p.add_argument("--cycles", type=int, default=None, help="Stop after N cycles")

    p = subparsers.add_parser("serve", help="Serve the file snapshot over HTTP")
    _add_common_args(p)
    p.add_argument("--host", type=str, default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p.add_argument(
        "--port", type=int, default=DEFAULT_PORT,
        help=f"Listen port (default: {DEFAULT_PORT})",
    )

    p = subparsers.add_parser("namespace", help="Print the resolved event store namespace")
    _add_common_args(p)

    p = subparsers.add_parser("config", help="Print the effective configuration")
    _add_common_args(p)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = _build_config(args)
    except (OSError, ValueError) as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.command in _SYNC_COMMANDS:
        _SYNC_COMMANDS[args.command](args, config)
        return

    try:
        asyncio.run(_run_with_registry(_ASYNC_COMMANDS[args.command], args, config))
    except (RegistryError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
