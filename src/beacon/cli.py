"""CLI entry point for beacon."""

import argparse
import json
import sys
import threading

from .config import BeaconConfig, load_config, merge_cli_args, validate_config
from .registry import RegistryError, ServiceRegistry


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add connection flags shared by every subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--endpoints", nargs="+", type=str,
        help="etcd endpoints as host:port (default: localhost:2379)",
    )
    parser.add_argument("--username", type=str, help="etcd user name")
    parser.add_argument(
        "--password", type=str,
        help="etcd password (default: $BEACON_PASSWORD)",
    )
    parser.add_argument(
        "--dial-timeout", type=float, dest="dial_timeout",
        help="Seconds to wait for the etcd connection (default: 5)",
    )
    parser.add_argument(
        "--ttl", type=int,
        help="Lease TTL in seconds for registered keys (default: 10)",
    )
    parser.add_argument(
        "--resync-interval", type=float, dest="resync_interval",
        help="Seconds between full refetches of a watched prefix (default: 5)",
    )


def _build_config(args) -> BeaconConfig:
    """Build a BeaconConfig from a config file + CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = BeaconConfig()
    merge_cli_args(config, args)
    return validate_config(config)


def _connect(args) -> ServiceRegistry:
    try:
        return ServiceRegistry.from_config(_build_config(args))
    except (ValueError, RegistryError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def _wait_for_interrupt() -> None:
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass


def _format_entries(entries: dict[str, str], fmt: str) -> str:
    """Format a {key: value} snapshot for output."""
    if fmt == "json":
        return json.dumps(entries, indent=2, sort_keys=True)
    lines = [f"{key}  {value}" for key, value in sorted(entries.items())]
    return "\n".join(lines) if lines else "(no entries)"


def cmd_register(args) -> None:
    """Register PATH=VALUE and keep it alive until interrupted."""
    registry = _connect(args)
    try:
        registry.register(args.path, args.value)
        print(f"Registered {args.path} = {args.value} (Ctrl-C to stop)", file=sys.stderr)
        _wait_for_interrupt()
        registry.unregister(args.path)
        print(f"Unregistered {args.path}", file=sys.stderr)
    finally:
        registry.close()


def cmd_watch(args) -> None:
    """Print every snapshot of PREFIX until interrupted."""
    registry = _connect(args)

    def show(entries: dict[str, str]) -> None:
        print(_format_entries(entries, args.format), flush=True)
        if args.format == "text":
            print("--", flush=True)

    try:
        registry.add_watch(args.prefix, show)
        _wait_for_interrupt()
    finally:
        registry.close()


def cmd_list(args) -> None:
    """Print the current entries under PREFIX."""
    registry = _connect(args)
    try:
        snapshot = registry.store.get_prefix(args.prefix)
    except RegistryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        registry.close()
    print(_format_entries(snapshot.to_dict(), args.format))


def _add_format_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="beacon",
        description="beacon: service registration and discovery on etcd",
    )
    subparsers = parser.add_subparsers(dest="command")

    # register
    register_parser = subparsers.add_parser(
        "register", help="Register a key and keep it alive until interrupted",
    )
    _add_common_args(register_parser)
    register_parser.add_argument("path", type=str, help="Key to register, e.g. svc/api/node-1")
    register_parser.add_argument("value", type=str, help="Value to store, e.g. 10.0.0.5:8080")
    register_parser.set_defaults(func=cmd_register)

    # watch
    watch_parser = subparsers.add_parser(
        "watch", help="Print every change under a prefix until interrupted",
    )
    _add_common_args(watch_parser)
    _add_format_arg(watch_parser)
    watch_parser.add_argument("prefix", type=str, help="Key prefix to watch, e.g. svc/api/")
    watch_parser.set_defaults(func=cmd_watch)

    # list
    list_parser = subparsers.add_parser("list", help="Print the entries under a prefix")
    _add_common_args(list_parser)
    _add_format_arg(list_parser)
    list_parser.add_argument("prefix", type=str, help="Key prefix to read")
    list_parser.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
