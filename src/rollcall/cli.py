"""CLI entry point for rollcall."""

import argparse
import json
import logging
import signal
import sys
import threading

from .config import (
    RollcallConfig,
    config_to_yaml,
    load_config,
    merge_cli_args,
    validate_config,
)
from .hall import PresenceRegistry
from .registry import NameExists, RegistryError


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by every subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--dsn", type=str,
        help="SQLAlchemy database URL (default: $ROLLCALL_DSN or sqlite:///rollcall.db)",
    )
    parser.add_argument(
        "--registry", type=str, dest="registry_name",
        help="Registry name; selects the rollcall_<name> table (default: default)",
    )
    parser.add_argument(
        "--heartbeat-interval", type=float, dest="heartbeat_interval",
        help="Seconds between heartbeats; entries expire after twice this (default: 5)",
    )
    parser.add_argument(
        "--max-batch-size", type=int, dest="max_batch_size",
        help="Heartbeats applied per grouped update (default: 100)",
    )
    parser.add_argument(
        "--flush-interval", type=float, dest="flush_interval",
        help="Seconds a partial heartbeat batch may wait (default: heartbeat interval)",
    )
    parser.add_argument(
        "--log-level", type=str, dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for stderr logging (default: INFO)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _build_config(args) -> RollcallConfig:
    """Build a RollcallConfig from a config file + CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = RollcallConfig()
    merge_cli_args(config, args)
    return validate_config(config)


def _open(args, background: bool = False,
          config: RollcallConfig | None = None) -> PresenceRegistry:
    if config is None:
        config = _build_config(args)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    registry = PresenceRegistry.from_config(config)
    registry.init(background=background)
    return registry


def _install_handlers(handler) -> dict:
    """Route SIGINT/SIGTERM to *handler*. Returns the handlers it replaced."""
    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def _restore_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def cmd_init(args) -> None:
    """Create the registry table, optionally saving the effective config."""
    config = _build_config(args)
    registry = _open(args, config=config)
    try:
        print(f"Registry table {registry.store.table.name} ready", file=sys.stderr)
        if args.write_config:
            with open(args.write_config, "w") as f:
                f.write(config_to_yaml(config))
            print(f"Config written to {args.write_config}", file=sys.stderr)
    finally:
        registry.close()


def cmd_register(args) -> None:
    """Register a name and heartbeat for it until interrupted."""
    registry = _open(args, background=True)
    stop = threading.Event()

    def _handle_signal(signum, frame):
        stop.set()

    previous = _install_handlers(_handle_signal)
    try:
        try:
            registry.register(args.name, args.content)
        except NameExists:
            print(f"Error: '{args.name}' is already registered and alive.", file=sys.stderr)
            sys.exit(1)

        print(
            f"Registered '{args.name}', heartbeating every "
            f"{registry.heartbeat_interval:g}s (Ctrl+C to stop)",
            file=sys.stderr,
        )
        if args.duration is not None:
            stop.wait(args.duration)
        else:
            # Short waits so the signal handler gets a chance to run.
            while not stop.wait(1.0):
                pass
        registry.unregister(args.name)
        print(f"Unregistered '{args.name}'", file=sys.stderr)
    finally:
        _restore_handlers(previous)
        registry.close()


def cmd_unregister(args) -> None:
    registry = _open(args)
    try:
        registry.unregister(args.name)
    finally:
        registry.close()


def cmd_list(args) -> None:
    registry = _open(args)
    try:
        names = registry.list_alive() if args.alive else registry.list_all()
    finally:
        registry.close()
    if args.format == "json":
        print(json.dumps(names, indent=2))
    else:
        print("\n".join(names) if names else "(no entries)")


def cmd_get(args) -> None:
    registry = _open(args)
    try:
        entry = registry.get(args.name)
    finally:
        registry.close()
    if entry is None:
        print(f"'{args.name}' is not alive.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(entry.to_dict(), indent=2))
    else:
        print(f"{entry.name}  last_alive={entry.last_alive.isoformat()}  {entry.content}")


def cmd_alive(args) -> None:
    registry = _open(args)
    try:
        alive = registry.is_alive(args.name)
    finally:
        registry.close()
    print("true" if alive else "false")
    if not alive:
        sys.exit(1)


def cmd_gc(args) -> None:
    """Expire stale entries once, or keep sweeping in the foreground."""
    registry = _open(args)
    try:
        if args.once:
            deleted = registry.gc()
            print(f"Expired {deleted} entr{'y' if deleted == 1 else 'ies'}", file=sys.stderr)
            return

        previous = _install_handlers(lambda signum, frame: registry.gc_worker.stop())
        print(
            f"Sweeping every {registry.heartbeat_interval:g}s (Ctrl+C to stop)",
            file=sys.stderr,
        )
        try:
            registry.gc_worker.run_forever()
        finally:
            _restore_handlers(previous)
    finally:
        registry.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="rollcall",
        description="rollcall: SQL-backed presence registry",
    )
    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Create the registry table")
    _add_common_args(init_parser)
    init_parser.add_argument(
        "--write-config", type=str, dest="write_config", metavar="PATH",
        help="Save the effective configuration as YAML to PATH",
    )
    init_parser.set_defaults(func=cmd_init)

    # register
    reg_parser = subparsers.add_parser(
        "register", help="Register a name and heartbeat until interrupted",
    )
    _add_common_args(reg_parser)
    reg_parser.add_argument("name", type=str, help="Entry name")
    reg_parser.add_argument("--content", type=str, default="", help="Payload stored with the entry")
    reg_parser.add_argument(
        "--duration", type=float, default=None,
        help="Unregister after this many seconds instead of waiting for a signal",
    )
    reg_parser.set_defaults(func=cmd_register)

    # unregister
    unreg_parser = subparsers.add_parser("unregister", help="Remove a name if it is alive")
    _add_common_args(unreg_parser)
    unreg_parser.add_argument("name", type=str, help="Entry name")
    unreg_parser.set_defaults(func=cmd_unregister)

    # list
    list_parser = subparsers.add_parser("list", help="List registered names")
    _add_common_args(list_parser)
    list_parser.add_argument(
        "--alive", action="store_true",
        help="Only names seen within the inactive threshold",
    )
    list_parser.set_defaults(func=cmd_list)

    # get
    get_parser = subparsers.add_parser("get", help="Show one alive entry")
    _add_common_args(get_parser)
    get_parser.add_argument("name", type=str, help="Entry name")
    get_parser.set_defaults(func=cmd_get)

    # alive
    alive_parser = subparsers.add_parser(
        "alive", help="Print true/false; exit status 0 if alive, 1 otherwise",
    )
    _add_common_args(alive_parser)
    alive_parser.add_argument("name", type=str, help="Entry name")
    alive_parser.set_defaults(func=cmd_alive)

    # gc
    gc_parser = subparsers.add_parser("gc", help="Expire stale entries")
    _add_common_args(gc_parser)
    gc_parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    gc_parser.set_defaults(func=cmd_gc)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except (RegistryError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
