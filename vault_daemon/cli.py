"""
Command-line interface for the vault daemon.

Commands:
- run: start the daemon (or a single pass with --once)
- status: show the status file written by a running daemon
- extract: list the directives a document would trigger
- init: create the Tasks folders and a default config file
"""

import sys
import json
import argparse
from pathlib import Path

from vault_daemon import __version__
from vault_daemon.config import ConfigManager, ConfigError, load_environment
from vault_daemon.daemon import VaultDaemon
from vault_daemon.extractor import DEFAULT_TRIGGER, extract_directives
from vault_daemon.lifecycle import TaskMover
from vault_daemon.log_sink import setup_logging
from vault_daemon.models import TaskLocation
from vault_daemon.status import StatusStore


def _load_config(args, resolve_agent: bool = True):
    """Load configuration or print the error and return None."""
    load_environment()
    try:
        return ConfigManager(args.config, resolve_agent=resolve_agent)
    except ConfigError as e:
        print(f"❌ Failed to load configuration: {e}", file=sys.stderr)
        return None


# =============================================================================
# RUN COMMAND
# =============================================================================

def cmd_run(args):
    """Run the daemon."""
    manager = _load_config(args)
    if manager is None:
        return 1

    config = manager.config
    setup_logging(
        Path(config.log_path),
        max_size_mb=config.log_max_size_mb,
        level="DEBUG" if args.verbose else config.log_level
    )

    daemon = VaultDaemon(config)
    if args.once:
        return daemon.run_once(timeout=args.timeout)
    return daemon.run_forever()


# =============================================================================
# STATUS COMMAND
# =============================================================================

def cmd_status(args):
    """Show daemon status."""
    manager = _load_config(args, resolve_agent=False)
    if manager is None:
        return 1

    state_path = Path(manager.config.state_path)
    status = StatusStore.load(state_path)
    if status is None:
        print(f"⚠️  No status file at {state_path}. Is the daemon running?")
        return 1

    if args.json:
        print(json.dumps(status.model_dump(), indent=2))
        return 0

    print(f"Status:               {status.status}")
    print(f"Active tasks:         {status.active_tasks}")
    print(f"Last scan:            {status.last_scan or '-'}")
    print(f"Last error:           {status.last_error or '-'}")
    print(f"Tasks completed today: {status.tasks_completed_today}")
    print(f"Directives today:     {status.agent_commands_today}")

    mover = TaskMover(manager.config.tasks_root, manager.config.tasks.document_extension)
    counts = ", ".join(
        f"{location.value}: {len(mover.list(location))}" for location in TaskLocation
    )
    print(f"Tasks:                {counts}")
    return 0


# =============================================================================
# EXTRACT COMMAND
# =============================================================================

def cmd_extract(args):
    """Print the directives found in a document."""
    path = Path(args.file)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        print(f"❌ Cannot read {path}: {e}", file=sys.stderr)
        return 1

    directives = extract_directives(text, args.trigger)
    if not directives:
        print("No directives found")
        return 0

    for directive in directives:
        print(f"{path}:{directive.line_number}: {directive.instruction}")
    return 0


# =============================================================================
# INIT COMMAND
# =============================================================================

def cmd_init(args):
    """Create the Tasks folders and a default config."""
    manager = _load_config(args, resolve_agent=False)
    if manager is None:
        return 1

    if manager.save_default():
        print(f"✅ Wrote default config: {manager.config_file}")
    else:
        print(f"   Config exists: {manager.config_file}")

    mover = TaskMover(manager.config.tasks_root, manager.config.tasks.document_extension)
    mover.ensure_folders()
    for location in TaskLocation:
        print(f"   📂 {mover.folder(location)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-daemon",
        description="Run an agent over a vault task queue and inline directives"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )

    # Also accepted after the subcommand; SUPPRESS keeps the top-level value
    config_parent = argparse.ArgumentParser(add_help=False)
    config_parent.add_argument(
        "--config",
        type=Path,
        default=argparse.SUPPRESS,
        help="Path to configuration file"
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", parents=[config_parent], help="Start the daemon")
    run_parser.add_argument("--once", action="store_true", help="Process once and exit")
    run_parser.add_argument("--timeout", type=float, default=None, help="Max seconds to wait with --once")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", parents=[config_parent], help="Show daemon status")
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    status_parser.set_defaults(func=cmd_status)

    extract_parser = subparsers.add_parser("extract", help="List directives in a document")
    extract_parser.add_argument("file", help="Markdown document")
    extract_parser.add_argument("--trigger", default=DEFAULT_TRIGGER, help="Directive token")
    extract_parser.set_defaults(func=cmd_extract)

    init_parser = subparsers.add_parser("init", parents=[config_parent], help="Create Tasks folders and default config")
    init_parser.set_defaults(func=cmd_init)

    return parser


def main(argv=None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
