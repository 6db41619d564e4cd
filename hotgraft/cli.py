"""
hotgraft Command Line Interface

Load plugin modules, list and run their commands, and follow a build
directory for hot reloads.
"""

from __future__ import annotations

import argparse
import json
import shlex
import sys
from pathlib import Path
from typing import List, Optional, TextIO

from hotgraft.commands import CommandError
from hotgraft.config import ReloadConfig, get_config
from hotgraft.log import setup_logging
from hotgraft.manager import PluginManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hotgraft",
        description="hotgraft - live code reload with state migration",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default from config)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--config", type=Path, help="JSON configuration file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Commands command
    commands_parser = subparsers.add_parser("commands", help="List the commands of a plugin module")
    commands_parser.add_argument("module", type=Path, help="Plugin module file")
    commands_parser.add_argument("--json", action="store_true", help="Print as JSON")

    # Run command
    run_parser = subparsers.add_parser("run", help="Load a plugin module and run one command")
    run_parser.add_argument("module", type=Path, help="Plugin module file")
    run_parser.add_argument("name", help="Command name")
    run_parser.add_argument("args", nargs=argparse.REMAINDER, help="Command arguments")

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Reload on every new build in a directory")
    watch_parser.add_argument("directory", type=Path, help="Build output directory")
    watch_parser.add_argument("--name", default="plugin", help="Plugin name")
    watch_parser.add_argument("--pattern", default="*.py", help="Build file glob")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = ReloadConfig.from_file(args.config) if args.config else get_config()
    setup_logging(
        args.log_level or config.log_level.value,
        json_logs=args.json_logs or config.json_logs,
    )

    manager = PluginManager(config=config)
    try:
        if args.command == "commands":
            return cmd_commands(manager, args.module, args.json)
        elif args.command == "run":
            return cmd_run(manager, args.module, args.name, args.args)
        elif args.command == "watch":
            return cmd_watch(manager, args.directory, args.name, args.pattern)
    finally:
        manager.shutdown()

    parser.print_help()
    return 2


def _load(manager: PluginManager, module: Path) -> bool:
    result = manager.load(module.stem, module)
    if not result.succeeded:
        print(f"Error: {result.error}", file=sys.stderr)
    return result.succeeded


def cmd_commands(manager: PluginManager, module: Path, as_json: bool = False) -> int:
    """List the commands a plugin module registers."""
    if not _load(manager, module):
        return 1

    entries = [manager.commands.get(name) for name in manager.commands.names()]
    if as_json:
        print(json.dumps([e.to_dict() for e in entries if e], indent=2))
    else:
        for entry in entries:
            if entry:
                suffix = " (debug only)" if entry.debug_only else ""
                print(f"- {entry.name}{suffix}")
    return 0


def cmd_run(manager: PluginManager, module: Path, name: str, args: List[str]) -> int:
    """Load a plugin module and dispatch one command."""
    if not _load(manager, module):
        return 1

    try:
        ok = manager.dispatch(name, args)
    except CommandError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0 if ok else 1


def cmd_watch(
    manager: PluginManager,
    directory: Path,
    name: str,
    pattern: str,
    stdin: Optional[TextIO] = None,
) -> int:
    """Follow a build directory and run commands typed on stdin."""
    stdin = stdin or sys.stdin
    manager.watch(name, directory, pattern)
    print(f"Watching {directory} for {pattern}. Type a command, or 'quit' to exit.")

    for line in stdin:
        words = shlex.split(line)
        if not words:
            continue
        if words[0] in ("quit", "exit"):
            break
        if words[0] == "help":
            print("\n".join(manager.commands.names()) or "(no commands)")
            continue
        try:
            ok = manager.dispatch(words[0], words[1:])
        except CommandError as e:
            print(f"Error: {e}")
            continue
        if not ok:
            print(f"{words[0]}: failed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
