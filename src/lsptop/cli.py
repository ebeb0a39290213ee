"""Command-line interface for lsp-top."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from rich.console import Console

from lsptop import __version__
from lsptop.config import AliasStore, get_config
from lsptop.errors import ConnectionUnavailable, DaemonError, ErrorCode
from lsptop.frames import DaemonRequest, ErrorFrame
from lsptop.project import has_project_marker

EXIT_OK = 0
EXIT_GENERAL = 1
EXIT_OTHER_DAEMON_ERROR = 12

EXIT_CODES = {
    ErrorCode.NO_RESULT: 2,
    ErrorCode.CONNECTION_UNAVAILABLE: 3,
    ErrorCode.PROJECT_NOT_FOUND: 10,
    ErrorCode.SERVER_ERROR: 11,
}

console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, soft_wrap=True)


def exit_code_for(code: str | ErrorCode | None) -> int:
    if code is None:
        return EXIT_OK
    try:
        code = ErrorCode(code)
    except ValueError:
        return EXIT_OTHER_DAEMON_ERROR
    return EXIT_CODES.get(code, EXIT_OTHER_DAEMON_ERROR)


def print_data(data: Any) -> None:
    if isinstance(data, str):
        console.print(data, markup=False)
    else:
        console.print_json(json.dumps(data))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lsp-top",
        description="Keep a TypeScript language server warm and query it from the shell",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--socket",
        help="Daemon socket path (default: from config, /tmp/lsp-top.sock)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    start_parser = subparsers.add_parser("start-server", help="Start the daemon in the background")
    start_parser.add_argument("--verbose", action="store_true", help="Log at debug level")

    daemon_parser = subparsers.add_parser("daemon", help="Run the daemon in the foreground")
    daemon_parser.add_argument("--verbose", action="store_true", help="Log at debug level")

    subparsers.add_parser("stop-server", help="Stop the daemon and all language servers")
    subparsers.add_parser("status", help="Show sessions and metrics")

    logs_parser = subparsers.add_parser("logs", help="Print the daemon log")
    logs_parser.add_argument("-n", "--lines", type=int, default=100, help="Number of lines")

    init_parser = subparsers.add_parser("init", help="Register a project alias")
    init_parser.add_argument("alias", help="Short name for the project")
    init_parser.add_argument("path", nargs="?", default=".", help="Project root (default: .)")

    subparsers.add_parser("list", help="List project aliases")

    remove_parser = subparsers.add_parser("remove", help="Remove a project alias")
    remove_parser.add_argument("alias")

    run_parser = subparsers.add_parser("run", help="Run an action against a project")
    run_parser.add_argument("target", help="Project alias or path")
    run_parser.add_argument("action", help="definition, references, diagnostics, ...")
    run_parser.add_argument("args", nargs="*", help="Action arguments, e.g. src/a.ts:10:5")
    run_parser.add_argument("--verbose", action="store_true", help="Stream daemon logs")
    run_parser.add_argument("--log-level", help="Minimum level of streamed logs")
    run_parser.add_argument(
        "--trace", default="", help="Comma-separated trace flags, e.g. protocol"
    )

    return parser


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return EXIT_GENERAL

    config = get_config()
    socket_path = parsed.socket or config.daemon.socket_path

    try:
        if parsed.command == "daemon":
            return _run_daemon(parsed.verbose, socket_path)
        if parsed.command == "start-server":
            return asyncio.run(_start_server(socket_path, parsed.verbose))
        if parsed.command == "stop-server":
            return asyncio.run(_stop_server(socket_path))
        if parsed.command == "status":
            return asyncio.run(_request(DaemonRequest(action="status"), socket_path))
        if parsed.command == "logs":
            return _print_logs(config.logging.file, parsed.lines)
        if parsed.command == "init":
            return _init_alias(parsed.alias, parsed.path, config.server.project_markers)
        if parsed.command == "list":
            return _list_aliases()
        if parsed.command == "remove":
            return _remove_alias(parsed.alias)
        if parsed.command == "run":
            return asyncio.run(_run_action(parsed, socket_path))
    except DaemonError as e:
        err_console.print(f"Error: {e}", markup=False)
        return exit_code_for(e.code)
    except KeyboardInterrupt:
        return 130

    parser.print_help()
    return EXIT_GENERAL


def _run_daemon(verbose: bool, socket_path: str) -> int:
    from lsptop.config import load_config
    from lsptop.logging import clear_log_file, setup_logging
    from lsptop.metrics import init_metrics
    from lsptop.server import run_daemon

    config = load_config()
    config.daemon.socket_path = socket_path
    if verbose:
        config.logging.level = "DEBUG"
    if config.logging.file:
        clear_log_file(config.logging.file)
    setup_logging(config.logging)
    init_metrics()
    return asyncio.run(run_daemon(config))


async def _start_server(socket_path: str, verbose: bool) -> int:
    from lsptop.daemon_client import ensure_daemon

    started = await ensure_daemon(socket_path, verbose=verbose)
    console.print("Daemon started" if started else "Daemon already running")
    return EXIT_OK


async def _stop_server(socket_path: str) -> int:
    from lsptop.daemon_client import send_request

    try:
        frame = await send_request(DaemonRequest(action="stop"), socket_path)
    except ConnectionUnavailable:
        console.print("Daemon is not running")
        return EXIT_OK
    if isinstance(frame, ErrorFrame):
        err_console.print(f"Error: {frame.message}", markup=False)
        return exit_code_for(frame.code)
    console.print("Daemon stopped")
    return EXIT_OK


async def _request(request: DaemonRequest, socket_path: str) -> int:
    from lsptop.daemon_client import send_request

    def on_log(line: str) -> None:
        err_console.print(line, markup=False)

    frame = await send_request(request, socket_path, on_log=on_log if request.verbose else None)
    if isinstance(frame, ErrorFrame):
        err_console.print(f"Error [{frame.code}]: {frame.message}", markup=False)
        return exit_code_for(frame.code)
    print_data(frame.data)
    return exit_code_for(frame.code)


def resolve_target(target: str, aliases: AliasStore | None = None) -> str:
    """An alias name or a path -> absolute project root."""
    store = aliases or AliasStore()
    path = store.get(target)
    if path is not None:
        return path
    return str(Path(target).expanduser().resolve())


async def _run_action(parsed: argparse.Namespace, socket_path: str) -> int:
    from lsptop.daemon_client import ensure_daemon

    await ensure_daemon(socket_path)
    request = DaemonRequest(
        action=parsed.action,
        project_root=resolve_target(parsed.target),
        args=list(parsed.args),
        verbose=parsed.verbose,
        log_level=parsed.log_level,
        trace=[flag for flag in parsed.trace.split(",") if flag],
    )
    return await _request(request, socket_path)


def _print_logs(log_file: str | None, lines: int) -> int:
    if not log_file:
        err_console.print("No log file configured")
        return EXIT_GENERAL
    path = Path(log_file).expanduser()
    if not path.exists():
        err_console.print(f"No log file at {path}", markup=False)
        return EXIT_GENERAL
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in deque(f, maxlen=max(lines, 1)):
            console.print(line.rstrip("\n"), markup=False)
    return EXIT_OK


def _init_alias(alias: str, path: str, markers: list[str]) -> int:
    try:
        root = AliasStore().add(alias, path)
    except ValueError as e:
        err_console.print(f"Error: {e}", markup=False)
        return EXIT_GENERAL
    if not has_project_marker(root, markers):
        err_console.print(
            f"Warning: no {' or '.join(markers)} in {root}; requests will fail with PROJECT_NOT_FOUND",
            markup=False,
        )
    console.print(f"{alias} -> {root}", markup=False)
    return EXIT_OK


def _list_aliases() -> int:
    aliases = AliasStore().list()
    if not aliases:
        console.print("No aliases defined")
        return EXIT_OK
    width = max(len(name) for name in aliases)
    for name, path in sorted(aliases.items()):
        console.print(f"{name.ljust(width)}  {path}", markup=False)
    return EXIT_OK


def _remove_alias(alias: str) -> int:
    if AliasStore().remove(alias):
        console.print(f"Removed {alias}", markup=False)
        return EXIT_OK
    err_console.print(f"Unknown alias: {alias}", markup=False)
    return EXIT_GENERAL
