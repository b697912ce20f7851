"""Argparse-based CLI for patchright-bridge.

Parses all commands and dispatches to the session registry or to the
session's daemon.  This is the only module that reads the environment; the
registry and daemons receive explicit configuration.
"""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys

from patchright_bridge.client import send_command
from patchright_bridge.config import CLIConfig, get_version, load_config, load_daemon_paths
from patchright_bridge.errors import BridgeError, DaemonNotRunningError
from patchright_bridge.registry import SessionRegistry
from patchright_bridge.session import derive_session_id, resolve_session_name

# Seconds allowed for a daemon command on top of the extension connection timeout.
_COMMAND_SLACK = 120.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging() -> None:
    if not os.environ.get("PWMCP_DEBUG"):
        return
    logging.basicConfig(
        level=logging.DEBUG,
        stream=sys.stderr,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _fail(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


def _session_id(args: argparse.Namespace, config: CLIConfig) -> str:
    return resolve_session_name(args.session) or derive_session_id(
        config.browser.channel, config.browser.user_data_dir
    )


def _command_timeout(config: CLIConfig) -> float:
    return config.extension.connection_timeout_ms / 1000 + _COMMAND_SLACK


def _print_result(result: dict) -> None:
    if result.get("ok"):
        output = result.get("output", "")
        if output:
            print(output)
    else:
        _fail(result.get("error", "Unknown error"))


# ---------------------------------------------------------------------------
# Subparser registration
# ---------------------------------------------------------------------------


def _register_subcommands(subparsers: argparse._SubParsersAction) -> None:
    """Register every subcommand on *subparsers*."""

    # ── Browser ────────────────────────────────────────────────────────

    p = subparsers.add_parser("open", help="Open a browser session")
    p.add_argument("url", nargs="?", default=None, help="Initial URL to navigate to")
    p.add_argument(
        "--extension",
        action="store_true",
        default=False,
        help="Attach to the running browser through the Playwright MCP Bridge extension",
    )
    p.add_argument("--browser", default=None, help="Browser channel to use")
    p.add_argument("--profile", default=None, help="Path to user data directory")
    p.add_argument(
        "--headless",
        action="store_true",
        default=None,
        help="Run the browser headless",
    )
    p.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help="Path to config file",
    )

    p = subparsers.add_parser("goto", help="Navigate to a URL")
    p.add_argument("url", help="URL to navigate to")

    subparsers.add_parser("snapshot", help="Take an accessibility snapshot of the page")
    subparsers.add_parser("status", help="Show the state of the session daemon")

    # ── Session management (client-side) ───────────────────────────────

    subparsers.add_parser("list", help="List all sessions")
    subparsers.add_parser("session-stop", help="Stop the session daemon")
    subparsers.add_parser("session-stop-all", help="Stop every session daemon")

    p = subparsers.add_parser("logs", help="Show daemon log for a session")
    p.add_argument(
        "-n",
        "--lines",
        type=int,
        default=50,
        help="Number of lines to show (default: 50, 0 for all)",
    )


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_open(args: argparse.Namespace, config: CLIConfig, registry: SessionRegistry) -> None:
    if args.browser is not None:
        config.browser.channel = args.browser
    if args.profile is not None:
        config.browser.user_data_dir = args.profile
    if args.headless:
        config.browser.headless = True
    if args.extension:
        config.extension.enabled = True

    session = registry.find_or_create(
        config.browser.channel,
        config.browser.user_data_dir,
        config=config,
        session_id=resolve_session_name(args.session),
    )
    open_args: dict = {"extension": config.extension.enabled}
    if args.url:
        open_args["url"] = args.url
    result = send_command(
        session.socket_path, "open", open_args, timeout=_command_timeout(config)
    )
    _print_result(result)


def _cmd_list(registry: SessionRegistry) -> None:
    sessions = registry.list_sessions()
    if not sessions:
        print("No sessions found.")
        return
    print("### Browsers")
    for s in sessions:
        status = "open" if s["alive"] else "closed"
        print(f"- {s['name']}:")
        print(f"  - status: {status}")
        cfg = s.get("config")
        if cfg:
            browser_cfg = cfg.get("browser", {})
            extension_cfg = cfg.get("extension", {})
            print(f"  - browser-channel: {browser_cfg.get('channel', 'chrome')}")
            print(f"  - user-data-dir: {browser_cfg.get('userDataDir') or '<default>'}")
            print(f"  - extension: {str(extension_cfg.get('enabled', False)).lower()}")


def _cmd_session_stop_all(registry: SessionRegistry) -> None:
    results = registry.stop_all()
    if not results:
        print("No sessions found.")
        return
    failed = False
    for r in results:
        if r.ok:
            print(f"Stopped session '{r.session_id}': {r.detail}")
        else:
            failed = True
            print(r.detail, file=sys.stderr)
    if failed:
        sys.exit(1)


def _cmd_logs(args: argparse.Namespace, session_id: str, registry: SessionRegistry) -> None:
    log_path = registry.layout.log_path(session_id)
    if not log_path.exists():
        print(f"No log file found for session '{session_id}'.", file=sys.stderr)
        print(f"Expected: {log_path}", file=sys.stderr)
        sys.exit(1)
    if args.lines == 0:
        print(log_path.read_text(encoding="utf-8"), end="")
    else:
        subprocess.run(["tail", "-n", str(args.lines), str(log_path)], check=False)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler."""

    parser = argparse.ArgumentParser(
        prog="patchright-bridge",
        description="Attach browser automation to a running browser through the MCP bridge extension",
    )

    # Global options
    parser.add_argument("-s", "--session", default=None, help="Session name")
    parser.add_argument("--config", default=None, help="Path to config file")
    parser.add_argument("-v", "--version", action="store_true", help="Print version")

    subparsers = parser.add_subparsers(dest="command")
    _register_subcommands(subparsers)

    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.version:
        print(get_version())
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _setup_logging()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        _fail(str(exc))
        return
    registry = SessionRegistry(load_daemon_paths())

    try:
        if args.command == "open":
            _cmd_open(args, config, registry)
            return

        if args.command == "list":
            _cmd_list(registry)
            return

        if args.command == "session-stop-all":
            _cmd_session_stop_all(registry)
            return

        session_id = _session_id(args, config)

        if args.command == "session-stop":
            registry.stop(session_id)
            print(f"Stopped session '{session_id}'")
            return

        if args.command == "logs":
            _cmd_logs(args, session_id, registry)
            return

        # Everything else is forwarded to the session's daemon
        cmd_args = {"url": args.url} if args.command == "goto" else {}
        socket_path = registry.layout.socket_path(session_id)
        try:
            result = send_command(
                socket_path, args.command, cmd_args, timeout=_command_timeout(config)
            )
        except DaemonNotRunningError:
            _fail(
                f"Session '{session_id}' is not running. Use 'open' to start a session."
            )
            return
        _print_result(result)
    except BridgeError as exc:
        _fail(str(exc))
