"""Asyncio session daemon for patchright-bridge.

One daemon process per browser session.  It owns the browser-control channel
once one is established and serves commands over a Unix domain socket using
line-delimited JSON: one ``{"cmd": ..., "args": {...}}`` request per
connection, one ``{"ok": ..., ...}`` reply.

Connection requests are handled one at a time in arrival order (an
``asyncio.Lock`` wakes waiters FIFO).  At most
``extension.max_pending_requests`` may wait behind the one in flight; further
requests fail fast with ``DaemonBusyError``.

The daemon is started as a background process by ``start_daemon`` (called
from ``registry.py``).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
import traceback
from typing import Any

from patchright_bridge.channel import BrowserChannel, LaunchedChannel, PageSnapshot
from patchright_bridge.client import probe
from patchright_bridge.config import CLIConfig, DaemonPaths
from patchright_bridge.errors import BridgeError, DaemonBusyError
from patchright_bridge.handshake import BridgeHandshake
from patchright_bridge.launcher import BrowserLauncher, PageOpener
from patchright_bridge.models import (
    Capability,
    ConnectionRequest,
    Connected,
    DaemonState,
    HandshakeOutcome,
)
from patchright_bridge.protocol import PROTOCOL_VERSION, status_page_url
from patchright_bridge.relay import ExtensionRelay
from patchright_bridge.session import SessionLayout

logger = logging.getLogger("patchright_bridge.daemon")


# ---------------------------------------------------------------------------
# Response builder
# ---------------------------------------------------------------------------


class Response:
    """Builds section-based markdown output."""

    def __init__(self) -> None:
        self._header: str | None = None
        self._page: PageSnapshot | None = None

    def set_header(self, text: str) -> None:
        self._header = text

    def set_page(self, page: PageSnapshot) -> None:
        self._page = page

    def serialize(self) -> str:
        sections: list[str] = []

        if self._header:
            sections.append(self._header)

        if self._page is not None:
            page_lines = [f"- Page URL: {self._page.url}"]
            if self._page.title:
                page_lines.append(f"- Page Title: {self._page.title}")
            sections.append("### Page\n" + "\n".join(page_lines))
            sections.append(f"### Snapshot\n```yaml\n{self._page.snapshot}\n```")

        return "\n".join(sections)


def outcome_reply(outcome: HandshakeOutcome) -> dict[str, Any]:
    if isinstance(outcome, Connected):
        return {"ok": True, "outcome": outcome.kind, "output": outcome.message}
    return {"ok": False, "outcome": outcome.kind, "error": outcome.message}


# ---------------------------------------------------------------------------
# BridgeDaemon
# ---------------------------------------------------------------------------


class BridgeDaemon:
    """Holds all state for a single daemon-managed browser session."""

    def __init__(
        self,
        session_id: str,
        config: CLIConfig,
        layout: SessionLayout,
        opener: PageOpener | None = None,
        relay: ExtensionRelay | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config
        self.layout = layout
        self.state = DaemonState.STARTING

        self.channel: BrowserChannel | None = None
        self.extension_mode: bool = config.extension.enabled

        self.relay = relay or ExtensionRelay()
        self.handshake = BridgeHandshake(
            self.relay,
            opener or BrowserLauncher(config.browser),
            timeout=config.extension.connection_timeout_ms / 1000,
            extension_id=config.extension.extension_id,
        )

        self._lock = asyncio.Lock()
        self._submitted = 0
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def protocol_version(self) -> int:
        return self.config.extension.protocol_version or PROTOCOL_VERSION

    @property
    def user_data_dir(self) -> str:
        return self.config.browser.user_data_dir or str(
            self.layout.session_dir(self.session_id) / "browser-data"
        )

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        await self.relay.start()

    def mark_ready(self) -> None:
        self.state = DaemonState.READY

    async def stop(self) -> None:
        """Cancel in-flight work and release the channel and relay.

        Accepted from any state; always ends in ``stopped``.
        """
        if self.state == DaemonState.STOPPED:
            return
        self.state = DaemonState.STOPPING
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self.channel is not None:
            try:
                await self.channel.close()
            except Exception:
                logger.exception("Error while closing browser channel")
            self.channel = None
        await self.relay.close()
        self.state = DaemonState.STOPPED
        logger.info(f"Daemon for {self.session_id!r} stopped")

    def track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- Connection requests -------------------------------------------------

    async def connect(
        self,
        capability: Capability,
        target_url: str | None = None,
        reuse: bool = False,
    ) -> HandshakeOutcome:
        """Run a connection request, queued behind any request in flight.

        With *reuse*, a still-open channel satisfies the request without a
        new handshake.
        """
        if self.state in (DaemonState.STOPPING, DaemonState.STOPPED):
            raise BridgeError(f"Session '{self.session_id}' is shutting down")
        limit = 1 + self.config.extension.max_pending_requests
        if self._submitted >= limit:
            raise DaemonBusyError(
                f"Session '{self.session_id}' already has {self._submitted} "
                "connection requests in progress"
            )

        self._submitted += 1
        try:
            async with self._lock:
                if reuse and self.channel is not None and not self.channel.closed:
                    return Connected(self.channel)

                request = ConnectionRequest(
                    capability=capability,
                    target_url=target_url if capability == Capability.DIRECT_NAVIGATE else None,
                    protocol_version=self.protocol_version,
                    auth_token=self.config.extension.token,
                )
                self.state = DaemonState.HANDSHAKING
                try:
                    outcome = await self.handshake.run(request)
                finally:
                    if self.state == DaemonState.HANDSHAKING:
                        self.state = DaemonState.IDLE

                if isinstance(outcome, Connected):
                    previous, self.channel = self.channel, outcome.channel
                    self.extension_mode = True
                    if previous is not None and previous is not outcome.channel:
                        await previous.close()
                return outcome
        finally:
            self._submitted -= 1

    async def _attach(self, capability: Capability, url: str | None = None) -> BrowserChannel:
        if self.channel is not None and not self.channel.closed:
            return self.channel
        if not self.extension_mode:
            raise BridgeError(
                f"No browser is open in session '{self.session_id}'. Use 'open' first."
            )
        outcome = await self.connect(capability, url, reuse=True)
        if not isinstance(outcome, Connected):
            raise _OutcomeFailure(outcome)
        return outcome.channel

    # -- Dispatch ------------------------------------------------------------

    async def handle_command(self, cmd: str, args: dict[str, Any]) -> dict[str, Any]:
        """Dispatch *cmd* to the appropriate ``cmd_*`` handler."""
        method_name = f"cmd_{cmd.replace('-', '_')}"
        handler = getattr(self, method_name, None)
        if handler is None:
            return {"ok": False, "error": f"Unknown command: {cmd}"}
        try:
            return await handler(**args)
        except _OutcomeFailure as failure:
            return outcome_reply(failure.outcome)
        except BridgeError as exc:
            return {"ok": False, "error": str(exc)}
        except TypeError as exc:
            return {"ok": False, "error": f"Invalid arguments for {cmd}: {exc}"}
        except Exception as exc:
            return {"ok": False, "error": f"{exc}\n{traceback.format_exc()}"}

    # -----------------------------------------------------------------------
    # Command handlers
    # -----------------------------------------------------------------------

    async def cmd_ping(self) -> dict[str, Any]:
        return {
            "ok": True,
            "output": "pong",
            "session": self.session_id,
            "pid": os.getpid(),
            "state": self.state.value,
        }

    async def cmd_status(self) -> dict[str, Any]:
        connected = self.channel is not None and not self.channel.closed
        relay = "stopped"
        if self.relay.is_running:
            relay = f"ws://{self.relay.host}:{self.relay.port}"
        lines = [
            f"- session: {self.session_id}",
            f"- state: {self.state.value}",
            f"- mode: {'extension' if self.extension_mode else 'launch'}",
            f"- connected: {str(connected).lower()}",
            f"- protocol-version: {self.protocol_version}",
            f"- relay: {relay}",
            f"- extension-status-page: {status_page_url(self.config.extension.extension_id)}",
        ]
        return {
            "ok": True,
            "output": "\n".join(lines),
            "state": self.state.value,
            "connected": connected,
        }

    async def cmd_connect(
        self, capability: str = Capability.TAB_SELECT.value, url: str | None = None
    ) -> dict[str, Any]:
        """Run a fresh handshake, replacing any existing channel on success."""
        try:
            cap = Capability(capability)
        except ValueError:
            return {"ok": False, "error": f"Unknown capability: {capability}"}
        if cap == Capability.DIRECT_NAVIGATE and not url:
            return {"ok": False, "error": "direct-navigate requires a url"}
        outcome = await self.connect(cap, url)
        return outcome_reply(outcome)

    async def cmd_open(
        self,
        url: str | None = None,
        extension: bool = False,
        headless: bool | None = None,
    ) -> dict[str, Any]:
        """Attach to (or launch) the browser and optionally navigate to *url*."""
        if headless is not None:
            self.config.browser.headless = headless
        if extension:
            self.extension_mode = True

        if self.extension_mode:
            capability = Capability.DIRECT_NAVIGATE if url else Capability.TAB_SELECT
            channel = await self._attach(capability, url)
        else:
            if self.channel is None or self.channel.closed:
                launched = LaunchedChannel(self.config.browser, self.config.timeouts)
                await launched.launch(self.user_data_dir)
                self.channel = launched
            channel = self.channel

        if url:
            await channel.navigate(url)
        page = await channel.snapshot()

        bcfg = self.config.browser
        response = Response()
        response.set_header(
            f"### Browser `{self.session_id}` opened with pid {os.getpid()}.\n"
            f"- {self.session_id}:\n"
            f"  - mode: {'extension' if self.extension_mode else 'launch'}\n"
            f"  - browser-channel: {bcfg.channel}\n"
            f"  - user-data-dir: {self.user_data_dir}\n"
            f"  - headed: {str(not bcfg.headless).lower()}\n"
            f"---\n"
        )
        response.set_page(page)
        return {"ok": True, "output": response.serialize()}

    async def cmd_goto(self, url: str) -> dict[str, Any]:
        channel = await self._attach(Capability.DIRECT_NAVIGATE, url)
        await channel.navigate(url)
        response = Response()
        response.set_page(await channel.snapshot())
        return {"ok": True, "output": response.serialize()}

    async def cmd_snapshot(self) -> dict[str, Any]:
        channel = await self._attach(Capability.TAB_SELECT)
        response = Response()
        response.set_page(await channel.snapshot())
        return {"ok": True, "output": response.serialize()}

    async def cmd_close(self) -> dict[str, Any]:
        """Release the browser and signal daemon shutdown."""
        await self.stop()
        return {"ok": True, "output": f"Session '{self.session_id}' closed\n"}


class _OutcomeFailure(Exception):
    """Carries a non-connected outcome out of a command handler."""

    def __init__(self, outcome: HandshakeOutcome) -> None:
        super().__init__(outcome.message)
        self.outcome = outcome


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


async def _wait_for_disconnect(reader: asyncio.StreamReader) -> None:
    while await reader.read(4096):
        pass


async def run_server(
    session_id: str,
    config_dict: dict[str, Any],
    paths_dict: dict[str, Any],
    opener: PageOpener | None = None,
) -> None:
    """Main daemon entry point. Creates BridgeDaemon, starts the Unix socket server."""
    config = CLIConfig.model_validate(config_dict)
    layout = SessionLayout(DaemonPaths.model_validate(paths_dict))
    layout.ensure_roots()

    socket_path = layout.socket_path(session_id)
    if socket_path.exists():
        reply = await asyncio.to_thread(probe, socket_path)
        if reply is not None:
            logger.warning(
                f"Session {session_id!r} is already served by pid {reply.get('pid')}; exiting"
            )
            return
        socket_path.unlink()

    daemon = BridgeDaemon(session_id, config, layout, opener=opener)
    logger.info(f"BridgeDaemon created for {session_id!r}")

    # Persist config to the session dir for the `list` command, without the token
    layout.write_config(
        session_id,
        config.model_dump_json(indent=2, by_alias=True, exclude={"extension": {"token"}}),
    )

    shutdown = asyncio.Event()

    async def handle_client(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            data = await reader.readline()
            if not data:
                return

            request = json.loads(data.decode())
            cmd = request.get("cmd", "")
            args = request.get("args", {})
            logger.debug(f"Received command: {cmd} args={args}")

            command = asyncio.create_task(daemon.handle_command(cmd, args))
            daemon.track(command)
            disconnect = asyncio.create_task(_wait_for_disconnect(reader))
            await asyncio.wait({command, disconnect}, return_when=asyncio.FIRST_COMPLETED)

            if not command.done():
                logger.info(f"Client disconnected, cancelling {cmd!r}")
                command.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await command
                return
            disconnect.cancel()

            if command.cancelled():
                result = {"ok": False, "error": f"Command {cmd!r} was cancelled"}
            else:
                result = command.result()

            if result.get("ok", False):
                logger.debug(f"Command {cmd!r} succeeded")
            else:
                logger.warning(f"Command {cmd!r} failed: {result.get('error')}")

            writer.write(json.dumps(result).encode() + b"\n")
            await writer.drain()

            if cmd == "close":
                logger.info("Close command received, shutting down server")
                shutdown.set()
        except Exception:
            logger.exception("Unhandled error in handle_client")
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    await daemon.start()
    server = await asyncio.start_unix_server(handle_client, path=str(socket_path))
    layout.write_pid(session_id, os.getpid())
    daemon.mark_ready()
    logger.info(f"Server listening on {socket_path}")

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGTERM, shutdown.set)

    try:
        async with server:
            await shutdown.wait()
    finally:
        logger.info("Server stopped, cleaning up session")
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGTERM)
        await daemon.stop()
        layout.cleanup(session_id)


def _setup_logging(layout: SessionLayout, session_id: str) -> None:
    """Configure logging for the daemon process.

    Writes to ``<sessionRoot>/<id>/daemon.log``.  Also redirects
    *stdout*/*stderr* so that stray ``print()`` calls or unhandled tracebacks
    land in the same file.
    """
    log_path = layout.log_path(session_id)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)

    sys.stdout = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
    sys.stderr = sys.stdout


def start_daemon(session_id: str, paths_json: str) -> None:
    """Entry point for the daemon subprocess. Called by registry.py.

    The session config is read as JSON from stdin.
    """
    config_json = sys.stdin.read()
    paths = DaemonPaths.model_validate_json(paths_json)
    layout = SessionLayout(paths)
    layout.ensure_roots()
    _setup_logging(layout, session_id)
    logger.info(f"Daemon starting for session {session_id!r} (pid={os.getpid()})")
    try:
        asyncio.run(
            run_server(session_id, json.loads(config_json), paths.model_dump(mode="json"))
        )
    except Exception:
        logger.exception("Daemon crashed")
        raise
