"""Session registry: find, spawn and stop session daemons.

Synchronous; the CLI calls it directly.  Apart from the ``Popen``
handles of daemons it spawned itself, all state lives on disk under the
configured ``DaemonPaths``.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time

from patchright_bridge.client import PROBE_TIMEOUT, probe, send_command
from patchright_bridge.config import CLIConfig, DaemonPaths
from patchright_bridge.errors import (
    BridgeError,
    DaemonNotRunningError,
    DaemonSpawnError,
    DaemonTimeoutError,
    SessionStopError,
)
from patchright_bridge.models import Session, StopResult
from patchright_bridge.session import (
    SessionLayout,
    derive_session_id,
    is_process_alive,
    process_command_line,
)

logger = logging.getLogger(__name__)

_DAEMON_ENTRY = "from patchright_bridge.daemon import start_daemon"


def _daemon_script(session_id: str, paths_json: str) -> str:
    return f"{_DAEMON_ENTRY}; start_daemon({session_id!r}, {paths_json!r})"


def is_session_daemon(pid: int, session_id: str) -> bool:
    """Return ``True`` if *pid* is running the daemon of *session_id*."""
    command_line = process_command_line(pid)
    if command_line is None:
        return False
    return _DAEMON_ENTRY in command_line and f"start_daemon({session_id!r}," in command_line


class SessionRegistry:
    def __init__(
        self,
        paths: DaemonPaths,
        readiness_timeout: float = 15.0,
        stop_timeout: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self.paths = paths
        self.layout = SessionLayout(paths)
        self.readiness_timeout = readiness_timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self._processes: dict[str, subprocess.Popen] = {}

    # -- Lookup & spawn ------------------------------------------------------

    def find_or_create(
        self,
        browser_channel: str,
        user_data_dir: str | None = None,
        config: CLIConfig | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Return the session for this browser identity, spawning its daemon if needed.

        A daemon that answers ``ping`` on the computed socket is reused as is.
        Raises ``DaemonSpawnError`` if a new daemon exits before it is ready
        and ``DaemonTimeoutError`` if it is not ready within
        ``readiness_timeout`` seconds.
        """
        session_id = session_id or derive_session_id(browser_channel, user_data_dir)
        self.layout.ensure_roots()
        socket_path = self.layout.socket_path(session_id)

        with self.layout.spawn_lock(session_id):
            reply = probe(socket_path)
            if reply is not None:
                logger.debug(f"Reusing daemon for {session_id!r} (pid={reply.get('pid')})")
                return Session(
                    session_id=session_id,
                    browser_channel=browser_channel,
                    user_data_dir=user_data_dir,
                    socket_path=socket_path,
                    pid=reply.get("pid"),
                    process=self._processes.get(session_id),
                )

            self._clear_stale(session_id)

            config = config.model_copy(deep=True) if config else CLIConfig()
            config.browser.channel = browser_channel
            config.browser.user_data_dir = user_data_dir

            proc = self._spawn(session_id, config)
            reply = self._wait_until_ready(session_id, proc)

        pid = reply.get("pid", proc.pid)
        owned = pid == proc.pid
        if owned:
            self._processes[session_id] = proc
        logger.info(f"Started daemon for {session_id!r} (pid={pid})")
        return Session(
            session_id=session_id,
            browser_channel=browser_channel,
            user_data_dir=user_data_dir,
            socket_path=socket_path,
            pid=pid,
            process=proc if owned else None,
        )

    def _clear_stale(self, session_id: str) -> None:
        last_error: OSError | None = None
        for _ in range(2):
            try:
                self.layout.cleanup(session_id)
                return
            except OSError as exc:
                last_error = exc
                logger.warning(f"Could not remove stale files for {session_id!r}: {exc}")
                time.sleep(self.poll_interval)
        raise DaemonSpawnError(
            f"Could not remove stale socket for session '{session_id}': {last_error}"
        ) from last_error

    def _spawn(self, session_id: str, config: CLIConfig) -> subprocess.Popen:
        config_json = config.model_dump_json(by_alias=True)
        paths_json = self.paths.model_dump_json()

        # argv never carries the config; it may hold the auth token.
        # The daemon logs to daemon.log in its session directory itself.
        try:
            proc = subprocess.Popen(
                [sys.executable, "-c", _daemon_script(session_id, paths_json)],
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise DaemonSpawnError(
                f"Could not start daemon for session '{session_id}': {exc}"
            ) from exc
        try:
            proc.stdin.write(config_json.encode("utf-8"))
            proc.stdin.close()
        except BrokenPipeError:
            # Exited before reading its config; readiness polling reports it.
            logger.warning(f"Daemon for {session_id!r} closed stdin before reading its config")
        return proc

    def _wait_until_ready(self, session_id: str, proc: subprocess.Popen) -> dict:
        """Poll until the session answers ``ping`` and return the reply."""
        socket_path = self.layout.socket_path(session_id)
        deadline = time.monotonic() + self.readiness_timeout
        while True:
            if proc.poll() is not None:
                # A daemon started outside this registry may have won the socket.
                reply = probe(socket_path)
                if reply is not None:
                    return reply
                raise DaemonSpawnError(
                    f"Daemon for session '{session_id}' exited with code "
                    f"{proc.returncode} before becoming ready. "
                    f"See {self.layout.log_path(session_id)}"
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            reply = probe(socket_path, timeout=min(PROBE_TIMEOUT, remaining))
            if reply is not None:
                return reply
            time.sleep(self.poll_interval)

        # Kill the half-started daemon so a retry starts clean.
        proc.kill()
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Daemon pid {proc.pid} did not exit after SIGKILL")
        self.layout.cleanup(session_id)
        raise DaemonTimeoutError(
            f"Daemon for session '{session_id}' was not ready after "
            f"{self.readiness_timeout}s. See {self.layout.log_path(session_id)}"
        )

    # -- Stop ------------------------------------------------------------------

    def stop(self, session_id: str) -> None:
        """Stop the daemon for *session_id*.

        Safe to call for a session that is already stopped.  Raises
        ``SessionStopError`` only if the daemon process cannot be terminated.
        """
        self._stop(session_id)

    def _stop(self, session_id: str) -> str:
        socket_path = self.layout.socket_path(session_id)
        proc = self._processes.pop(session_id, None)
        pid = self.layout.read_pid(session_id)
        if pid is None and proc is not None:
            pid = proc.pid

        graceful = False
        confirmed = proc is not None and proc.pid == pid
        reply = probe(socket_path)
        if reply is not None:
            if reply.get("pid"):
                pid = reply["pid"]
                confirmed = True
            try:
                result = send_command(socket_path, "close", timeout=self.stop_timeout)
                graceful = result.get("ok", False)
            except DaemonNotRunningError:
                pass

        try:
            if pid is None or not self._alive(pid, proc):
                return "Stopped" if graceful else "Cleaned up stale session"
            # A leftover pid file may name a pid that now belongs to another process.
            if not confirmed and not is_session_daemon(pid, session_id):
                logger.warning(
                    f"pid {pid} of session {session_id!r} is not its daemon; not signalling it"
                )
                return "Stopped" if graceful else "Cleaned up stale session"
            self._terminate(session_id, pid, proc, graceful)
            return "Stopped" if graceful else f"Terminated pid {pid}"
        finally:
            self.layout.cleanup(session_id)

    def _terminate(
        self,
        session_id: str,
        pid: int,
        proc: subprocess.Popen | None,
        graceful: bool,
    ) -> None:
        if graceful and self._wait_for_exit(pid, proc):
            return
        for sig in (signal.SIGTERM, signal.SIGKILL):
            logger.info(f"Sending {sig.name} to daemon {session_id!r} (pid={pid})")
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                return
            except PermissionError as exc:
                raise SessionStopError(
                    session_id, f"permission denied signalling pid {pid}"
                ) from exc
            if self._wait_for_exit(pid, proc):
                return
        raise SessionStopError(session_id, f"pid {pid} is still running after SIGKILL")

    def _alive(self, pid: int, proc: subprocess.Popen | None) -> bool:
        # Our own children stay zombies until polled.
        if proc is not None and proc.pid == pid:
            return proc.poll() is None
        return is_process_alive(pid)

    def _wait_for_exit(self, pid: int, proc: subprocess.Popen | None) -> bool:
        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            if not self._alive(pid, proc):
                return True
            time.sleep(self.poll_interval)
        return not self._alive(pid, proc)

    def stop_all(self) -> list[StopResult]:
        """Stop every session under the session root.

        Each session is attempted even if an earlier one fails; failures are
        reported in the returned list.
        """
        results: list[StopResult] = []
        for session_id in self.layout.list_session_ids():
            try:
                detail = self._stop(session_id)
            except (BridgeError, OSError) as exc:
                logger.warning(f"Failed to stop {session_id!r}: {exc}")
                results.append(StopResult(session_id, ok=False, detail=str(exc)))
            else:
                results.append(StopResult(session_id, ok=True, detail=detail))
        return results

    # -- Enumeration -----------------------------------------------------------

    def list_sessions(self) -> list[dict]:
        """Summarise each known session: name, alive, pid and stored config."""
        results: list[dict] = []
        for session_id in self.layout.list_session_ids():
            pid = self.layout.read_pid(session_id)
            alive = pid is not None and self._alive(pid, self._processes.get(session_id))
            results.append(
                {
                    "name": session_id,
                    "alive": alive,
                    "pid": pid,
                    "config": self.layout.read_config(session_id),
                }
            )
        return results
