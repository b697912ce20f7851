"""On-disk session layout for patchright-bridge.

Directory layout::

    <installRoot>/
    <sessionRoot>/
      chrome/
        pid               # Daemon PID
        config.json       # Session config snapshot
        daemon.log        # Daemon log
        lock              # Held while the registry spawns a daemon
      chrome-5f1c0a93e2b4/
        ...
    <socketRoot>/
      chrome.sock
      chrome-5f1c0a93e2b4.sock

The registry is the only writer of directory metadata; a daemon owns nothing
but its own socket binding and pid file.
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import json
import os
import re
import subprocess
from collections.abc import Iterator
from pathlib import Path

from patchright_bridge.config import DaemonPaths

_SOCKET_SUFFIX = ".sock"
_PID_FILENAME = "pid"
_LOG_FILENAME = "daemon.log"
_CONFIG_FILENAME = "config.json"
_LOCK_FILENAME = "lock"
_ENV_SESSION_VAR = "PLAYWRIGHT_CLI_SESSION"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def derive_session_id(browser_channel: str, user_data_dir: str | None = None) -> str:
    """Return a stable session id for a browser channel and profile.

    Without a profile the channel name is the id.  With one, a short hash of
    the resolved profile path is appended so two profiles of the same channel
    get separate daemons.
    """
    base = _UNSAFE_CHARS.sub("_", browser_channel) or "default"
    if not user_data_dir:
        return base
    resolved = str(Path(user_data_dir).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:12]
    return f"{base}-{digest}"


def resolve_session_name(cli_arg: str | None) -> str | None:
    """Return an explicitly requested session name, if any.

    Priority: *cli_arg*, then ``PLAYWRIGHT_CLI_SESSION``.  ``None`` means the id
    is derived from the browser channel and profile.
    """
    if cli_arg:
        return cli_arg
    env_value = os.environ.get(_ENV_SESSION_VAR, "").strip()
    return env_value or None


def is_process_alive(pid: int) -> bool:
    """Return ``True`` if a process with *pid* exists.

    ``os.kill(pid, 0)`` checks for existence without sending a signal.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    return True


def process_command_line(pid: int) -> str | None:
    """Return the command line of *pid*, or ``None`` if it cannot be read."""
    if Path("/proc/self").is_dir():
        try:
            raw = (Path("/proc") / str(pid) / "cmdline").read_bytes()
        except OSError:
            return None
        return raw.replace(b"\0", b" ").decode("utf-8", errors="replace").strip() or None
    try:
        result = subprocess.run(
            ["ps", "-o", "command=", "-p", str(pid)],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    return result.stdout.strip() or None


class SessionLayout:
    """Path computations and file bookkeeping under the configured roots."""

    def __init__(self, paths: DaemonPaths) -> None:
        self.paths = paths

    # -- Directories ---------------------------------------------------------

    def ensure_roots(self) -> None:
        for root in (self.paths.install_root, self.paths.session_root, self.paths.socket_root):
            root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        """Return the directory for *session_id*, creating it if needed."""
        session_dir = self.paths.session_root / session_id
        session_dir.mkdir(parents=True, exist_ok=True)
        return session_dir

    def socket_path(self, session_id: str) -> Path:
        return self.paths.socket_root / f"{session_id}{_SOCKET_SUFFIX}"

    def pid_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / _PID_FILENAME

    def log_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / _LOG_FILENAME

    def config_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / _CONFIG_FILENAME

    def lock_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / _LOCK_FILENAME

    @contextlib.contextmanager
    def spawn_lock(self, session_id: str) -> Iterator[None]:
        """Hold an exclusive lock on the session while a daemon is started.

        Blocks until any other process starting the same session is done.
        """
        with open(self.lock_path(session_id), "a", encoding="utf-8") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    # -- PID management ------------------------------------------------------

    def write_pid(self, session_id: str, pid: int) -> None:
        self.pid_path(session_id).write_text(str(pid), encoding="utf-8")

    def read_pid(self, session_id: str) -> int | None:
        """Read the daemon PID, or ``None`` if missing or unparsable."""
        try:
            text = self.pid_path(session_id).read_text(encoding="utf-8").strip()
            if not text:
                return None
            return int(text)
        except (FileNotFoundError, ValueError):
            return None

    # -- Session config ------------------------------------------------------

    def write_config(self, session_id: str, config_json: str) -> None:
        self.config_path(session_id).write_text(config_json, encoding="utf-8")

    def read_config(self, session_id: str) -> dict | None:
        try:
            return json.loads(self.config_path(session_id).read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None

    # -- Enumeration & cleanup -----------------------------------------------

    def list_session_ids(self) -> list[str]:
        """Return every session id that has a directory or a socket file."""
        ids: set[str] = set()
        if self.paths.session_root.is_dir():
            ids.update(p.name for p in self.paths.session_root.iterdir() if p.is_dir())
        if self.paths.socket_root.is_dir():
            ids.update(
                p.name[: -len(_SOCKET_SUFFIX)]
                for p in self.paths.socket_root.iterdir()
                if p.name.endswith(_SOCKET_SUFFIX)
            )
        return sorted(ids)

    def cleanup(self, session_id: str) -> None:
        """Remove the socket and PID files of a session.

        The session directory, its config and its log are kept so the next
        launch can reuse them.  Errors other than a missing file propagate.
        """
        for path in (
            self.socket_path(session_id),
            self.paths.session_root / session_id / _PID_FILENAME,
        ):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
