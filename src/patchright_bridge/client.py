"""Synchronous client for session daemons.

Talks newline-delimited JSON over a daemon's Unix domain socket: one request
per connection, one reply.
"""

from __future__ import annotations

import json
import socket
from pathlib import Path

from patchright_bridge.errors import DaemonNotRunningError

PROBE_TIMEOUT = 2.0


def _receive_all(sock: socket.socket, buffer_size: int = 65536) -> bytes:
    """Read from *sock* until a newline arrives or the peer closes."""
    data = b""
    while True:
        chunk = sock.recv(buffer_size)
        if not chunk:
            break
        data += chunk
        if b"\n" in data:
            break
    return data.strip()


def send_command(
    socket_path: Path,
    cmd: str,
    args: dict | None = None,
    timeout: float = 120.0,
) -> dict:
    """Send a command to the daemon at *socket_path* and return its reply.

    The reply always has an ``ok`` key.  Raises ``DaemonNotRunningError`` when
    nothing is listening on the socket; other transport failures come back as
    ``{"ok": False, "error": ...}``.
    """
    if not socket_path.exists():
        raise DaemonNotRunningError(f"No daemon socket at {socket_path}")

    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(timeout)
        try:
            s.connect(str(socket_path))
        except (ConnectionRefusedError, FileNotFoundError) as exc:
            raise DaemonNotRunningError(
                f"Daemon at {socket_path} is not accepting connections"
            ) from exc
        payload = json.dumps({"cmd": cmd, "args": args or {}}).encode() + b"\n"
        s.sendall(payload)

        data = _receive_all(s)
        if not data:
            return {"ok": False, "error": "Daemon closed the connection without replying"}
        return json.loads(data)
    except socket.timeout:
        return {"ok": False, "error": f"Command timed out after {timeout}s"}
    except DaemonNotRunningError:
        raise
    except (OSError, json.JSONDecodeError) as e:
        return {"ok": False, "error": f"Connection error: {e}"}
    finally:
        s.close()


def probe(socket_path: Path, timeout: float = PROBE_TIMEOUT) -> dict | None:
    """Health-check the daemon at *socket_path*.

    Returns the ``ping`` reply of a responsive daemon, or ``None`` when the
    socket is missing, refuses connections, or does not answer in time.  A
    socket file without a live listener is therefore reported as not running.
    """
    try:
        reply = send_command(socket_path, "ping", timeout=timeout)
    except DaemonNotRunningError:
        return None
    if not reply.get("ok"):
        return None
    return reply
