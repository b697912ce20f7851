"""Exception hierarchy for patchright-bridge.

Handshake results (rejected, timed out, version mismatch) are not exceptions;
they are returned as ``HandshakeOutcome`` values.  The exceptions here cover
process lifecycle and transport failures.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all patchright-bridge errors."""


class DaemonSpawnError(BridgeError):
    """The daemon process failed to start or exited before becoming ready."""


class DaemonTimeoutError(BridgeError):
    """The daemon did not answer the readiness probe in time."""


class DaemonBusyError(BridgeError):
    """Too many connection requests are already queued on this daemon."""


class DaemonNotRunningError(BridgeError):
    """No responsive daemon is listening on the session socket."""


class SessionStopError(BridgeError):
    """A daemon process could not be terminated."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(f"Failed to stop session '{session_id}': {message}")
        self.session_id = session_id


class BrowserLaunchError(BridgeError):
    """The confirmation page could not be opened in the browser."""


class ExtensionRPCError(BridgeError):
    """A call over the extension channel failed or the connection was lost."""
