"""Data model shared by the registry, the daemon and the handshake engine."""

from __future__ import annotations

import subprocess
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from patchright_bridge.protocol import (
    CONNECTION_TIMEOUT_MESSAGE,
    EXTENSION_NAME,
    PROTOCOL_VERSION,
)

if TYPE_CHECKING:
    from patchright_bridge.channel import BrowserChannel


class Capability(str, Enum):
    DIRECT_NAVIGATE = "direct-navigate"
    TAB_SELECT = "tab-select"


class DaemonState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    IDLE = "idle"
    HANDSHAKING = "handshaking"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ConnectionRequest:
    """One request for a live browser attachment."""

    capability: Capability
    target_url: str | None = None
    protocol_version: int = PROTOCOL_VERSION
    auth_token: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.capability == Capability.DIRECT_NAVIGATE and not self.target_url:
            raise ValueError("direct-navigate requests need a target_url")


# ---------------------------------------------------------------------------
# Handshake outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Connected:
    channel: BrowserChannel
    kind: Literal["connected"] = "connected"

    @property
    def message(self) -> str:
        return "Connected to the browser extension."


@dataclass(frozen=True)
class Rejected:
    reason: str = "Connection rejected by user."
    kind: Literal["rejected"] = "rejected"

    @property
    def message(self) -> str:
        return self.reason


@dataclass(frozen=True)
class TimedOut:
    message: str = CONNECTION_TIMEOUT_MESSAGE
    kind: Literal["timed_out"] = "timed_out"


@dataclass(frozen=True)
class VersionIncompatible:
    required_version: int
    extension_version: int | None = None
    kind: Literal["version_incompatible"] = "version_incompatible"

    @property
    def message(self) -> str:
        found = (
            "did not report a protocol version"
            if self.extension_version is None
            else f"supports protocol version {self.extension_version}"
        )
        return (
            f'The "{EXTENSION_NAME}" extension {found}, but version '
            f"{self.required_version} or newer is required. Update the extension."
        )


HandshakeOutcome = Connected | Rejected | TimedOut | VersionIncompatible


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """A browser identity paired with its daemon and socket."""

    session_id: str
    browser_channel: str
    user_data_dir: str | None
    socket_path: Path
    pid: int | None = None
    process: subprocess.Popen | None = field(default=None, repr=False)


@dataclass
class StopResult:
    session_id: str
    ok: bool
    detail: str
