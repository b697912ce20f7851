from __future__ import annotations

import hashlib
import json
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from patchright_bridge.protocol import EXTENSION_ID

_DEFAULT_INSTALL_DIR = ".patchright-bridge"


class _ConfigModel(BaseModel):
    # Config files written for the Node.js CLI use camelCase keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BrowserConfig(_ConfigModel):
    browser_name: Literal["chromium", "firefox", "webkit"] = "chromium"
    channel: str = "chrome"
    user_data_dir: str | None = None
    executable_path: str | None = None
    headless: bool = False
    launch_args: list[str] = Field(default_factory=list)


class ExtensionConfig(_ConfigModel):
    enabled: bool = False
    extension_id: str = EXTENSION_ID
    token: str | None = None
    connection_timeout_ms: int = 5000
    protocol_version: int | None = None
    max_pending_requests: int = 8


class TimeoutsConfig(_ConfigModel):
    action: int = 5000
    navigation: int = 60000


class CLIConfig(_ConfigModel):
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    extension: ExtensionConfig = Field(default_factory=ExtensionConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)


class DaemonPaths(BaseModel):
    """Filesystem roots shared by the registry and its daemons."""

    install_root: Path
    session_root: Path
    socket_root: Path

    @classmethod
    def from_install_root(
        cls,
        install_root: str | Path | None = None,
        session_root: str | Path | None = None,
        socket_root: str | Path | None = None,
    ) -> DaemonPaths:
        """Fill in the derived roots.

        Sockets default to a short directory under the system temp dir because
        Unix socket paths are limited to 108 bytes.  The directory name is keyed
        by the install root so separate installs never share sockets.
        """
        install = Path(install_root) if install_root else Path.home() / _DEFAULT_INSTALL_DIR
        if session_root is None:
            session_root = install / "sessions"
        if socket_root is None:
            digest = hashlib.sha1(str(install).encode("utf-8")).hexdigest()[:8]
            socket_root = Path(tempfile.gettempdir()) / f"pwb-{digest}"
        return cls(
            install_root=install,
            session_root=Path(session_root),
            socket_root=Path(socket_root),
        )


# ---------------------------------------------------------------------------
# Environment readers (used by the CLI only)
# ---------------------------------------------------------------------------


class EnvOverrides(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PLAYWRIGHT_MCP_")

    browser: str | None = None
    headless: bool | None = None
    executable_path: str | None = None
    user_data_dir: str | None = None
    extension_token: str | None = None


class TestOverrides(BaseSettings):
    """Knobs the extension end-to-end tests use to shorten waits."""

    __test__ = False

    model_config = SettingsConfigDict(env_prefix="PWMCP_TEST_")

    connection_timeout: int | None = None
    protocol_version: int | None = None


class DaemonSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PLAYWRIGHT_DAEMON_")

    install_dir: str | None = None
    session_dir: str | None = None
    sockets_dir: str | None = None

    def to_paths(self) -> DaemonPaths:
        return DaemonPaths.from_install_root(
            self.install_dir or None,
            self.session_dir or None,
            self.sockets_dir or None,
        )


def apply_env_overrides(config: CLIConfig) -> CLIConfig:
    """Apply PLAYWRIGHT_MCP_* and PWMCP_TEST_* environment variables."""
    env = EnvOverrides()
    if env.browser:
        config.browser.channel = env.browser
    if env.headless is not None:
        config.browser.headless = env.headless
    if env.executable_path:
        config.browser.executable_path = env.executable_path
    if env.user_data_dir:
        config.browser.user_data_dir = env.user_data_dir
    if env.extension_token:
        config.extension.token = env.extension_token

    test = TestOverrides()
    if test.connection_timeout is not None:
        config.extension.connection_timeout_ms = test.connection_timeout
    if test.protocol_version is not None:
        config.extension.protocol_version = test.protocol_version

    return config


def load_daemon_paths() -> DaemonPaths:
    return DaemonSettings().to_paths()


def get_version() -> str:
    """Return the package version string."""
    try:
        from importlib.metadata import version

        return version("patchright-bridge")
    except Exception:
        return "0.1.0"


def load_config(config_path: str | None = None) -> CLIConfig:
    """Load CLI configuration from a JSON file and environment variables.

    Priority (highest to lowest):
        1. Environment variables (see ``apply_env_overrides``)
        2. Explicitly provided *config_path* JSON file
        3. ``.playwright/cli.config.json`` in the current working directory
        4. Built-in defaults
    """
    file_values: dict = {}

    if config_path is not None:
        config_file = Path(config_path)
        if not config_file.is_file():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        file_values = json.loads(config_file.read_text(encoding="utf-8"))
    else:
        default_config = Path.cwd() / ".playwright" / "cli.config.json"
        if default_config.is_file():
            file_values = json.loads(default_config.read_text(encoding="utf-8"))

    config = CLIConfig.model_validate(file_values)
    return apply_env_overrides(config)
