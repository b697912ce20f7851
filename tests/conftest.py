"""Shared fixtures for patchright-bridge tests."""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import tempfile
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from patchright_bridge.config import CLIConfig, DaemonPaths
from patchright_bridge.protocol import PROTOCOL_VERSION
from patchright_bridge.relay import ExtensionRelay
from patchright_bridge.session import SessionLayout


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


@pytest.fixture
def short_root():
    """A short temp dir so Unix socket paths stay under the 108-char limit.

    pytest's tmp_path is too long (e.g. /tmp/pytest-of-user/pytest-N/test_name0/).
    """
    root = Path(tempfile.mkdtemp(prefix="pwb-t-"))
    yield root
    shutil.rmtree(root, ignore_errors=True)


@pytest.fixture
def daemon_paths(short_root) -> DaemonPaths:
    return DaemonPaths.from_install_root(
        short_root / "install", short_root / "sessions", short_root / "s"
    )


@pytest.fixture
def layout(daemon_paths) -> SessionLayout:
    layout = SessionLayout(daemon_paths)
    layout.ensure_roots()
    return layout


@pytest.fixture
def default_config():
    """Return a default CLIConfig instance."""
    return CLIConfig()


@pytest.fixture
def fast_config() -> CLIConfig:
    """Extension-mode config with a short connection timeout."""
    config = CLIConfig()
    config.extension.enabled = True
    config.extension.connection_timeout_ms = 2000
    return config


@pytest.fixture
def config_file(tmp_path):
    """Write a camelCase config JSON file and return its path."""
    config = {
        "browser": {
            "channel": "msedge",
            "userDataDir": "/tmp/profile",
            "headless": True,
        },
        "extension": {"connectionTimeoutMs": 1500, "token": "file-token"},
    }
    path = tmp_path / "cli.config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Fake extension
# ---------------------------------------------------------------------------


class FakeExtension:
    """``PageOpener`` that plays the extension's confirmation page.

    Instead of launching a browser it connects to the ``mcpRelayUrl`` from the
    confirmation URL and follows *behavior*:

    * ``approve``: ``hello`` then ``approve``
    * ``reject``: ``hello`` then ``reject``
    * ``silent``: ``hello`` and nothing else
    * ``leave``: ``hello`` then the page is closed
    * ``activity``: ``hello`` then a stream of ``tabPickerOpened`` notifications
    * ``approve-only``: ``approve`` without ``hello``
    * ``absent``: never connects (extension not installed)

    After approval it answers ``navigate`` and ``snapshot`` calls.
    """

    def __init__(
        self,
        behavior: str = "approve",
        protocol_version: int | None = PROTOCOL_VERSION,
        tab: dict | None = None,
        delay: float = 0.0,
    ) -> None:
        self.behavior = behavior
        self.protocol_version = protocol_version
        self.tab = tab if tab is not None else {"id": 7, "title": "Example"}
        self.delay = delay
        self.opened: list[str] = []
        self.received: list[dict] = []
        self.disconnected = asyncio.Event()
        self.current_url = "about:blank"
        self._tasks: list[asyncio.Task] = []

    @property
    def last_query(self) -> dict[str, str]:
        query = parse_qs(urlparse(self.opened[-1]).query)
        return {key: values[0] for key, values in query.items()}

    def methods_received(self) -> list[str]:
        return [m.get("method") for m in self.received if "method" in m]

    async def open(self, url: str) -> None:
        self.opened.append(url)
        if self.behavior == "absent":
            return
        self._tasks.append(asyncio.create_task(self._run(url)))

    async def _run(self, url: str) -> None:
        query = parse_qs(urlparse(url).query)
        if "url" in query:
            self.current_url = query["url"][0]
        try:
            async with connect(query["mcpRelayUrl"][0]) as ws:
                await self._script(ws)
                async for raw in ws:
                    message = json.loads(raw)
                    self.received.append(message)
                    if "id" in message:
                        await ws.send(
                            json.dumps({"id": message["id"], "result": self._answer(message)})
                        )
        except ConnectionClosed:
            pass
        finally:
            self.disconnected.set()

    async def _script(self, ws) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.behavior == "approve-only":
            await ws.send(json.dumps({"method": "approve", "params": {"tab": self.tab}}))
            return
        hello = {"method": "hello", "params": {}}
        if self.protocol_version is not None:
            hello["params"]["protocolVersion"] = self.protocol_version
        await ws.send(json.dumps(hello))
        if self.behavior == "approve":
            await ws.send(json.dumps({"method": "approve", "params": {"tab": self.tab}}))
        elif self.behavior == "reject":
            await ws.send(json.dumps({"method": "reject", "params": {}}))
        elif self.behavior == "leave":
            await ws.close()
        elif self.behavior == "activity":
            for _ in range(40):
                await ws.send(json.dumps({"method": "tabPickerOpened", "params": {}}))
                await asyncio.sleep(0.05)

    def _answer(self, message: dict) -> dict:
        method = message.get("method")
        if method == "navigate":
            self.current_url = message["params"]["url"]
            return {}
        if method == "snapshot":
            return {"url": self.current_url, "title": "Example", "snapshot": "- document"}
        return {}

    async def aclose(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


@pytest.fixture
async def make_extension():
    """Factory for ``FakeExtension`` instances; all are shut down on teardown."""
    created: list[FakeExtension] = []

    def _make(*args, **kwargs) -> FakeExtension:
        extension = FakeExtension(*args, **kwargs)
        created.append(extension)
        return extension

    yield _make
    for extension in created:
        await extension.aclose()


@pytest.fixture
async def relay():
    relay = ExtensionRelay()
    await relay.start()
    yield relay
    await relay.close()
