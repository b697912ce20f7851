"""Browser-control channels.

A channel is what a successful attachment hands back: something that can
navigate and capture an accessibility snapshot.  The bridge only establishes
and authorises channels; the work behind each call happens in the extension
or in Patchright.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from patchright.async_api import async_playwright

from patchright_bridge.config import BrowserConfig, TimeoutsConfig
from patchright_bridge.errors import ExtensionRPCError
from patchright_bridge.relay import ExtensionConnection

logger = logging.getLogger(__name__)


@dataclass
class PageSnapshot:
    url: str
    title: str
    snapshot: str


@runtime_checkable
class BrowserChannel(Protocol):
    @property
    def closed(self) -> bool: ...

    async def navigate(self, url: str) -> None: ...

    async def snapshot(self) -> PageSnapshot: ...

    async def close(self) -> None: ...


class ExtensionChannel:
    """Channel backed by an approved extension connection."""

    def __init__(
        self,
        connection: ExtensionConnection,
        tab: dict[str, Any] | None = None,
        call_timeout: float = 60.0,
    ) -> None:
        self._connection = connection
        self.tab: dict[str, Any] = tab or {}
        self._call_timeout = call_timeout

    @property
    def closed(self) -> bool:
        return self._connection.closed

    async def navigate(self, url: str) -> None:
        await self._connection.call("navigate", {"url": url}, timeout=self._call_timeout)

    async def snapshot(self) -> PageSnapshot:
        result = await self._connection.call("snapshot", timeout=self._call_timeout)
        if not isinstance(result, dict):
            raise ExtensionRPCError(f"Malformed snapshot reply: {result!r:.200}")
        return PageSnapshot(
            url=str(result.get("url", "")),
            title=str(result.get("title", "")),
            snapshot=str(result.get("snapshot", "")),
        )

    async def close(self) -> None:
        await self._connection.close(reason="Session closed")


class LaunchedChannel:
    """Channel backed by a browser Patchright launched itself.

    Used when ``open`` runs without ``--extension``.
    """

    def __init__(self, browser: BrowserConfig, timeouts: TimeoutsConfig) -> None:
        self._browser_config = browser
        self._timeouts = timeouts
        self.playwright: Any = None
        self.context: Any = None
        self.page: Any = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def launch(self, user_data_dir: str) -> None:
        bcfg = self._browser_config
        self.playwright = await async_playwright().start()
        browser_type = getattr(self.playwright, bcfg.browser_name)

        launch_opts: dict[str, Any] = {"headless": bcfg.headless, "no_viewport": True}
        if bcfg.browser_name == "chromium" and bcfg.channel not in ("", "chromium"):
            launch_opts["channel"] = bcfg.channel
        if bcfg.executable_path:
            launch_opts["executable_path"] = bcfg.executable_path
        if bcfg.launch_args:
            launch_opts["args"] = list(bcfg.launch_args)

        # Persistent context IS the browser
        self.context = await browser_type.launch_persistent_context(
            user_data_dir, **launch_opts
        )
        self.context.set_default_timeout(self._timeouts.action)
        self.context.set_default_navigation_timeout(self._timeouts.navigation)
        self.page = self.context.pages[0] if self.context.pages else await self.context.new_page()
        logger.info(f"Launched {bcfg.browser_name} with profile {user_data_dir}")

    async def navigate(self, url: str) -> None:
        await self.page.goto(url, wait_until="domcontentloaded")
        try:
            await self.page.wait_for_load_state("load", timeout=5000)
        except Exception:
            logger.debug(f"Load event did not fire for {url}, continuing")

    async def snapshot(self) -> PageSnapshot:
        text = await self.page.locator("body").aria_snapshot()
        try:
            title = await self.page.title()
        except Exception:
            title = ""
        return PageSnapshot(url=self.page.url, title=title, snapshot=text)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self.context is not None:
                await self.context.close()
        finally:
            if self.playwright is not None:
                await self.playwright.stop()
