"""Opens the extension's confirmation page in the user's browser.

The browser is started with the confirmation URL on its command line.  When a
browser is already running on the same profile, the new process hands the URL
to it and exits, so the page opens as a tab of the user's session.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from typing import Protocol

from patchright.async_api import async_playwright

from patchright_bridge.config import BrowserConfig
from patchright_bridge.errors import BrowserLaunchError

logger = logging.getLogger(__name__)


class PageOpener(Protocol):
    async def open(self, url: str) -> None: ...


def _channel_candidates(channel: str) -> list[str]:
    """Well-known executable locations for a browser channel."""
    if sys.platform == "darwin":
        apps = {
            "chrome": "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
            "chrome-beta": "/Applications/Google Chrome Beta.app/Contents/MacOS/Google Chrome Beta",
            "chrome-dev": "/Applications/Google Chrome Dev.app/Contents/MacOS/Google Chrome Dev",
            "chrome-canary": "/Applications/Google Chrome Canary.app/Contents/MacOS/Google Chrome Canary",
            "msedge": "/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge",
        }
        return [apps[channel]] if channel in apps else []
    if sys.platform == "win32":
        suffix = {
            "chrome": r"Google\Chrome\Application\chrome.exe",
            "chrome-beta": r"Google\Chrome Beta\Application\chrome.exe",
            "chrome-dev": r"Google\Chrome Dev\Application\chrome.exe",
            "chrome-canary": r"Google\Chrome SxS\Application\chrome.exe",
            "msedge": r"Microsoft\Edge\Application\msedge.exe",
        }.get(channel)
        if suffix is None:
            return []
        roots = [
            os.environ.get("LOCALAPPDATA"),
            os.environ.get("PROGRAMFILES"),
            os.environ.get("PROGRAMFILES(X86)"),
        ]
        return [os.path.join(root, suffix) for root in roots if root]
    linux = {
        "chrome": ["/opt/google/chrome/chrome", "google-chrome", "google-chrome-stable"],
        "chrome-beta": ["/opt/google/chrome-beta/chrome", "google-chrome-beta"],
        "chrome-dev": ["/opt/google/chrome-unstable/chrome", "google-chrome-unstable"],
        "msedge": ["/opt/microsoft/msedge/msedge", "microsoft-edge"],
        "chromium": ["chromium", "chromium-browser"],
    }
    return linux.get(channel, [])


def find_channel_executable(channel: str) -> str | None:
    for candidate in _channel_candidates(channel):
        if os.path.isabs(candidate):
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        else:
            found = shutil.which(candidate)
            if found:
                return found
    return None


async def _bundled_chromium() -> str | None:
    async with async_playwright() as p:
        path = p.chromium.executable_path
    return path if path and os.path.isfile(path) else None


class BrowserLauncher:
    """``PageOpener`` that spawns the configured browser executable."""

    def __init__(self, config: BrowserConfig) -> None:
        self.config = config
        self._processes: list[asyncio.subprocess.Process] = []

    async def resolve_executable(self) -> str:
        if self.config.executable_path:
            return self.config.executable_path
        found = find_channel_executable(self.config.channel)
        if found is None and self.config.channel in ("chromium", ""):
            found = await _bundled_chromium()
        if found is None:
            raise BrowserLaunchError(
                f"Could not find a '{self.config.channel}' browser executable. "
                "Set browser.executablePath in the config or PLAYWRIGHT_MCP_EXECUTABLE_PATH."
            )
        return found

    def command_line(self, executable: str, url: str) -> list[str]:
        args = [executable]
        if self.config.user_data_dir:
            args.append(f"--user-data-dir={self.config.user_data_dir}")
        if self.config.headless:
            args.append("--headless=new")
        args.extend(self.config.launch_args)
        args.append(url)
        return args

    async def open(self, url: str) -> None:
        executable = await self.resolve_executable()
        args = self.command_line(executable, url)
        logger.info(f"Opening confirmation page with {executable}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise BrowserLaunchError(f"Failed to launch {executable}: {exc}") from exc
        # Keep a reference so the process is reaped by the loop, never killed.
        self._processes = [p for p in self._processes if p.returncode is None]
        self._processes.append(process)
