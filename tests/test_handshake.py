"""Tests for patchright_bridge.handshake module."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from patchright_bridge.channel import ExtensionChannel
from patchright_bridge.errors import BrowserLaunchError
from patchright_bridge.handshake import BridgeHandshake
from patchright_bridge.models import (
    Capability,
    Connected,
    ConnectionRequest,
    Rejected,
    TimedOut,
    VersionIncompatible,
)
from patchright_bridge.protocol import CONNECTION_TIMEOUT_MESSAGE


async def _eventually(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _tab_select(**kwargs) -> ConnectionRequest:
    return ConnectionRequest(Capability.TAB_SELECT, **kwargs)


def _navigate(url: str = "https://example.com/", **kwargs) -> ConnectionRequest:
    return ConnectionRequest(Capability.DIRECT_NAVIGATE, target_url=url, **kwargs)


# ---------------------------------------------------------------------------
# Confirmation URL
# ---------------------------------------------------------------------------


class TestConnectUrl:
    async def test_uses_per_request_relay_path(self, relay, make_extension):
        handshake = BridgeHandshake(relay, make_extension())
        request = _tab_select()
        url = handshake.connect_url(request)
        assert request.request_id in url
        assert relay.relay_id in url

    async def test_direct_navigate_parameters(self, relay, make_extension):
        extension = make_extension()
        handshake = BridgeHandshake(relay, extension, timeout=2)
        await handshake.run(_navigate("https://example.com/page"))
        query = extension.last_query
        assert query["capability"] == "direct-navigate"
        assert query["newTab"] == "true"
        assert query["url"] == "https://example.com/page"
        assert query["protocolVersion"] == "1"

    async def test_tab_select_parameters(self, relay, make_extension):
        extension = make_extension()
        handshake = BridgeHandshake(relay, extension, timeout=2)
        await handshake.run(_tab_select())
        query = extension.last_query
        assert query["capability"] == "tab-select"
        assert query["newTab"] == "false"
        assert "url" not in query

    async def test_token_is_forwarded(self, relay, make_extension):
        extension = make_extension()
        handshake = BridgeHandshake(relay, extension, timeout=2)
        outcome = await handshake.run(_tab_select(auth_token="s3cret"))
        assert isinstance(outcome, Connected)
        assert extension.last_query["token"] == "s3cret"


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    async def test_approve_connects(self, relay, make_extension):
        extension = make_extension(tab={"id": 3, "title": "Inbox"})
        handshake = BridgeHandshake(relay, extension, timeout=2)

        outcome = await handshake.run(_navigate("https://example.com/"))

        assert isinstance(outcome, Connected)
        assert isinstance(outcome.channel, ExtensionChannel)
        assert outcome.channel.tab == {"id": 3, "title": "Inbox"}
        assert not outcome.channel.closed
        await _eventually(lambda: "ready" in extension.methods_received())
        ready = next(m for m in extension.received if m.get("method") == "ready")
        assert ready["params"] == {
            "capability": "direct-navigate",
            "url": "https://example.com/",
        }

    async def test_connected_channel_answers_calls(self, relay, make_extension):
        extension = make_extension()
        handshake = BridgeHandshake(relay, extension, timeout=2)
        outcome = await handshake.run(_navigate("https://example.com/"))

        await outcome.channel.navigate("https://example.org/")
        page = await outcome.channel.snapshot()

        assert page.url == "https://example.org/"
        assert page.title == "Example"
        assert page.snapshot == "- document"

    async def test_reject(self, relay, make_extension):
        extension = make_extension("reject")
        outcome = await BridgeHandshake(relay, extension, timeout=2).run(_tab_select())
        assert isinstance(outcome, Rejected)
        assert outcome.message == "Connection rejected by user."
        await asyncio.wait_for(extension.disconnected.wait(), 2)

    async def test_page_closed_before_decision_is_rejected(self, relay, make_extension):
        extension = make_extension("leave")
        outcome = await BridgeHandshake(relay, extension, timeout=2).run(_tab_select())
        assert isinstance(outcome, Rejected)
        assert "closed" in outcome.message

    async def test_extension_absent_times_out(self, relay, make_extension):
        extension = make_extension("absent")
        handshake = BridgeHandshake(relay, extension, timeout=0.3)

        started = time.monotonic()
        outcome = await handshake.run(_tab_select())

        assert isinstance(outcome, TimedOut)
        assert outcome.message == CONNECTION_TIMEOUT_MESSAGE
        assert 0.25 <= time.monotonic() - started < 2

    async def test_no_decision_times_out_and_closes_page(self, relay, make_extension):
        extension = make_extension("silent")
        outcome = await BridgeHandshake(relay, extension, timeout=0.3).run(_tab_select())
        assert isinstance(outcome, TimedOut)
        await asyncio.wait_for(extension.disconnected.wait(), 2)

    async def test_activity_does_not_extend_timeout(self, relay, make_extension):
        extension = make_extension("activity")
        handshake = BridgeHandshake(relay, extension, timeout=0.4)

        started = time.monotonic()
        outcome = await handshake.run(_tab_select())

        assert isinstance(outcome, TimedOut)
        # The page keeps talking for about two seconds.
        assert time.monotonic() - started < 1.5


# ---------------------------------------------------------------------------
# Version gate
# ---------------------------------------------------------------------------


class TestVersionGate:
    async def test_older_extension_is_refused_with_banner(self, relay, make_extension):
        extension = make_extension("silent", protocol_version=1)
        handshake = BridgeHandshake(relay, extension, timeout=2)

        outcome = await handshake.run(_tab_select(protocol_version=2))

        assert outcome == VersionIncompatible(required_version=2, extension_version=1)
        await asyncio.wait_for(extension.disconnected.wait(), 2)
        mismatch = next(m for m in extension.received if m.get("method") == "versionMismatch")
        assert mismatch["params"]["requiredVersion"] == 2
        assert mismatch["params"]["extensionVersion"] == 1
        assert mismatch["params"]["message"] == (
            "Playwright MCP version trying to connect requires newer extension "
            "version (current version: 1, required: 2)."
        )

    async def test_newer_extension_is_accepted(self, relay, make_extension):
        extension = make_extension(protocol_version=5)
        outcome = await BridgeHandshake(relay, extension, timeout=2).run(_tab_select())
        assert isinstance(outcome, Connected)

    async def test_missing_version_is_refused(self, relay, make_extension):
        extension = make_extension("silent", protocol_version=None)
        outcome = await BridgeHandshake(relay, extension, timeout=2).run(_tab_select())
        assert outcome == VersionIncompatible(required_version=1, extension_version=None)

    async def test_approve_without_hello_is_refused(self, relay, make_extension):
        extension = make_extension("approve-only")
        outcome = await BridgeHandshake(relay, extension, timeout=2).run(_tab_select())
        assert isinstance(outcome, VersionIncompatible)
        assert outcome.extension_version is None


# ---------------------------------------------------------------------------
# Cancellation & failures
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancel_closes_page_and_forgets_request(self, relay, make_extension):
        extension = make_extension("silent")
        handshake = BridgeHandshake(relay, extension, timeout=30)
        request = _tab_select()

        task = asyncio.create_task(handshake.run(request))
        await _eventually(lambda: "ready" in extension.methods_received())
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(extension.disconnected.wait(), 2)
        assert request.request_id not in relay._waiters

    async def test_cancel_before_page_connects(self, relay, make_extension):
        extension = make_extension("absent")
        handshake = BridgeHandshake(relay, extension, timeout=30)
        request = _tab_select()

        task = asyncio.create_task(handshake.run(request))
        await _eventually(lambda: extension.opened)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert request.request_id not in relay._waiters

    async def test_opener_failure_propagates(self, relay):
        opener = MagicMock()
        opener.open = AsyncMock(side_effect=BrowserLaunchError("no browser"))
        request = _tab_select()

        with pytest.raises(BrowserLaunchError):
            await BridgeHandshake(relay, opener, timeout=1).run(request)
        assert request.request_id not in relay._waiters

    async def test_sequential_requests_share_relay(self, relay, make_extension):
        first = await BridgeHandshake(relay, make_extension("reject"), timeout=2).run(
            _tab_select()
        )
        second = await BridgeHandshake(relay, make_extension(), timeout=2).run(_tab_select())
        assert isinstance(first, Rejected)
        assert isinstance(second, Connected)
