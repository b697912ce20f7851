"""Tests for patchright_bridge.relay module.

Real ``websockets`` client connections stand in for the confirmation page.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from patchright_bridge.errors import ExtensionRPCError
from patchright_bridge.relay import CLOSE_UNKNOWN_PATH


class TestExtensionRelay:
    async def test_binds_ephemeral_loopback_port(self, relay):
        assert relay.is_running
        assert relay.port > 0
        assert relay.endpoint("abc") == (
            f"ws://127.0.0.1:{relay.port}/extension/{relay.relay_id}/abc"
        )

    async def test_expected_request_receives_connection(self, relay):
        waiter = relay.expect("req1")
        async with connect(relay.endpoint("req1")) as ws:
            connection = await asyncio.wait_for(waiter, 2)
            await ws.send(json.dumps({"method": "hello", "params": {"protocolVersion": 1}}))
            message = await asyncio.wait_for(connection.next_message(), 2)
        assert message == {"method": "hello", "params": {"protocolVersion": 1}}

    async def test_unknown_path_is_refused(self, relay):
        async with connect(relay.endpoint("nobody")) as ws:
            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(ws.recv(), 2)
        assert ws.close_code == CLOSE_UNKNOWN_PATH

    async def test_forgotten_request_is_refused(self, relay):
        waiter = relay.expect("late")
        relay.forget("late")
        assert waiter.cancelled()
        async with connect(relay.endpoint("late")) as ws:
            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(ws.recv(), 2)
        assert ws.close_code == CLOSE_UNKNOWN_PATH

    async def test_path_of_another_relay_is_refused(self, relay):
        relay.expect("req")
        url = f"ws://127.0.0.1:{relay.port}/extension/other-relay/req"
        async with connect(url) as ws:
            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(ws.recv(), 2)
        assert ws.close_code == CLOSE_UNKNOWN_PATH

    async def test_close_cancels_waiters(self, relay):
        waiter = relay.expect("req")
        await relay.close()
        assert waiter.cancelled()
        assert not relay.is_running


class TestExtensionConnection:
    async def test_call_matches_reply_by_id(self, relay):
        waiter = relay.expect("rpc")
        async with connect(relay.endpoint("rpc")) as ws:
            connection = await asyncio.wait_for(waiter, 2)
            call = asyncio.create_task(connection.call("snapshot", timeout=2))
            request = json.loads(await asyncio.wait_for(ws.recv(), 2))
            assert request["method"] == "snapshot"
            # Notifications interleaved with replies go to the message queue
            await ws.send(json.dumps({"method": "tabPickerOpened"}))
            await ws.send(json.dumps({"id": request["id"], "result": {"title": "T"}}))
            assert await call == {"title": "T"}
            assert (await connection.next_message())["method"] == "tabPickerOpened"

    async def test_error_reply_raises(self, relay):
        waiter = relay.expect("rpc")
        async with connect(relay.endpoint("rpc")) as ws:
            connection = await asyncio.wait_for(waiter, 2)
            call = asyncio.create_task(connection.call("navigate", {"url": "x"}, timeout=2))
            request = json.loads(await asyncio.wait_for(ws.recv(), 2))
            await ws.send(json.dumps({"id": request["id"], "error": "Tab was closed"}))
            with pytest.raises(ExtensionRPCError, match="Tab was closed"):
                await call

    async def test_call_times_out(self, relay):
        waiter = relay.expect("rpc")
        async with connect(relay.endpoint("rpc")):
            connection = await asyncio.wait_for(waiter, 2)
            with pytest.raises(ExtensionRPCError, match="did not answer"):
                await connection.call("snapshot", timeout=0.1)

    async def test_disconnect_fails_pending_calls(self, relay):
        waiter = relay.expect("rpc")
        ws = await connect(relay.endpoint("rpc"))
        connection = await asyncio.wait_for(waiter, 2)
        call = asyncio.create_task(connection.call("snapshot", timeout=5))
        await asyncio.wait_for(ws.recv(), 2)
        await ws.close()
        with pytest.raises(ExtensionRPCError):
            await call
        assert await asyncio.wait_for(connection.next_message(), 2) is None
        assert connection.closed

    async def test_non_json_frames_are_ignored(self, relay):
        waiter = relay.expect("rpc")
        async with connect(relay.endpoint("rpc")) as ws:
            connection = await asyncio.wait_for(waiter, 2)
            await ws.send("garbage")
            await ws.send(json.dumps(["not", "an", "object"]))
            await ws.send(json.dumps({"method": "reject"}))
            message = await asyncio.wait_for(connection.next_message(), 2)
        assert message == {"method": "reject"}

    async def test_notify_after_close_raises(self, relay):
        waiter = relay.expect("rpc")
        async with connect(relay.endpoint("rpc")):
            connection = await asyncio.wait_for(waiter, 2)
            await connection.close(reason="done")
        with pytest.raises(ExtensionRPCError):
            await connection.notify("ready")
