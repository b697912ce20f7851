"""Local WebSocket relay the extension's confirmation page connects back to.

Each connection request registers its own path under the relay, so a page
left over from an earlier (timed out or cancelled) request can never be
mistaken for the page of the current one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from patchright_bridge.errors import ExtensionRPCError

logger = logging.getLogger(__name__)

# Close code used for connections to unknown or expired request paths.
CLOSE_UNKNOWN_PATH = 4004


class ExtensionConnection:
    """A live WebSocket connection from a confirmation page.

    Incoming frames are either replies to ``call`` (they carry an ``id`` we
    issued) or notifications, which are queued for ``next_message``.
    """

    def __init__(self, websocket: ServerConnection) -> None:
        self._ws = websocket
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._messages: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def serve(self) -> None:
        """Read frames until the page disconnects."""
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON frame from extension: {raw!r:.200}")
                    continue
                if not isinstance(message, dict):
                    continue
                self._dispatch(message)
        except ConnectionClosed:
            pass
        finally:
            self._closed.set()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(
                        ExtensionRPCError("Extension connection closed")
                    )
            self._pending.clear()
            self._messages.put_nowait(None)

    def _dispatch(self, message: dict[str, Any]) -> None:
        msg_id = message.get("id")
        future = self._pending.pop(msg_id, None) if isinstance(msg_id, int) else None
        if future is None:
            self._messages.put_nowait(message)
            return
        if future.done():
            return
        if "error" in message:
            future.set_exception(ExtensionRPCError(str(message["error"])))
        else:
            future.set_result(message.get("result"))

    async def next_message(self) -> dict[str, Any] | None:
        """Return the next notification, or ``None`` once the page is gone."""
        if self.closed and self._messages.empty():
            return None
        return await self._messages.get()

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        try:
            await self._ws.send(json.dumps({"method": method, "params": params or {}}))
        except ConnectionClosed as exc:
            raise ExtensionRPCError("Extension connection closed") from exc

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> Any:
        """Send a request and wait for the matching reply."""
        if self.closed:
            raise ExtensionRPCError("Extension connection closed")
        msg_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self._ws.send(
                json.dumps({"id": msg_id, "method": method, "params": params or {}})
            )
            return await asyncio.wait_for(future, timeout=timeout)
        except ConnectionClosed as exc:
            raise ExtensionRPCError("Extension connection closed") from exc
        except TimeoutError as exc:
            raise ExtensionRPCError(
                f"Extension did not answer '{method}' within {timeout}s"
            ) from exc
        finally:
            self._pending.pop(msg_id, None)

    async def close(self, reason: str = "") -> None:
        if self.closed:
            return
        try:
            await self._ws.close(reason=reason)
        except ConnectionClosed:
            pass


class ExtensionRelay:
    """WebSocket server bound to the loopback interface."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self.port = port
        self.relay_id = uuid.uuid4().hex
        self._server: Server | None = None
        self._waiters: dict[str, asyncio.Future[ExtensionConnection]] = {}

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(self._handle, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Extension relay listening on ws://{self.host}:{self.port}")

    async def close(self) -> None:
        for future in self._waiters.values():
            future.cancel()
        self._waiters.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def endpoint(self, request_id: str) -> str:
        return f"ws://{self.host}:{self.port}{self._path(request_id)}"

    def _path(self, request_id: str) -> str:
        return f"/extension/{self.relay_id}/{request_id}"

    def expect(self, request_id: str) -> asyncio.Future[ExtensionConnection]:
        """Register *request_id* and return a future for its page connection."""
        future: asyncio.Future[ExtensionConnection] = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters[request_id] = future
        return future

    def forget(self, request_id: str) -> None:
        future = self._waiters.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()

    async def _handle(self, websocket: ServerConnection) -> None:
        path = websocket.request.path if websocket.request else ""
        prefix = f"/extension/{self.relay_id}/"
        request_id = path[len(prefix):] if path.startswith(prefix) else ""
        future = self._waiters.pop(request_id, None)
        if future is None or future.done():
            logger.warning(f"Rejecting extension connection on unexpected path {path!r}")
            await websocket.close(code=CLOSE_UNKNOWN_PATH, reason="Unknown connection request")
            return

        connection = ExtensionConnection(websocket)
        future.set_result(connection)
        logger.info(f"Extension connected for request {request_id}")
        # The handler must outlive the connection; websockets closes it on return.
        await connection.serve()
