"""Bridge handshake engine.

Drives one ``ConnectionRequest`` to exactly one ``HandshakeOutcome``:

1. register the request with the relay and open the confirmation page;
2. wait, under a single timer started once the page is opened, for the page
   to connect and report its protocol version (``hello``);
3. run the version gate; an incompatible extension is told so (the page shows
   a banner) and the request resolves ``VersionIncompatible``;
4. wait for ``approve`` (user click, tab chosen, or a token the extension
   accepted) or ``reject``.

Page messages other than ``hello``/``approve``/``reject`` are activity
notifications and do not extend the timer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from patchright_bridge.channel import ExtensionChannel
from patchright_bridge.errors import ExtensionRPCError
from patchright_bridge.launcher import PageOpener
from patchright_bridge.models import (
    ConnectionRequest,
    Connected,
    HandshakeOutcome,
    Rejected,
    TimedOut,
    VersionIncompatible,
)
from patchright_bridge.protocol import (
    EXTENSION_ID,
    build_connect_url,
    is_compatible,
    version_mismatch_banner,
)
from patchright_bridge.relay import ExtensionConnection, ExtensionRelay

logger = logging.getLogger(__name__)

CLIENT_INFO = {"name": "patchright-bridge", "version": "0.1.0"}


def _as_version(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class BridgeHandshake:
    def __init__(
        self,
        relay: ExtensionRelay,
        opener: PageOpener,
        timeout: float = 5.0,
        extension_id: str = EXTENSION_ID,
        client_info: dict[str, str] | None = None,
    ) -> None:
        self._relay = relay
        self._opener = opener
        self._timeout = timeout
        self._extension_id = extension_id
        self._client_info = client_info or CLIENT_INFO

    def connect_url(self, request: ConnectionRequest) -> str:
        return build_connect_url(
            relay_url=self._relay.endpoint(request.request_id),
            protocol_version=request.protocol_version,
            capability=request.capability.value,
            target_url=request.target_url,
            auth_token=request.auth_token,
            client=self._client_info,
            extension_id=self._extension_id,
        )

    async def run(self, request: ConnectionRequest) -> HandshakeOutcome:
        """Resolve *request*.

        Cancelling the calling task closes the confirmation page connection
        and drops the relay registration before ``CancelledError`` propagates.
        """
        await self._relay.start()
        waiter = self._relay.expect(request.request_id)
        connection: ExtensionConnection | None = None
        outcome: HandshakeOutcome | None = None
        try:
            await self._opener.open(self.connect_url(request))
            logger.info(
                f"Waiting up to {self._timeout}s for extension "
                f"({request.capability.value}, request {request.request_id})"
            )
            try:
                async with asyncio.timeout(self._timeout):
                    connection = await waiter
                    outcome = await self._negotiate(connection, request)
            except TimeoutError:
                outcome = TimedOut()
            logger.info(f"Handshake {request.request_id} resolved: {outcome.kind}")
            return outcome
        finally:
            self._relay.forget(request.request_id)
            if connection is not None and not isinstance(outcome, Connected):
                await connection.close(reason="Connection request finished")

    async def _negotiate(
        self, connection: ExtensionConnection, request: ConnectionRequest
    ) -> HandshakeOutcome:
        extension_version: int | None = None
        while True:
            message = await connection.next_message()
            if message is None:
                return Rejected("The confirmation page was closed before the connection was approved.")

            method = message.get("method")
            params = message.get("params")
            if not isinstance(params, dict):
                params = {}

            if method == "hello":
                extension_version = _as_version(params.get("protocolVersion"))
                if extension_version is None or not is_compatible(
                    request.protocol_version, extension_version
                ):
                    return await self._refuse_version(connection, request, extension_version)
                await self._notify(
                    connection,
                    "ready",
                    {"capability": request.capability.value, "url": request.target_url},
                )
            elif method == "approve":
                if extension_version is None:
                    return await self._refuse_version(connection, request, None)
                return Connected(ExtensionChannel(connection, tab=params.get("tab")))
            elif method == "reject":
                return Rejected(params.get("reason") or "Connection rejected by user.")
            else:
                logger.debug(f"Ignoring extension message {method!r}")

    async def _notify(
        self, connection: ExtensionConnection, method: str, params: dict[str, Any]
    ) -> None:
        # A page that is already gone shows up as a closed connection later.
        try:
            await connection.notify(method, params)
        except ExtensionRPCError:
            logger.debug(f"Could not deliver {method!r}: extension connection closed")

    async def _refuse_version(
        self,
        connection: ExtensionConnection,
        request: ConnectionRequest,
        extension_version: int | None,
    ) -> VersionIncompatible:
        banner = version_mismatch_banner(extension_version, request.protocol_version)
        logger.warning(banner)
        await self._notify(
            connection,
            "versionMismatch",
            {
                "requiredVersion": request.protocol_version,
                "extensionVersion": extension_version,
                "message": banner,
            },
        )
        return VersionIncompatible(
            required_version=request.protocol_version,
            extension_version=extension_version,
        )

