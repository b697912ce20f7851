"""Bridge protocol constants and the protocol version gate."""

from __future__ import annotations

import json
from urllib.parse import urlencode

# Bumped whenever the server starts relying on something older extensions lack.
PROTOCOL_VERSION = 1

EXTENSION_ID = "jakfalbnbhgkpmoaakfflhflbfpkailf"
EXTENSION_NAME = "Playwright MCP Bridge"
EXTENSION_README = (
    "https://github.com/microsoft/playwright-mcp/blob/main/extension/README.md"
)

CONNECTION_TIMEOUT_MESSAGE = (
    f'Extension connection timeout. Make sure the "{EXTENSION_NAME}" extension '
    f"is installed. See {EXTENSION_README} for installation instructions."
)


def is_compatible(server_version: int, extension_version: int) -> bool:
    """Return ``True`` if an extension speaking *extension_version* can serve
    a server that requires *server_version*.

    Newer extensions are always accepted; older ones must be upgraded.
    """
    return extension_version >= server_version


def version_mismatch_banner(extension_version: int | None, required_version: int) -> str:
    """Text shown on the confirmation page when the gate rejects the extension."""
    current = "unknown" if extension_version is None else str(extension_version)
    return (
        "Playwright MCP version trying to connect requires newer extension version "
        f"(current version: {current}, required: {required_version})."
    )


def connect_page_url(extension_id: str = EXTENSION_ID) -> str:
    return f"chrome-extension://{extension_id}/connect.html"


def status_page_url(extension_id: str = EXTENSION_ID) -> str:
    return f"chrome-extension://{extension_id}/status.html"


def build_connect_url(
    relay_url: str,
    protocol_version: int,
    capability: str,
    target_url: str | None = None,
    auth_token: str | None = None,
    client: dict[str, str] | None = None,
    extension_id: str = EXTENSION_ID,
) -> str:
    """Build the confirmation page URL handed to the browser.

    ``newTab`` tells the extension which dialog to render: ``true`` for an
    Allow/Reject prompt about *target_url*, ``false`` for the tab picker.
    """
    params: dict[str, str] = {"mcpRelayUrl": relay_url}
    if client:
        params["client"] = json.dumps(client, separators=(",", ":"))
    params["protocolVersion"] = str(protocol_version)
    params["capability"] = capability
    params["newTab"] = "true" if capability == "direct-navigate" else "false"
    if capability == "direct-navigate" and target_url:
        params["url"] = target_url
    if auth_token:
        params["token"] = auth_token
    return f"{connect_page_url(extension_id)}?{urlencode(params)}"
