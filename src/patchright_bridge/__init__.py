"""Attach browser automation to a user's running browser through the MCP bridge extension."""
