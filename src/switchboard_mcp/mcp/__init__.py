"""
MCP connectivity for Switchboard MCP.

This module provides the components for connecting to MCP servers,
keeping one live connection per configured server, and preparing tool
schemas for the completion service.
"""

from .schema import sanitize_key, sanitize_schema, restore_argument_keys, tool_declarations
from .client_session import SwitchboardClientSession
from switchboard_mcp.agents.messages import render_tool_result
from .server_connection import ServerConnection, ConnectionState, open_transport
from .server_registry import ServerRegistry, ServerConnectionInfo, ServerTools

__all__ = [
    "sanitize_key",
    "sanitize_schema",
    "restore_argument_keys",
    "tool_declarations",
    "SwitchboardClientSession",
    "ServerConnection",
    "ConnectionState",
    "open_transport",
    "render_tool_result",
    "ServerRegistry",
    "ServerConnectionInfo",
    "ServerTools",
]
