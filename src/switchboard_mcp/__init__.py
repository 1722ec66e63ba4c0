"""
Switchboard MCP - keeps connections to many MCP servers and answers queries
with a completion service that can call their tools.
"""

__version__ = "0.1.0"

# MCP connectivity
from switchboard_mcp.mcp.server_registry import ServerRegistry, ServerConnectionInfo, ServerTools
from switchboard_mcp.mcp.server_connection import ServerConnection, ConnectionState
from switchboard_mcp.mcp.client_session import SwitchboardClientSession
from switchboard_mcp.mcp.schema import sanitize_schema, restore_argument_keys

# Query loop
from switchboard_mcp.agents.tool_loop import ToolLoop, QueryContext

# Errors
from switchboard_mcp.errors import Result, SwitchboardError

# Configuration
from switchboard_mcp.config import load_config, Settings

# Application
from switchboard_mcp.app import SwitchboardApp

__all__ = [
    "ServerRegistry",
    "ServerConnectionInfo",
    "ServerTools",
    "ServerConnection",
    "ConnectionState",
    "SwitchboardClientSession",
    "sanitize_schema",
    "restore_argument_keys",
    "ToolLoop",
    "QueryContext",
    "Result",
    "SwitchboardError",
    "load_config",
    "Settings",
    "SwitchboardApp",
]
