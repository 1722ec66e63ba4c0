"""
Configuration management for the Switchboard MCP agent.
"""

from .settings import (
    Settings,
    MCPSettings,
    ServerSettings,
    ClientCapabilitySettings,
    RequestTimeoutSettings,
    CompletionSettings,
    LoggingSettings,
    default_timeouts,
    load_config,
)

__all__ = [
    "Settings",
    "MCPSettings",
    "ServerSettings",
    "ClientCapabilitySettings",
    "RequestTimeoutSettings",
    "CompletionSettings",
    "LoggingSettings",
    "default_timeouts",
    "load_config",
]
