"""MCP server registry and short-lived MCP connections."""

from __future__ import annotations

from .client import MCPConfigurationError, MCPConnection, MCPTimeoutError, with_connection
from .models import McpServerConfig, McpToolDescriptor
from .registry import McpRegistryError, McpServerRegistry

__all__ = [
    "MCPConfigurationError",
    "MCPConnection",
    "MCPTimeoutError",
    "McpRegistryError",
    "McpServerConfig",
    "McpServerRegistry",
    "McpToolDescriptor",
    "with_connection",
]
