"""
Tools Module

Native tools, the tool router and the sanitizing execution log.
"""

from __future__ import annotations

from .event_logger import EventFilters, ToolEventLogger, sanitize_value
from .native import NativeToolExecutor
from .router import ToolRouter, ToolRoutingError, parse_tool_name

__all__ = [
    "EventFilters",
    "NativeToolExecutor",
    "ToolEventLogger",
    "ToolRouter",
    "ToolRoutingError",
    "parse_tool_name",
    "sanitize_value",
]
