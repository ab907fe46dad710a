"""
Chat Logging Utilities

Shared logging functionality with per-module feature flags, used by the
generation loop, the tool router and the MCP connection manager.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Module-to-logger mapping; children inherit the parent level
MODULE_LOGGERS: dict[str, list[str]] = {
    "chat": ["local_chat.chat", "local_chat.clients"],
    "mcp": ["mcp", "local_chat.mcp_client"],
    "tools": ["local_chat.tools"],
}

_module_features: dict[str, dict[str, bool]] = {}


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply hierarchical logging configuration.

    Sets the global level, a level per module logger family, and stores the
    feature flags consulted by ``should_log_feature``.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    _module_features.clear()
    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        level_value = LEVEL_MAP.get(module_config.get("level", global_level), logging.WARNING)
        for logger_name in MODULE_LOGGERS.get(module_name, []):
            logging.getLogger(logger_name).setLevel(level_value)

        _module_features[module_name] = dict(module_config.get("enable_features", {}))


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def log_llm_reply(content: str, tool_calls: list[Any], model: str, truncate_length: int = 500) -> None:
    """
    Log an assembled assistant turn when ``chat.llm_replies`` is enabled.

    Args:
        content: Assistant text
        tool_calls: Tool calls requested in the same turn
        model: Model identifier used for the request
        truncate_length: Maximum length of logged content
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    log_parts = ["LLM Reply:"]
    if content:
        log_parts.append(f"Content: {_truncate(content, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            log_parts.append(f"  [{i}] {call.function.name}")
    log_parts.append(f"Model: {model}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    """
    Log the start of tool execution with consistent formatting.

    Args:
        tool_name: Name of the tool being executed
        call_index: Index of current call (0-based)
        total_calls: Total number of calls in the batch
    """
    if total_calls > 1:
        logger.info("→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, duration_ms: int | None) -> None:
    logger.info("← Tool[%s]: success in %sms", tool_name, duration_ms)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_args_error(tool_name: str, error: Exception) -> None:
    """Log malformed tool arguments (execution continues with empty args)."""
    logger.warning("Malformed JSON arguments for %s: %s", tool_name, error)


def log_tool_arguments(
    module: str, tool_name: str, arguments: Any, context: str, truncate_length: int = 500
) -> None:
    """
    Log (already sanitized) tool arguments when the module enables it.

    Args:
        module: Feature-flag module (``tools`` or ``mcp``)
        tool_name: Name of the tool being called
        arguments: Redacted argument preview
        context: Descriptive context for the log entry
        truncate_length: Maximum length for argument logging
    """
    if not should_log_feature(module, "tool_arguments"):
        return

    logger.info(
        "→ %s[%s]: arguments (%s): %s",
        module.upper(),
        tool_name,
        context,
        _truncate(str(arguments), truncate_length),
    )


def log_tool_results(module: str, tool_name: str, results: Any, truncate_length: int = 200) -> None:
    """Log (already sanitized) tool results when the module enables it."""
    if not should_log_feature(module, "tool_results"):
        return

    logger.info(
        "← %s[%s]: results: %s", module.upper(), tool_name, _truncate(str(results), truncate_length)
    )
