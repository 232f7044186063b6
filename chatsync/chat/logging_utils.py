"""
Chat Logging Utilities

Shared logging helpers with per-module feature flags set from the logging
section of the configuration.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    """Register feature flags for a module (called from logging setup)."""
    _module_features[module] = dict(features)


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def log_llm_reply(
    content: str, reasoning: str, model: str | None, tool_calls: int, truncate_length: int = 500
) -> None:
    """Log the final assistant reply of a turn when chat.llm_replies is enabled."""
    if not should_log_feature("chat", "llm_replies"):
        return

    log_parts = ["LLM Reply:"]
    if reasoning:
        log_parts.append(f"Thinking: {_truncate(reasoning, truncate_length)}")
    if content:
        log_parts.append(f"Content: {_truncate(content, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {tool_calls}")
    log_parts.append(f"Model: {model or 'unknown'}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, server_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if not should_log_feature("chat", "tool_execution"):
        return
    if total_calls > 1:
        logger.info("→ MCP[%s]: executing tool call %d/%d on %s", tool_name, call_index + 1, total_calls, server_name)
    else:
        logger.info("→ MCP[%s]: executing tool on %s", tool_name, server_name)


def log_tool_execution_success(tool_name: str, content_length: int) -> None:
    logger.info("← MCP[%s]: success, content length: %d", tool_name, content_length)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← MCP[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_arguments(tool_name: str, arguments: Any, truncate_length: int = 500) -> None:
    """Log tool arguments being sent to an MCP server."""
    if not should_log_feature("mcp", "tool_arguments"):
        return
    logger.info("→ MCP[%s]: arguments: %s", tool_name, _truncate(str(arguments), truncate_length))


def log_tool_results(tool_name: str, results: str, truncate_length: int = 200) -> None:
    """Log tool results received from an MCP server."""
    if not should_log_feature("mcp", "tool_results"):
        return
    logger.info("← MCP[%s]: results: %s", tool_name, _truncate(results, truncate_length))
