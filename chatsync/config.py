"""Configuration management for the chat client."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, cast

import yaml
from dotenv import load_dotenv

CONFIG_ENV_VAR = "CHATSYNC_CONFIG"


class Configuration:
    """Packaged YAML defaults, deep-merged with an optional override file."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self._default_config = self._load_yaml_config(
            os.path.join(os.path.dirname(__file__), "config.yaml")
        )
        override_path = config_path or os.getenv(CONFIG_ENV_VAR)
        self._override_path = override_path
        self._current_config: dict[str, Any] = self._default_config
        if override_path:
            override = self._load_yaml_config(override_path)
            self._current_config = self._deep_merge(self._default_config, override)
            logging.info(f"Configuration override loaded from {override_path}")

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if config is None:
                return {}
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    def _deep_merge(
        self, base: dict[str, Any], override: dict[str, Any]
    ) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value

        return result

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Walk a key path into the current config, returning default if missing."""
        node: Any = self._current_config
        for key in path:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._current_config

    @staticmethod
    def load_config(file_path: str) -> dict[str, Any]:
        """Load server configuration from JSON file.

        Raises:
            FileNotFoundError: If configuration file doesn't exist.
            JSONDecodeError: If configuration file is invalid JSON.
        """
        with open(file_path) as f:
            return json.load(f)

    # ---------- LLM ----------

    def get_llm_config(self) -> dict[str, Any]:
        """Get LLM provider configuration.

        Raises:
            ValueError: If base_url or model is missing.
        """
        llm_config = dict(self._get_config_value(["llm"], {}))
        if not llm_config.get("base_url"):
            raise ValueError("llm.base_url must be set")
        if not llm_config.get("model"):
            raise ValueError("llm.model must be set")
        return llm_config

    @property
    def llm_api_key(self) -> str:
        """Get the API key for the LLM provider.

        Raises:
            ValueError: If the API key is not found in environment variables.
        """
        env_key = self._get_config_value(["llm", "api_key_env"], "OPENAI_API_KEY")
        api_key = os.getenv(env_key)
        if not api_key:
            raise ValueError(f"API key '{env_key}' not found in environment variables")
        return api_key

    def get_connection_pool_config(self) -> dict[str, Any]:
        """Get HTTP connection pool settings for the LLM client."""
        conn = self._get_config_value(["llm", "connection"], {}) or {}
        timeout = conn.get("request_timeout_seconds", 120.0)
        max_connections = conn.get("max_connections", 20)
        max_keepalive = conn.get("max_keepalive_connections", 10)

        if timeout <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        if max_keepalive < 0 or max_keepalive > max_connections:
            raise ValueError("max_keepalive_connections must be between 0 and max_connections")

        return {
            "request_timeout_seconds": timeout,
            "max_connections": max_connections,
            "max_keepalive_connections": max_keepalive,
            "keepalive_expiry_seconds": conn.get("keepalive_expiry_seconds", 30.0),
        }

    # ---------- Chat ----------

    def get_session_config(self) -> dict[str, Any]:
        """Get per-session defaults (system prompt, context window, sampling)."""
        session = dict(self._get_config_value(["chat", "session"], {}) or {})
        n_contexts = session.get("n_contexts", 6)
        max_tokens = session.get("max_tokens", 4000)

        if not isinstance(n_contexts, int) or n_contexts < 0:
            raise ValueError("n_contexts must be a non-negative integer")
        if not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError("max_tokens must be a positive integer")

        session["n_contexts"] = n_contexts
        session["max_tokens"] = max_tokens
        session.setdefault("system_prompt", "")
        session.setdefault("enable_mcp", True)
        return session

    def get_max_tool_rounds(self) -> int:
        """Get the maximum number of tool rounds per turn.

        Returns:
            Maximum number of tool rounds (default: 25).
        """
        max_rounds = self._get_config_value(["chat", "service", "max_tool_rounds"], 25)

        # Validate that it's a positive integer
        if not isinstance(max_rounds, int) or isinstance(max_rounds, bool) or max_rounds < 1:
            raise ValueError("max_tool_rounds must be a positive integer")

        return max_rounds

    def get_tool_call_timeout(self) -> float:
        """Get the per-call timeout for tool invocations, in seconds."""
        timeout = self._get_config_value(["chat", "service", "tool_call_timeout_seconds"], 60.0)
        if not isinstance(timeout, int | float) or timeout <= 0:
            raise ValueError("tool_call_timeout_seconds must be positive")
        return float(timeout)

    def get_websocket_config(self) -> dict[str, Any]:
        """Get WebSocket configuration from YAML."""
        return self._get_config_value(["chat", "websocket"], {}) or {}

    # ---------- MCP ----------

    def get_mcp_config(self) -> dict[str, Any]:
        """Get MCP client settings with validated defaults."""
        mcp_config = self._get_config_value(["mcp"], {}) or {}
        protocol_version = mcp_config.get("protocol_version") or "2025-06-18"
        timeout = mcp_config.get("request_timeout_seconds", 30.0)

        if timeout <= 0:
            raise ValueError("mcp.request_timeout_seconds must be positive")

        return {
            "protocol_version": protocol_version,
            "request_timeout_seconds": timeout,
            "client_name": mcp_config.get("client_name", "chatsync"),
            "client_version": mcp_config.get("client_version", "0.1.0"),
        }

    def get_mcp_servers(self) -> list[dict[str, Any]]:
        """Get configured MCP servers, from the JSON servers_file if set, else inline."""
        servers_file = self._get_config_value(["mcp", "servers_file"])
        if servers_file:
            data = self.load_config(servers_file)
            servers = data.get("mcpServers", []) if isinstance(data, dict) else data
        else:
            servers = self._get_config_value(["mcp", "servers"], []) or []

        if not isinstance(servers, list):
            raise ValueError("MCP servers must be a list")
        for server in servers:
            if not isinstance(server, dict) or not server.get("url"):
                raise ValueError(f"Invalid MCP server entry: {server!r}")
        return servers

    # ---------- Storage / sync ----------

    def get_storage_config(self) -> dict[str, Any]:
        """Get replica store configuration."""
        storage = dict(self._get_config_value(["storage"], {}) or {})
        storage.setdefault("type", "sqlite")
        storage.setdefault("session_id", "default")
        return storage

    def get_sync_config(self) -> dict[str, Any]:
        """Get sync settings (deletion marker retention)."""
        retention = self._get_config_value(["sync", "deleted_ids_retention"], 1000)
        if not isinstance(retention, int) or retention < 1:
            raise ValueError("deleted_ids_retention must be a positive integer")
        return {"deleted_ids_retention": retention}

    # ---------- Logging ----------

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._get_config_value(["logging"], {}) or {}
