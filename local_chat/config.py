"""Configuration management for the local chat core."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LOCAL_CHAT_CONFIG"
SUPPORTED_PROVIDERS = ("local", "openrouter")


class Configuration:
    """Layered configuration manager with observer pattern.

    Defaults come from the packaged ``config.yaml``. An optional override file
    (explicit path or ``LOCAL_CHAT_CONFIG``) is deep-merged on top of them.
    Secrets are never stored in YAML; they are read from the environment,
    which ``.env`` populates.
    """

    def __init__(self, override_path: str | None = None) -> None:
        self.load_env()
        self._default_config = self._load_yaml_config(
            os.path.join(os.path.dirname(__file__), "config.yaml")
        )
        self._override_path = override_path or os.getenv(CONFIG_ENV_VAR)
        self._override_mtime: float | None = None
        self._current_config: dict[str, Any] = {}
        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._reload_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(path: str) -> dict[str, Any]:
        """Load a YAML mapping from disk."""
        with open(path, encoding="utf-8") as file:
            config = yaml.safe_load(file) or {}
            if not isinstance(config, dict):
                raise ValueError(f"Configuration file must contain a dictionary: {path}")
            return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value

        return result

    def _reload_config(self) -> bool:
        """Rebuild the merged configuration if the override file changed.

        Returns:
            True if config was actually reloaded, False if no changes.
        """
        current_mtime = None
        if self._override_path and os.path.exists(self._override_path):
            current_mtime = os.path.getmtime(self._override_path)

        if self._current_config and current_mtime == self._override_mtime:
            return False

        old_config = self._current_config
        self._override_mtime = current_mtime
        merged = self._default_config
        if current_mtime is not None and self._override_path:
            try:
                merged = self._deep_merge(
                    self._default_config, self._load_yaml_config(self._override_path)
                )
            except (yaml.YAMLError, OSError, ValueError) as e:
                logger.error(f"Ignoring unreadable override config {self._override_path}: {e}")

        self._current_config = merged
        if old_config and merged != old_config:
            self._notify_config_change()
        return True

    def _notify_config_change(self) -> None:
        """Notify all registered observers of configuration changes."""
        for callback in self._config_change_callbacks:
            try:
                callback(self._current_config.copy())
            except Exception as e:
                logger.error(f"Error in config change callback: {e}")

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Subscribe to configuration change events.

        Args:
            callback: Function to call when config changes. Receives new
                config as argument.
        """
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Unsubscribe from configuration change events."""
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    def reload(self) -> bool:
        """Manually reload the override file.

        Returns:
            True if configuration was reloaded, False if no changes detected.
        """
        return self._reload_config()

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Get a configuration value by key path."""
        current: Any = self._current_config
        for key in path:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    @property
    def active_provider(self) -> str:
        provider = str(self._get_config_value(["llm", "active"], "local")).strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unknown provider '{provider}' - expected one of {', '.join(SUPPORTED_PROVIDERS)}"
            )
        return provider

    def get_llm_config(self) -> dict[str, Any]:
        """Get active LLM provider configuration.

        Returns:
            Provider settings with the provider id under ``provider``.
        """
        provider = self.active_provider
        providers = self._get_config_value(["llm", "providers"], {})
        if provider not in providers:
            raise ValueError(f"Active provider '{provider}' not found in providers config")

        provider_config = dict(providers[provider])
        if not provider_config.get("base_url"):
            raise ValueError(f"Provider '{provider}' is missing base_url")
        provider_config["provider"] = provider
        return provider_config

    @property
    def llm_api_key(self) -> str:
        """Get the API key for the active LLM provider.

        Raises:
            ValueError: If OpenRouter is active and no key is configured.
        """
        if self.active_provider == "openrouter":
            api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
            if not api_key:
                raise ValueError(
                    "API key 'OPENROUTER_API_KEY' not found in environment variables "
                    "for provider 'openrouter'"
                )
            return api_key
        return os.getenv("LOCAL_LLM_API_KEY", "").strip()

    @property
    def brave_api_key(self) -> str | None:
        return os.getenv("BRAVE_API_KEY") or None

    @property
    def tool_api_key(self) -> str | None:
        return os.getenv("TOOL_API_KEY") or None

    def get_profiles(self) -> dict[str, dict[str, Any]]:
        """Get the generation profiles keyed by name."""
        profiles = self._get_config_value(["chat", "profiles"], {})
        if not isinstance(profiles, dict):
            raise ValueError("chat.profiles must be a mapping of profile names to settings")
        return {
            str(name): cast(dict[str, Any], settings)
            for name, settings in profiles.items()
            if isinstance(settings, dict)
        }

    @property
    def active_profile(self) -> str:
        return str(self._get_config_value(["chat", "active_profile"], "default")).strip()

    def get_tool_loop_config(self, profile: str | None = None) -> dict[str, Any]:
        """Get the tool loop limits merged with a generation profile.

        Args:
            profile: Profile name; the configured ``active_profile`` when omitted.

        Returns:
            Validated tool loop configuration dictionary.

        Raises:
            ValueError: Unknown profile or an invalid limit or profile setting.
        """
        loop_config = self._get_config_value(["chat", "tool_loop"], {})
        profile_name = profile or self.active_profile
        profiles = self.get_profiles()
        if profile_name not in profiles:
            raise ValueError(
                f"Unknown profile '{profile_name}' - expected one of {', '.join(sorted(profiles))}"
            )
        settings = profiles[profile_name]

        max_rounds = loop_config.get("max_rounds", 3)
        max_calls = loop_config.get("max_tool_calls_per_message", 10)
        temperature = settings.get("temperature", 0.7)
        max_tokens = settings.get("max_tokens", 4096)
        tools_enabled = settings.get("tools_enabled", True)

        if not isinstance(max_rounds, int) or max_rounds < 1:
            raise ValueError("max_rounds must be a positive integer")
        if not isinstance(max_calls, int) or max_calls < 1:
            raise ValueError("max_tool_calls_per_message must be a positive integer")
        if isinstance(temperature, bool) or not isinstance(temperature, int | float):
            raise ValueError(f"Profile '{profile_name}': temperature must be a number")
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError(f"Profile '{profile_name}': max_tokens must be a positive integer")
        if not isinstance(tools_enabled, bool):
            raise ValueError(f"Profile '{profile_name}': tools_enabled must be true or false")

        return {
            "max_rounds": max_rounds,
            "max_tool_calls_per_message": max_calls,
            "temperature": float(temperature),
            "max_tokens": max_tokens,
            "tools_enabled": tools_enabled,
        }

    def get_system_prompt(self) -> str:
        return str(self._get_config_value(["chat", "system_prompt"], "") or "")

    def get_mcp_connection_config(self) -> dict[str, float]:
        """Get MCP connection timeouts.

        Returns:
            ``connect_timeout`` and ``operation_timeout`` in seconds.
        """
        connection_config = self._get_config_value(["mcp", "connection"], {})
        connect_timeout = float(connection_config.get("connect_timeout", 10.0))
        operation_timeout = float(connection_config.get("operation_timeout", 30.0))

        if connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if operation_timeout <= 0:
            raise ValueError("operation_timeout must be positive")

        return {
            "connect_timeout": connect_timeout,
            "operation_timeout": operation_timeout,
        }

    def get_paths(self) -> dict[str, str]:
        """Resolve filesystem locations used by tools, logs and chat storage."""
        paths = self._get_config_value(["paths"], {})
        project_root = os.path.abspath(paths.get("project_root", "."))

        def resolve(value: str) -> str:
            return value if os.path.isabs(value) else os.path.join(project_root, value)

        return {
            "project_root": project_root,
            "skills_dir": resolve(paths.get("skills_dir", "skills")),
            "tool_log_path": resolve(paths.get("tool_log", "logs/tool-calls.jsonl")),
            "chats_dir": resolve(paths.get("chats_dir", "chats")),
            "mcp_config_path": resolve(
                self._get_config_value(["mcp", "config_file"], "config/mcp-servers.json")
            ),
        }

    def get_tool_server_config(self) -> dict[str, Any]:
        server = self._get_config_value(["tool_server"], {})
        return {"host": server.get("host", "localhost"), "port": int(server.get("port", 3001))}

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration."""
        return self._get_config_value(["logging"], {})
