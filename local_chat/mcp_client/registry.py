"""
MCP Server Registry

Persisted list of MCP server descriptors keyed by id, stored as
``{"servers": [...]}`` JSON sorted by id.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from pydantic import ValidationError

from .models import McpServerConfig, normalize_server_id

logger = logging.getLogger(__name__)


class McpRegistryError(ValueError):
    """Invalid registry operation (duplicate id, unknown id, bad payload)."""


def _validation_message(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        msg = str(item.get("msg", ""))
        messages.append(msg.removeprefix("Value error, "))
    return "; ".join(messages) or str(error)


class McpServerRegistry:
    """File-backed registry of MCP server configurations."""

    def __init__(self, config_path: str) -> None:
        self.config_path = config_path

    def _ensure_file(self) -> None:
        config_dir = os.path.dirname(self.config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)
        if not os.path.exists(self.config_path):
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump({"servers": []}, f, indent=2)

    def _load_raw(self) -> list[dict[str, Any]]:
        self._ensure_file()
        try:
            with open(self.config_path, encoding="utf-8") as f:
                parsed = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable MCP registry {self.config_path}, treating as empty: {e}")
            return []

        if not isinstance(parsed, dict) or not isinstance(parsed.get("servers"), list):
            return []
        return [entry for entry in parsed["servers"] if isinstance(entry, dict)]

    def _save(self, servers: list[McpServerConfig]) -> None:
        self._ensure_file()
        ordered = sorted(servers, key=lambda s: s.id)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(
                {"servers": [s.model_dump(exclude_none=True) for s in ordered]}, f, indent=2
            )

    def list_servers(self) -> list[McpServerConfig]:
        """Return every valid server entry; invalid entries are logged and skipped."""
        servers: list[McpServerConfig] = []
        for entry in self._load_raw():
            try:
                servers.append(McpServerConfig.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    f"Skipping invalid MCP server entry {entry.get('id')!r}: "
                    f"{_validation_message(e)}"
                )
        return servers

    def get_server(self, server_id: str) -> McpServerConfig | None:
        wanted = normalize_server_id(server_id)
        return next((s for s in self.list_servers() if s.id == wanted), None)

    def add_server(self, payload: dict[str, Any]) -> McpServerConfig:
        """Register a new server. New servers always start disabled."""
        try:
            server = McpServerConfig.model_validate({**payload, "enabled": False})
        except ValidationError as e:
            raise McpRegistryError(_validation_message(e)) from e

        current = self.list_servers()
        if any(s.id == server.id for s in current):
            raise McpRegistryError(f"MCP server with id '{server.id}' already exists")

        self._save([*current, server])
        logger.info(f"Registered MCP server '{server.id}' ({server.transport})")
        return server

    def update_server(self, server_id: str, patch: dict[str, Any]) -> McpServerConfig:
        wanted = normalize_server_id(server_id)
        current = self.list_servers()
        index = next((i for i, s in enumerate(current) if s.id == wanted), None)
        if index is None:
            raise McpRegistryError(f"MCP server '{wanted}' not found")

        merged = current[index].model_dump()
        merged.update({k: v for k, v in patch.items() if v is not None})
        merged["id"] = wanted
        if not isinstance(patch.get("enabled"), bool):
            merged["enabled"] = current[index].enabled

        try:
            updated = McpServerConfig.model_validate(merged)
        except ValidationError as e:
            raise McpRegistryError(_validation_message(e)) from e

        current[index] = updated
        self._save(current)
        return updated

    def remove_server(self, server_id: str) -> None:
        wanted = normalize_server_id(server_id)
        current = self.list_servers()
        remaining = [s for s in current if s.id != wanted]
        if len(remaining) == len(current):
            raise McpRegistryError(f"MCP server '{wanted}' not found")
        self._save(remaining)
