"""
MCP Server Data Models

Connection descriptors for remote tool servers and the tool descriptors
discovered from them.
"""

from __future__ import annotations

import re
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

Transport = Literal["stdio", "http", "sse"]

SERVER_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{1,63}$")

STDIO_CAPABILITY_WARNING = (
    "This server runs a local process and may access filesystem, shell commands, "
    "and network resources."
)
NETWORK_CAPABILITY_WARNING = (
    "This server connects over the network and may perform any action implemented "
    "by the remote MCP service."
)


def default_capability_warning(transport: str) -> str:
    return STDIO_CAPABILITY_WARNING if transport == "stdio" else NETWORK_CAPABILITY_WARNING


def normalize_server_id(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return bool(parsed.scheme and parsed.netloc)


class McpServerConfig(BaseModel):
    """
    Connection descriptor for one MCP server.

    Exactly one of the stdio triple (``command``/``args``/``env``) or ``url``
    is populated, depending on ``transport``.
    """

    id: str
    name: str = ""
    transport: Transport
    command: str | None = None
    args: list[str] | None = None
    env: dict[str, str] | None = None
    url: str | None = None
    enabled: bool = False
    capabilities_warning: str = ""
    requires_confirmation: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, v: Any) -> str:
        server_id = normalize_server_id(v)
        if not SERVER_ID_PATTERN.match(server_id):
            raise ValueError("id is required and must match /^[a-z0-9][a-z0-9_-]{1,63}$/")
        return server_id

    @field_validator("transport", mode="before")
    @classmethod
    def _normalize_transport(cls, v: Any) -> str:
        transport = str(v or "").strip().lower()
        if transport not in ("stdio", "http", "sse"):
            raise ValueError("transport must be one of: 'stdio', 'http', 'sse'")
        return transport

    @field_validator("args", mode="before")
    @classmethod
    def _parse_args(cls, v: Any) -> list[str] | None:
        if not v:
            return None
        if isinstance(v, str):
            return [arg for arg in (part.strip() for part in v.split(" ")) if arg]
        if isinstance(v, list | tuple):
            return [str(arg) for arg in v if str(arg)]
        raise ValueError("args must be an array of strings or a string")

    @field_validator("env", mode="before")
    @classmethod
    def _normalize_env(cls, v: Any) -> dict[str, str] | None:
        if not v:
            return None
        if not isinstance(v, dict):
            raise ValueError("env must be an object of string values")
        env = {str(key): str(value) for key, value in v.items() if key}
        return env or None

    @model_validator(mode="after")
    def _check_transport_fields(self) -> McpServerConfig:
        self.name = (self.name or "").strip() or self.id
        self.capabilities_warning = (
            self.capabilities_warning or ""
        ).strip() or default_capability_warning(self.transport)

        if self.transport == "stdio":
            self.command = (self.command or "").strip()
            if not self.command:
                raise ValueError("command is required when transport is 'stdio'")
            self.url = None
            self.args = self.args or []
        else:
            self.url = (self.url or "").strip()
            if not self.url:
                raise ValueError(f"url is required when transport is '{self.transport}'")
            if not is_valid_url(self.url):
                raise ValueError(f"Invalid URL: {self.url}")
            self.command = None
            self.args = None
            self.env = None
        return self


class McpToolDescriptor(BaseModel):
    """A tool discovered on an MCP server."""

    server_id: str
    server_name: str
    tool_name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    output_hint: str | None = None
