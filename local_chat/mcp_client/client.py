"""
MCP connection manager following official SDK patterns.

Every tool call pays a full connect → call → disconnect cycle; there is no
pooling. Connection parameters:
- connect_timeout: budget for transport setup plus the initialize handshake
- operation_timeout: independent budget for each list_tools / call_tool

Transport construction validates the server descriptor before anything is
spawned or dialed, so configuration mistakes surface as
``MCPConfigurationError`` rather than network errors.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from typing import Any, Literal, TypeVar

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from local_chat.chat.logging_utils import should_log_feature

from .models import McpServerConfig, McpToolDescriptor, is_valid_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLIENT_NAME = "local-chat-mcp-client"
CLIENT_VERSION = "1.0.0"
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_OPERATION_TIMEOUT = 30.0
MCP_TIMEOUT_CODE = -32001

ConnectionState = Literal["disconnected", "connecting", "connected", "disconnecting"]


class MCPConfigurationError(ValueError):
    """The server descriptor cannot produce a transport."""


class MCPTimeoutError(McpError):
    """A connect or an operation exceeded its time budget."""

    def __init__(self, label: str, timeout: float) -> None:
        super().__init__(
            types.ErrorData(
                code=MCP_TIMEOUT_CODE,
                message=f"{label} timed out after {int(timeout * 1000)}ms",
            )
        )
        self.label = label
        self.timeout = timeout


def _resolve_command(command: str) -> str | None:
    """Resolve a command to an executable path (absolute paths must exist)."""
    if os.path.isabs(command):
        return command if os.path.exists(command) else None

    resolved = shutil.which(command)
    if not resolved and command == "npx" and sys.platform == "win32":
        node_path = shutil.which("node")
        if node_path:
            logger.warning("Using node instead of npx on Windows")
            return node_path
    return resolved


def create_transport(server: McpServerConfig) -> AbstractAsyncContextManager[Any]:
    """
    Build the transport context for a server descriptor.

    Pure function of ``server.transport``: ``stdio`` spawns
    ``command``/``args`` with ``env`` merged over the parent environment,
    ``http`` uses streamable HTTP and ``sse`` the legacy SSE transport.

    Raises:
        MCPConfigurationError: missing command, unresolvable command,
            missing or invalid url, unsupported transport.
    """
    if server.transport == "stdio":
        if not server.command:
            raise MCPConfigurationError(
                f"MCP server '{server.id}' is missing 'command' for stdio transport"
            )
        command = _resolve_command(server.command)
        if not command:
            raise MCPConfigurationError(
                f"MCP server '{server.id}': command '{server.command}' not found in PATH"
            )
        params = StdioServerParameters(
            command=command,
            args=list(server.args or []),
            env={**os.environ, **server.env} if server.env else None,
        )
        return stdio_client(params)

    if server.transport not in ("http", "sse"):
        raise MCPConfigurationError(f"Unsupported MCP transport '{server.transport}'")

    if not server.url:
        raise MCPConfigurationError(
            f"MCP server '{server.id}' is missing 'url' for {server.transport} transport"
        )
    if not is_valid_url(server.url):
        raise MCPConfigurationError(f"MCP server '{server.id}' has invalid URL: {server.url}")

    if server.transport == "http":
        return streamablehttp_client(server.url)
    return sse_client(server.url)


def normalize_input_schema(schema: Any) -> dict[str, Any]:
    if not schema or not isinstance(schema, dict):
        return {"type": "object", "properties": {}}
    return schema


def normalize_tool_result(result: types.CallToolResult) -> dict[str, Any]:
    """Convert a ``CallToolResult`` into JSON-safe data for the model and the audit log."""
    return {
        "content": [item.model_dump(mode="json", exclude_none=True) for item in result.content],
        "structuredContent": result.structuredContent,
        "isError": bool(result.isError),
    }


def summarize_content(result: dict[str, Any]) -> str:
    """
    Extract readable text from a normalized tool result.

    Text items are returned verbatim; other content types become short
    placeholders so error messages stay meaningful.
    """
    out: list[str] = []
    for item in result.get("content") or []:
        item_type = item.get("type")
        if item_type == "text":
            out.append(str(item.get("text", "")))
        elif item_type == "image":
            out.append(f"[Image: {item.get('mimeType')}, {len(item.get('data', ''))} bytes]")
        elif item_type == "resource":
            resource = item.get("resource") or {}
            if "text" in resource:
                out.append(f"[Embedded resource: {resource['text']}]")
            else:
                out.append(f"[Embedded resource: {resource.get('uri', 'binary')}]")
        else:
            out.append(f"[{item_type}]")
    return "\n".join(out)


class MCPConnection:
    """
    One short-lived session with an MCP server.

    ``disconnected → connecting → connected → disconnecting → disconnected``.
    ``close()`` is best-effort: cleanup failures are logged, never raised.
    """

    def __init__(
        self,
        server: McpServerConfig,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.server = server
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.session: ClientSession | None = None
        self.exit_stack = AsyncExitStack()
        self.state: ConnectionState = "disconnected"

    async def connect(self) -> None:
        """
        Open the transport and complete the MCP initialize handshake.

        Raises:
            MCPConfigurationError: before any process is spawned or socket opened.
            MCPTimeoutError: when the whole sequence exceeds ``connect_timeout``.
        """
        transport = create_transport(self.server)
        self.state = "connecting"
        if should_log_feature("mcp", "connection_events"):
            logger.info(f"→ MCP[{self.server.id}]: connecting over {self.server.transport}")

        try:
            # transport contexts are entered and exited in this same task
            async with asyncio.timeout(self.connect_timeout):
                await self._open_session(transport)
        except TimeoutError as e:
            await self.close()
            raise MCPTimeoutError(f"connect({self.server.id})", self.connect_timeout) from e
        except BaseException:
            await self.close()
            raise

        self.state = "connected"
        if should_log_feature("mcp", "connection_events"):
            logger.info(f"← MCP[{self.server.id}]: connected")

    async def _open_session(self, transport: AbstractAsyncContextManager[Any]) -> None:
        streams = await self.exit_stack.enter_async_context(transport)
        read_stream, write_stream = streams[0], streams[1]
        client_info = types.Implementation(name=CLIENT_NAME, version=CLIENT_VERSION)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )
        await self.session.initialize()

    async def _run_operation(self, operation: Awaitable[T], label: str) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.operation_timeout)
        except TimeoutError as e:
            raise MCPTimeoutError(label, self.operation_timeout) from e

    def _require_session(self) -> ClientSession:
        if not self.session or self.state != "connected":
            raise McpError(
                types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"MCP server '{self.server.id}' is not connected",
                )
            )
        return self.session

    async def list_tools(self) -> list[McpToolDescriptor]:
        """List the server's tools as descriptors."""
        session = self._require_session()
        result = await self._run_operation(session.list_tools(), f"list_tools({self.server.id})")

        return [
            McpToolDescriptor(
                server_id=self.server.id,
                server_name=self.server.name,
                tool_name=tool.name,
                description=tool.description or "",
                input_schema=normalize_input_schema(tool.inputSchema),
                output_hint="Tool has an output schema"
                if getattr(tool, "outputSchema", None)
                else None,
            )
            for tool in result.tools
        ]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Invoke a remote tool and return its normalized result."""
        session = self._require_session()
        result = await self._run_operation(
            session.call_tool(tool_name, arguments if isinstance(arguments, dict) else {}),
            f"call_tool({self.server.id}/{tool_name})",
        )
        return normalize_tool_result(result)

    async def close(self) -> None:
        """Release the transport; failures are logged as warnings only."""
        if self.state == "disconnected" and self.session is None:
            await self._close_stack()
            return

        self.state = "disconnecting"
        await self._close_stack()
        self.session = None
        self.state = "disconnected"
        if should_log_feature("mcp", "connection_events"):
            logger.info(f"← MCP[{self.server.id}]: disconnected")

    async def _close_stack(self) -> None:
        try:
            await self.exit_stack.aclose()
        except Exception as e:
            logger.warning(f"[MCP:{self.server.id}] disconnect warning: {e}")
        self.exit_stack = AsyncExitStack()


@asynccontextmanager
async def mcp_connection(
    server: McpServerConfig,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
) -> AsyncIterator[MCPConnection]:
    """Connected session that is always disconnected on exit."""
    connection = MCPConnection(server, connect_timeout, operation_timeout)
    await connection.connect()
    try:
        yield connection
    finally:
        await connection.close()


async def with_connection(
    server: McpServerConfig,
    fn: Callable[[MCPConnection], Awaitable[T]],
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
) -> T:
    """Run ``fn`` against a fresh connection; disconnect on every exit path."""
    async with mcp_connection(server, connect_timeout, operation_timeout) as connection:
        return await fn(connection)
