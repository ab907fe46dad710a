"""
Tool Router

Resolves a tool name to one of two backends and runs it under the event
logger's start/finalize protocol:
- ``mcp.<server_id>.<tool_name>`` → remote MCP tool (connect, call, disconnect)
- anything else → native in-process handler

``execute`` never raises for tool-level failures; every outcome is a
terminal ``ToolExecutionEvent`` plus a result (``{"error": message}`` on
failure). Also emits the OpenAI-compatible definition list (native tools
plus namespaced MCP tools) and replays persisted events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from local_chat.chat.logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_success,
    log_tool_results,
)
from local_chat.chat.models import (
    MCP_TOOL_PREFIX,
    ToolDefinition,
    ToolExecutionEvent,
    ToolExecutionResponse,
    ToolFunctionDefinition,
)
from local_chat.mcp_client.client import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_OPERATION_TIMEOUT,
    MCPConnection,
    summarize_content,
    with_connection,
)
from local_chat.mcp_client.models import McpServerConfig, McpToolDescriptor
from local_chat.mcp_client.registry import McpServerRegistry

from .event_logger import EventFilters, ToolEventLogger
from .native import NativeToolExecutor

logger = logging.getLogger(__name__)


class ToolRoutingError(ValueError):
    """Tool name or target server cannot be dispatched."""


@dataclass(frozen=True)
class NativeToolTarget:
    tool_name: str


@dataclass(frozen=True)
class McpToolTarget:
    server_id: str
    tool_name: str


ToolTarget = NativeToolTarget | McpToolTarget


def parse_tool_name(tool_name: str) -> ToolTarget:
    """
    Classify a tool name.

    ``mcp.fs.read`` → server ``fs``, tool ``read``; dots after the server
    segment stay in the remote tool name (``mcp.fs.a.b`` → ``a.b``).

    Raises:
        ToolRoutingError: MCP-shaped name with too few or empty segments.
    """
    if not tool_name.startswith(MCP_TOOL_PREFIX):
        return NativeToolTarget(tool_name=tool_name)

    segments = tool_name.split(".")
    if len(segments) < 3 or any(not segment.strip() for segment in segments):
        raise ToolRoutingError(
            f"Invalid MCP tool name '{tool_name}'. Expected mcp.<server_id>.<tool_name>"
        )
    return McpToolTarget(server_id=segments[1], tool_name=".".join(segments[2:]))


def namespaced_tool_name(server_id: str, tool_name: str) -> str:
    return f"{MCP_TOOL_PREFIX}{server_id}.{tool_name}"


def _error_text(error: BaseException) -> str:
    """Readable message; task-group errors are unwrapped to their first leaf."""
    while isinstance(error, BaseExceptionGroup) and error.exceptions:
        error = error.exceptions[0]
    return str(error) or type(error).__name__


class ToolRouter:
    """
    Dispatches tool calls to native handlers or MCP servers.

    Every call pays a full MCP connect/disconnect; there is no pooling.
    """

    def __init__(
        self,
        native: NativeToolExecutor,
        registry: McpServerRegistry,
        event_logger: ToolEventLogger,
        connection_config: dict[str, float] | None = None,
    ) -> None:
        self.native = native
        self.registry = registry
        self.event_logger = event_logger
        connection_config = connection_config or {}
        self.connect_timeout = connection_config.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
        self.operation_timeout = connection_config.get(
            "operation_timeout", DEFAULT_OPERATION_TIMEOUT
        )

    # ---------- Execution ----------

    async def execute(
        self, tool_name: str, args: dict[str, Any] | None, replay_of: str | None = None
    ) -> ToolExecutionResponse:
        """Run one tool call; failures come back as ``error`` events, not exceptions."""
        args = args if isinstance(args, dict) else {}

        try:
            target = parse_tool_name(tool_name)
        except ToolRoutingError as e:
            event = self.event_logger.start_event(tool_name, args, "mcp", replay_of=replay_of)
            return await self._finish_error(event, str(e))

        if isinstance(target, McpToolTarget):
            return await self._execute_mcp(tool_name, target, args, replay_of)
        return await self._execute_native(tool_name, args, replay_of)

    async def _execute_native(
        self, tool_name: str, args: dict[str, Any], replay_of: str | None
    ) -> ToolExecutionResponse:
        event = self.event_logger.start_event(tool_name, args, "native", replay_of=replay_of)
        log_tool_arguments("tools", tool_name, event.args_preview, "native")

        if not self.native.is_native_tool(tool_name):
            return await self._finish_error(event, f"Unknown tool: {tool_name}")

        try:
            result = await self.native.execute(tool_name, args)
        except Exception as e:
            return await self._finish_error(event, _error_text(e))
        return await self._finish_success(event, result)

    async def _execute_mcp(
        self,
        tool_name: str,
        target: McpToolTarget,
        args: dict[str, Any],
        replay_of: str | None,
    ) -> ToolExecutionResponse:
        server = self.registry.get_server(target.server_id)
        event = self.event_logger.start_event(
            tool_name,
            args,
            "mcp",
            server_id=server.id if server else target.server_id,
            server_name=server.name if server else None,
            mcp_tool_name=target.tool_name,
            replay_of=replay_of,
        )
        log_tool_arguments("mcp", tool_name, event.args_preview, f"server={target.server_id}")

        if server is None:
            return await self._finish_error(event, f"MCP server '{target.server_id}' not found")
        if not server.enabled:
            return await self._finish_error(event, f"MCP server '{server.id}' is disabled")

        async def call(connection: MCPConnection) -> dict[str, Any]:
            return await connection.call_tool(target.tool_name, args)

        try:
            result = await with_connection(
                server, call, self.connect_timeout, self.operation_timeout
            )
        except Exception as e:
            return await self._finish_error(event, _error_text(e))

        if result.get("isError"):
            message = summarize_content(result) or f"MCP tool '{target.tool_name}' returned an error"
            return await self._finish_error(event, message, partial_result=result)
        return await self._finish_success(event, result)

    async def _finish_success(
        self, event: ToolExecutionEvent, result: Any
    ) -> ToolExecutionResponse:
        final = await self.event_logger.persist(self.event_logger.finalize_success(event, result))
        log_tool_execution_success(event.tool_name, final.duration_ms)
        log_tool_results("mcp" if final.source == "mcp" else "tools", event.tool_name, final.result)
        return ToolExecutionResponse(event=final, result=result)

    async def _finish_error(
        self, event: ToolExecutionEvent, message: str, partial_result: Any = None
    ) -> ToolExecutionResponse:
        final = await self.event_logger.persist(
            self.event_logger.finalize_error(event, message, partial_result)
        )
        log_tool_execution_error(event.tool_name, final.error_message or message)
        return ToolExecutionResponse(event=final, result={"error": final.error_message})

    async def replay(self, event_id: str) -> ToolExecutionResponse | None:
        """
        Re-run a persisted event's tool with its recorded arguments.

        The new event references the original through ``replay_of``; the
        original is left untouched. Returns None for an unknown id.
        """
        original = await self.event_logger.get_event_by_id(event_id)
        if original is None:
            return None
        logger.info(f"Replaying {original.id} ({original.tool_name})")
        return await self.execute(original.tool_name, dict(original.args), replay_of=original.id)

    # ---------- Discovery ----------

    async def list_mcp_tools(self, server: McpServerConfig) -> list[McpToolDescriptor]:
        async def discover(connection: MCPConnection) -> list[McpToolDescriptor]:
            return await connection.list_tools()

        return await with_connection(
            server, discover, self.connect_timeout, self.operation_timeout
        )

    async def list_tool_definitions(self) -> list[ToolDefinition]:
        """
        Native definitions followed by every enabled server's tools.

        A server that fails discovery is logged and skipped; the others are
        still listed.
        """
        definitions = self.native.list_tool_definitions()

        for server in self.registry.list_servers():
            if not server.enabled:
                continue
            try:
                descriptors = await self.list_mcp_tools(server)
            except Exception as e:
                logger.warning(f"Skipping tools from MCP server '{server.id}': {_error_text(e)}")
                continue

            for descriptor in descriptors:
                definitions.append(self._to_tool_definition(server, descriptor))
            logger.info(f"Discovered {len(descriptors)} tools on MCP server '{server.id}'")

        return definitions

    @staticmethod
    def _to_tool_definition(
        server: McpServerConfig, descriptor: McpToolDescriptor
    ) -> ToolDefinition:
        description = descriptor.description or f"{descriptor.tool_name} ({server.name})"
        return ToolDefinition(
            function=ToolFunctionDefinition(
                name=namespaced_tool_name(server.id, descriptor.tool_name),
                description=description,
                parameters=descriptor.input_schema,
                requires_confirmation=True if server.requires_confirmation else None,
            )
        )

    # ---------- Audit queries ----------

    async def list_events(self, filters: EventFilters | None = None) -> list[ToolExecutionEvent]:
        return await self.event_logger.list_events(filters)

    async def get_event_by_id(self, event_id: str) -> ToolExecutionEvent | None:
        return await self.event_logger.get_event_by_id(event_id)
