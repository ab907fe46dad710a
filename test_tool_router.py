#!/usr/bin/env python3
"""Tests for tool name routing, dispatch and replay."""

from __future__ import annotations

from typing import Any

import pytest

from local_chat.mcp_client.client import MCPTimeoutError
from local_chat.mcp_client.models import McpToolDescriptor
from local_chat.mcp_client.registry import McpServerRegistry
from local_chat.tools import router as router_module
from local_chat.tools.event_logger import EventFilters, ToolEventLogger
from local_chat.tools.native import NativeToolExecutor
from local_chat.tools.router import (
    McpToolTarget,
    NativeToolTarget,
    ToolRouter,
    ToolRoutingError,
    parse_tool_name,
)


class FakeConnection:
    """Stands in for an open MCPConnection inside ``with_connection``."""

    def __init__(self, server_id: str, results: dict[str, Any], tools: dict[str, list]) -> None:
        self.server_id = server_id
        self.results = results
        self.tools = tools

    async def call_tool(self, name: str, args: dict[str, Any]) -> dict[str, Any]:
        result = self.results[name]
        if isinstance(result, Exception):
            raise result
        return {**result, "echo": args}

    async def list_tools(self) -> list[McpToolDescriptor]:
        tools = self.tools[self.server_id]
        if isinstance(tools, Exception):
            raise tools
        return tools


@pytest.fixture
def registry(tmp_path):
    registry = McpServerRegistry(str(tmp_path / "mcp-servers.json"))
    registry.add_server({"id": "fs", "name": "Files", "transport": "stdio", "command": "fs-server"})
    registry.update_server("fs", {"enabled": True})
    registry.add_server(
        {"id": "web", "transport": "http", "url": "http://localhost:9000/mcp"}
    )
    registry.update_server("web", {"enabled": True, "requires_confirmation": True})
    registry.add_server({"id": "off", "transport": "sse", "url": "http://localhost:9001/sse"})
    return registry


@pytest.fixture
def tool_router(tmp_path, registry):
    (tmp_path / "notes.txt").write_text("remember the milk")
    native = NativeToolExecutor(project_root=str(tmp_path), skills_dir=str(tmp_path / "skills"))
    return ToolRouter(
        native=native,
        registry=registry,
        event_logger=ToolEventLogger.for_project(str(tmp_path)),
        connection_config={"connect_timeout": 1.0, "operation_timeout": 2.0},
    )


@pytest.fixture
def fake_mcp(monkeypatch):
    """Patch the connection helper; returns the per-tool results to configure."""
    state: dict[str, Any] = {"results": {}, "tools": {}, "servers": []}

    async def fake_with_connection(server, fn, connect_timeout, operation_timeout):
        state["servers"].append((server.id, connect_timeout, operation_timeout))
        return await fn(FakeConnection(server.id, state["results"], state["tools"]))

    monkeypatch.setattr(router_module, "with_connection", fake_with_connection)
    return state


# ---------- Name parsing ----------


def test_parse_native_name():
    assert parse_tool_name("read_file") == NativeToolTarget("read_file")


def test_parse_mcp_name():
    assert parse_tool_name("mcp.fs.read") == McpToolTarget(server_id="fs", tool_name="read")


def test_parse_mcp_name_keeps_dots_in_tool_name():
    assert parse_tool_name("mcp.fs.a.b") == McpToolTarget(server_id="fs", tool_name="a.b")


@pytest.mark.parametrize("name", ["mcp.fs", "mcp.", "mcp..read", "mcp.fs."])
def test_parse_rejects_malformed_mcp_names(name):
    with pytest.raises(ToolRoutingError, match="Expected mcp.<server_id>.<tool_name>"):
        parse_tool_name(name)


# ---------- Native dispatch ----------


async def test_native_tool_success(tool_router):
    response = await tool_router.execute("read_file", {"filePath": "notes.txt"})

    assert response.result == {"content": "remember the milk"}
    assert response.event.status == "success"
    assert response.event.source == "native"
    assert response.event.sequence == 1


async def test_native_tool_failure_is_an_error_event(tool_router):
    response = await tool_router.execute("read_file", {"filePath": "../secret"})

    assert response.event.status == "error"
    assert response.event.error_message == "Path is outside the project root"
    assert response.result == {"error": "Path is outside the project root"}


async def test_unknown_tool(tool_router):
    response = await tool_router.execute("write_file", {})
    assert response.result == {"error": "Unknown tool: write_file"}
    assert response.event.source == "native"


async def test_malformed_mcp_name_is_logged_as_mcp_error(tool_router):
    response = await tool_router.execute("mcp.fs", {})

    assert response.event.status == "error"
    assert response.event.source == "mcp"
    logged = await tool_router.list_events()
    assert logged[0].id == response.event.id


# ---------- MCP dispatch ----------


async def test_mcp_tool_success(tool_router, fake_mcp):
    fake_mcp["results"]["read_text"] = {
        "content": [{"type": "text", "text": "file body"}],
        "structuredContent": None,
        "isError": False,
    }

    response = await tool_router.execute("mcp.fs.read_text", {"path": "a.txt"})

    assert response.event.status == "success"
    assert response.event.server_id == "fs"
    assert response.event.server_name == "Files"
    assert response.event.mcp_tool_name == "read_text"
    assert response.result["echo"] == {"path": "a.txt"}
    assert fake_mcp["servers"] == [("fs", 1.0, 2.0)]


async def test_mcp_tool_reported_error(tool_router, fake_mcp):
    fake_mcp["results"]["read_text"] = {
        "content": [{"type": "text", "text": "no such file"}],
        "structuredContent": None,
        "isError": True,
    }

    response = await tool_router.execute("mcp.fs.read_text", {})

    assert response.event.status == "error"
    assert response.event.error_message == "no such file"
    assert response.event.result["isError"] is True
    assert response.result == {"error": "no such file"}


async def test_mcp_timeout_becomes_error_event(tool_router, fake_mcp):
    fake_mcp["results"]["slow"] = MCPTimeoutError("call_tool(fs/slow)", 2.0)

    response = await tool_router.execute("mcp.fs.slow", {})

    assert response.event.status == "error"
    assert response.event.error_message == "call_tool(fs/slow) timed out after 2000ms"


async def test_missing_and_disabled_servers(tool_router, fake_mcp):
    missing = await tool_router.execute("mcp.nope.read", {})
    disabled = await tool_router.execute("mcp.off.read", {})

    assert missing.result == {"error": "MCP server 'nope' not found"}
    assert missing.event.server_id == "nope"
    assert disabled.result == {"error": "MCP server 'off' is disabled"}
    assert fake_mcp["servers"] == []


# ---------- Replay ----------


async def test_replay_links_to_original(tool_router):
    original = await tool_router.execute("read_file", {"filePath": "notes.txt"})

    replayed = await tool_router.replay(original.event.id)

    assert replayed is not None
    assert replayed.event.id != original.event.id
    assert replayed.event.replay_of == original.event.id
    assert replayed.event.args == {"filePath": "notes.txt"}
    assert replayed.result == original.result

    stored = await tool_router.get_event_by_id(original.event.id)
    assert stored.replay_of is None


async def test_replay_unknown_event(tool_router):
    assert await tool_router.replay("tool_evt_404") is None


async def test_events_can_be_filtered_by_server(tool_router, fake_mcp):
    fake_mcp["results"]["read_text"] = {"content": [], "structuredContent": None, "isError": False}
    await tool_router.execute("read_file", {"filePath": "notes.txt"})
    await tool_router.execute("mcp.fs.read_text", {})

    events = await tool_router.list_events(EventFilters(server_id="fs"))
    assert [e.tool_name for e in events] == ["mcp.fs.read_text"]


# ---------- Definitions ----------


async def test_definitions_merge_native_and_mcp_tools(tool_router, fake_mcp):
    fake_mcp["tools"]["fs"] = [
        McpToolDescriptor(
            server_id="fs",
            server_name="Files",
            tool_name="read_text",
            description="Read a text file",
            input_schema={"type": "object", "properties": {"path": {"type": "string"}}},
        )
    ]
    fake_mcp["tools"]["web"] = [
        McpToolDescriptor(server_id="web", server_name="web", tool_name="fetch")
    ]

    definitions = await tool_router.list_tool_definitions()
    by_name = {d.name: d for d in definitions}

    assert list(by_name)[:3] == ["read_file", "brave_search", "load_skill"]
    assert by_name["mcp.fs.read_text"].function.description == "Read a text file"
    assert by_name["mcp.fs.read_text"].function.requires_confirmation is None
    assert by_name["mcp.web.fetch"].function.description == "fetch (web)"
    assert by_name["mcp.web.fetch"].function.requires_confirmation is True
    assert not any(name.startswith("mcp.off.") for name in by_name)


async def test_definitions_skip_failing_server(tool_router, fake_mcp):
    fake_mcp["tools"]["fs"] = ConnectionError("server crashed")
    fake_mcp["tools"]["web"] = [
        McpToolDescriptor(server_id="web", server_name="web", tool_name="fetch")
    ]

    names = [d.name for d in await tool_router.list_tool_definitions()]

    assert "mcp.web.fetch" in names
    assert not any(name.startswith("mcp.fs.") for name in names)
