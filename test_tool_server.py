#!/usr/bin/env python3
"""Tests for the tool execution HTTP server and its remote client."""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from local_chat.history.chat_store import ChatStore
from local_chat.mcp_client.registry import McpServerRegistry
from local_chat.tool_server import ToolServer
from local_chat.tools.event_logger import ToolEventLogger
from local_chat.tools.native import NativeToolExecutor
from local_chat.tools.remote import RemoteToolExecutor, ToolApiError
from local_chat.tools.router import ToolRouter

API_KEY = "test-tool-key"
AUTH = {"x-tool-api-key": API_KEY}


@pytest.fixture
def server(tmp_path) -> ToolServer:
    (tmp_path / "notes.txt").write_text("remember the milk")
    skill = tmp_path / "skills" / "summarize"
    skill.mkdir(parents=True)
    (skill / "SKILL.md").write_text("---\nname: Summarize\ndescription: Short summaries.\n---\n")

    router = ToolRouter(
        native=NativeToolExecutor(str(tmp_path), str(tmp_path / "skills")),
        registry=McpServerRegistry(str(tmp_path / "config" / "mcp-servers.json")),
        event_logger=ToolEventLogger.for_project(str(tmp_path)),
    )
    return ToolServer(router, ChatStore(str(tmp_path / "chats")), tool_api_key=API_KEY)


@pytest.fixture
def client(server) -> TestClient:
    return TestClient(server.app)


# ---------- Auth ----------


def test_health_is_public(client):
    assert client.get("/health").json() == {"status": "healthy"}


@pytest.mark.parametrize("headers", [{}, {"x-tool-api-key": "wrong"}])
def test_tool_routes_require_api_key(client, headers):
    response = client.get("/api/tools/definitions", headers=headers)
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}


def test_no_key_configured_allows_calls(server):
    server.tool_api_key = None
    response = TestClient(server.app).get("/api/tools/definitions")
    assert response.status_code == 200


# ---------- Tools ----------


def test_definitions_list_native_tools(client):
    tools = client.get("/api/tools/definitions", headers=AUTH).json()["tools"]
    assert [t["function"]["name"] for t in tools] == ["read_file", "brave_search", "load_skill"]
    assert all("requires_confirmation" not in t["function"] for t in tools)


def test_execute_and_query_events(client):
    executed = client.post(
        "/api/tools/execute",
        json={"toolName": "read_file", "args": {"filePath": "notes.txt"}},
        headers=AUTH,
    ).json()

    assert executed["result"] == {"content": "remember the milk"}
    assert executed["event"]["status"] == "success"
    event_id = executed["event"]["id"]

    client.post("/api/tools/execute", json={"toolName": "nope"}, headers=AUTH)

    events = client.get("/api/tools/events", headers=AUTH).json()["events"]
    assert [e["tool_name"] for e in events] == ["nope", "read_file"]

    errors = client.get("/api/tools/events", params={"status": "error"}, headers=AUTH).json()
    assert [e["tool_name"] for e in errors["events"]] == ["nope"]

    single = client.get(f"/api/tools/events/{event_id}", headers=AUTH).json()
    assert single["event"]["args"] == {"filePath": "notes.txt"}


def test_execute_requires_tool_name(client):
    response = client.post("/api/tools/execute", json={"toolName": ""}, headers=AUTH)
    assert response.status_code == 422


def test_events_limit_is_bounded(client):
    response = client.get("/api/tools/events", params={"limit": 0}, headers=AUTH)
    assert response.status_code == 422


def test_unknown_event_is_404(client):
    assert client.get("/api/tools/events/tool_evt_9", headers=AUTH).status_code == 404
    assert client.post("/api/tools/replay/tool_evt_9", headers=AUTH).status_code == 404


def test_replay_creates_linked_event(client):
    original = client.post(
        "/api/tools/execute",
        json={"toolName": "read_file", "args": {"filePath": "notes.txt"}},
        headers=AUTH,
    ).json()["event"]

    replayed = client.post(f"/api/tools/replay/{original['id']}", headers=AUTH).json()

    assert replayed["event"]["replay_of"] == original["id"]
    assert replayed["event"]["sequence"] == original["sequence"] + 1


# ---------- MCP registry ----------


def test_mcp_server_crud(client):
    created = client.post(
        "/api/mcp/servers",
        json={"id": "fs", "transport": "stdio", "command": "fs-server"},
        headers=AUTH,
    )
    assert created.status_code == 200
    assert created.json()["server"]["enabled"] is False

    duplicate = client.post(
        "/api/mcp/servers",
        json={"id": "fs", "transport": "stdio", "command": "fs-server"},
        headers=AUTH,
    )
    assert duplicate.status_code == 400

    updated = client.put("/api/mcp/servers/fs", json={"enabled": True}, headers=AUTH)
    assert updated.json()["server"]["enabled"] is True

    listed = client.get("/api/mcp/servers", headers=AUTH).json()["servers"]
    assert [s["id"] for s in listed] == ["fs"]

    assert client.delete("/api/mcp/servers/fs", headers=AUTH).json() == {"success": True}
    assert client.delete("/api/mcp/servers/fs", headers=AUTH).status_code == 404


def test_tools_of_unknown_server_is_404(client):
    assert client.get("/api/mcp/servers/ghost/tools", headers=AUTH).status_code == 404


# ---------- Skills and chats ----------


def test_skills_listing(client):
    assert client.get("/api/skills").json() == {
        "skills": [{"id": "summarize", "name": "Summarize", "description": "Short summaries."}]
    }


def test_chat_save_list_load(client):
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    saved = client.post(
        "/api/chats", json={"messages": messages, "title": "First chat!"}, headers=AUTH
    ).json()

    assert saved["success"] is True
    assert saved["filename"].endswith("_first_chat_.json")

    chats = client.get("/api/chats").json()["chats"]
    assert chats[0]["filename"] == saved["filename"]
    assert chats[0]["title"] == "First chat!"

    loaded = client.get(f"/api/chats/{saved['filename']}").json()
    assert loaded["messages"] == messages


def test_chat_load_errors(client):
    assert client.get("/api/chats/notes.txt").status_code == 400
    assert client.get("/api/chats/missing.json").status_code == 404


# ---------- Remote executor ----------


async def test_remote_executor_round_trip(server):
    transport = httpx.ASGITransport(app=server.app)
    async with RemoteToolExecutor("http://tools", api_key=API_KEY, transport=transport) as remote:
        definitions = await remote.list_tool_definitions()
        response = await remote.execute("read_file", {"filePath": "notes.txt"})

    assert [d.name for d in definitions][:1] == ["read_file"]
    assert response.result == {"content": "remember the milk"}
    assert response.event.status == "success"


async def test_remote_executor_lists_skills(server):
    transport = httpx.ASGITransport(app=server.app)
    async with RemoteToolExecutor("http://tools", api_key=API_KEY, transport=transport) as remote:
        skills = await remote.list_skills()

    assert skills == [{"id": "summarize", "name": "Summarize", "description": "Short summaries."}]


async def test_remote_executor_surfaces_auth_failure(server):
    transport = httpx.ASGITransport(app=server.app)
    async with RemoteToolExecutor("http://tools", api_key="wrong", transport=transport) as remote:
        with pytest.raises(ToolApiError, match="Unauthorized"):
            await remote.execute("read_file", {"filePath": "notes.txt"})


async def test_remote_executor_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    remote = RemoteToolExecutor("http://tools", transport=httpx.MockTransport(handler))
    with pytest.raises(ToolApiError, match="Tool server unreachable"):
        await remote.execute("read_file", {})
    await remote.close()
