"""
Tool Execution Server

Thin HTTP layer over the tool router, the MCP server registry and saved
chats. Routes are protected by ``x-tool-api-key`` when ``TOOL_API_KEY`` is
configured. All business logic lives in the router and stores.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from local_chat.chat.models import Message
from local_chat.history.chat_store import ChatStore, ChatStoreError
from local_chat.mcp_client.registry import McpRegistryError
from local_chat.tools.event_logger import DEFAULT_LIST_LIMIT, EventFilters
from local_chat.tools.native import list_skills
from local_chat.tools.router import ToolRouter

logger = logging.getLogger(__name__)


class ExecuteToolRequest(BaseModel):
    toolName: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)


class SaveChatRequest(BaseModel):
    messages: list[Message]
    title: str | None = None


class ToolServer:
    """FastAPI application exposing tool execution and audit endpoints."""

    def __init__(
        self,
        router: ToolRouter,
        chat_store: ChatStore,
        tool_api_key: str | None = None,
        host: str = "localhost",
        port: int = 3001,
        cors_origins: list[str] | None = None,
    ):
        self.router = router
        self.chat_store = chat_store
        self.tool_api_key = tool_api_key
        self.host = host
        self.port = port
        self.cors_origins = cors_origins or [
            "http://localhost:5173",
            "http://localhost:5174",
            "http://127.0.0.1:5174",
        ]
        self.app = self._create_app()

    def _require_tool_auth(
        self, x_tool_api_key: str | None = Header(default=None, alias="x-tool-api-key")
    ) -> None:
        if not self.tool_api_key:
            return
        if not x_tool_api_key or not secrets.compare_digest(x_tool_api_key, self.tool_api_key):
            raise HTTPException(status_code=401, detail="Unauthorized")

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI app."""
        app = FastAPI(title="Local Chat Tool Server")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.get("/health")
        async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
            return {"status": "healthy"}

        app.include_router(self._tools_router())
        app.include_router(self._mcp_router())
        app.include_router(self._chats_router())
        return app

    def _tools_router(self) -> APIRouter:
        router = APIRouter(prefix="/api/tools", dependencies=[Depends(self._require_tool_auth)])

        @router.get("/definitions")
        async def definitions() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            tools = await self.router.list_tool_definitions()
            return {"tools": [t.model_dump(exclude_none=True) for t in tools]}

        @router.post("/execute")
        async def execute(body: ExecuteToolRequest) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            response = await self.router.execute(body.toolName, body.args)
            return response.model_dump(mode="json")

        @router.get("/events")
        async def events(  # pyright: ignore[reportUnusedFunction]
            tool_name: str | None = None,
            status: str | None = None,
            server_id: str | None = None,
            limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=1000),
        ) -> dict[str, Any]:
            filters = EventFilters(
                tool_name=tool_name, status=status, server_id=server_id, limit=limit
            )
            found = await self.router.list_events(filters)
            return {"events": [e.model_dump(mode="json") for e in found]}

        @router.get("/events/{event_id}")
        async def event(event_id: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            found = await self.router.get_event_by_id(event_id)
            if found is None:
                raise HTTPException(status_code=404, detail=f"Event '{event_id}' not found")
            return {"event": found.model_dump(mode="json")}

        @router.post("/replay/{event_id}")
        async def replay(event_id: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            response = await self.router.replay(event_id)
            if response is None:
                raise HTTPException(status_code=404, detail=f"Event '{event_id}' not found")
            return response.model_dump(mode="json")

        return router

    def _mcp_router(self) -> APIRouter:
        router = APIRouter(prefix="/api/mcp", dependencies=[Depends(self._require_tool_auth)])
        registry = self.router.registry

        @router.get("/servers")
        async def list_servers() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            return {"servers": [s.model_dump() for s in registry.list_servers()]}

        @router.post("/servers")
        async def add_server(payload: dict[str, Any]) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            try:
                return {"server": registry.add_server(payload).model_dump()}
            except McpRegistryError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e

        @router.put("/servers/{server_id}")
        async def update_server(server_id: str, patch: dict[str, Any]) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            try:
                return {"server": registry.update_server(server_id, patch).model_dump()}
            except McpRegistryError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e

        @router.delete("/servers/{server_id}")
        async def remove_server(server_id: str) -> dict[str, bool]:  # pyright: ignore[reportUnusedFunction]
            try:
                registry.remove_server(server_id)
            except McpRegistryError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return {"success": True}

        @router.get("/servers/{server_id}/tools")
        async def server_tools(server_id: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            server = registry.get_server(server_id)
            if server is None:
                raise HTTPException(status_code=404, detail=f"MCP server '{server_id}' not found")
            try:
                tools = await self.router.list_mcp_tools(server)
            except Exception as e:
                logger.error(f"Tool discovery failed for '{server.id}': {e}")
                raise HTTPException(status_code=502, detail=str(e)) from e
            return {
                "server_id": server.id,
                "server_name": server.name,
                "tools": [t.model_dump() for t in tools],
            }

        return router

    def _chats_router(self) -> APIRouter:
        router = APIRouter(prefix="/api")

        @router.get("/skills")
        async def skills() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            return {"skills": list_skills(self.router.native.skills_dir)}

        @router.post("/chats", dependencies=[Depends(self._require_tool_auth)])
        async def save_chat(body: SaveChatRequest) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            filename = self.chat_store.save(body.messages, body.title)
            return {"success": True, "filename": filename}

        @router.get("/chats")
        async def list_chats() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            return {"chats": [c.model_dump() for c in self.chat_store.list_chats()]}

        @router.get("/chats/{filename}")
        async def load_chat(filename: str) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
            try:
                chat = self.chat_store.load(filename)
            except ChatStoreError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            if chat is None:
                raise HTTPException(status_code=404, detail="Chat file not found")
            return chat.model_dump(mode="json", exclude_none=True)

        return router

    async def start_server(self) -> None:
        """Serve until cancelled."""
        logger.info(f"Starting tool server on {self.host}:{self.port}")
        server = uvicorn.Server(
            uvicorn.Config(self.app, host=self.host, port=self.port, log_level="info")
        )
        try:
            await server.serve()
        except Exception as e:
            logger.error(f"Tool server error: {e}")
            raise
        finally:
            logger.info("Tool server stopped")
