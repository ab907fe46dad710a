"""HTTP client for a tool execution server running in another process."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from local_chat.chat.models import ToolDefinition, ToolExecutionResponse

logger = logging.getLogger(__name__)

TOOL_API_KEY_HEADER = "x-tool-api-key"


class ToolApiError(RuntimeError):
    """The tool server rejected a request or answered with an unusable body."""


class RemoteToolExecutor:
    """
    Executes tools through ``POST /api/tools/execute``.

    Carries the tool API key in ``x-tool-api-key`` when one is configured.
    Raises ``ToolApiError`` on transport or HTTP failures; the conversation
    loop turns those into client-side error events.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers[TOOL_API_KEY_HEADER] = api_key
        self.client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ToolApiError(f"Tool server unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ToolApiError(f"Tool server returned invalid JSON (status {response.status_code})") from e

        if not response.is_success:
            detail = data if isinstance(data, dict) else {}
            message = detail.get("hint") or detail.get("error") or detail.get("detail")
            raise ToolApiError(str(message or "Tool execution failed"))
        return data

    async def execute(self, tool_name: str, args: dict[str, Any]) -> ToolExecutionResponse:
        data = await self._request(
            "POST", "/api/tools/execute", json={"toolName": tool_name, "args": args}
        )
        try:
            return ToolExecutionResponse.model_validate(data)
        except ValidationError as e:
            raise ToolApiError(f"Malformed tool execution response: {e}") from e

    async def list_tool_definitions(self) -> list[ToolDefinition]:
        data = await self._request("GET", "/api/tools/definitions")
        raw = data.get("tools", []) if isinstance(data, dict) else []
        return [ToolDefinition.model_validate(item) for item in raw]

    async def list_skills(self) -> list[dict[str, str]]:
        data = await self._request("GET", "/api/skills")
        raw = data.get("skills", []) if isinstance(data, dict) else []
        return [item for item in raw if isinstance(item, dict)]

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> RemoteToolExecutor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
