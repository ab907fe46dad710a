"""
OpenAI-compatible LLM HTTP client.

Talks to either a local OpenAI-compatible server or OpenRouter. Configuration
changes are picked up through the observer pattern and applied between
requests, never while a stream is open.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from mcp import McpError, types

from local_chat.config import Configuration

logger = logging.getLogger(__name__)

HTTP_OK = 200


def redact_authorization_header(value: str | None) -> str:
    """Mask a bearer token for logging, keeping its first and last four chars."""
    if not value:
        return ""

    parts = value.strip().split(None, 1)
    if len(parts) != 2:
        return "***"

    scheme, token = parts
    if len(token) <= 8:
        return f"{scheme} ***"
    return f"{scheme} {token[:4]}...{token[-4:]}"


def extract_error_message(body: Any) -> str | None:
    """Pull a human readable message out of a provider error body."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
        if body.get("detail"):
            return str(body["detail"])
        if body.get("message"):
            return str(body["message"])
    if isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return None


class LLMClient:
    """
    Event-driven LLM HTTP client.

    Subscribes to configuration changes; a provider switch is queued and the
    underlying ``httpx.AsyncClient`` is replaced before the next request once
    no stream is active.
    """

    def __init__(
        self,
        configuration: Configuration,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.configuration = configuration
        self._transport = transport
        self._active_streams = 0
        self._pending_config_change = False
        self._current_config: dict[str, Any] = {}
        self._current_api_key = ""
        self.client: httpx.AsyncClient | None = None

        self._apply_config(configuration.get_llm_config(), configuration.llm_api_key)
        self.configuration.subscribe_to_changes(self._on_config_change)

    @property
    def config(self) -> dict[str, Any]:
        """Get current provider configuration (cached, no I/O)."""
        return self._current_config

    @property
    def provider(self) -> str:
        return self._current_config.get("provider", "local")

    def _on_config_change(self, _new_config: dict[str, Any]) -> None:
        logger.info("🔄 LLM configuration change detected, applying before next request")
        self._pending_config_change = True

    def build_headers(self, api_key: str) -> dict[str, str]:
        """Build request headers for the active provider."""
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if self.provider == "openrouter":
            headers["HTTP-Referer"] = self._current_config.get("http_referer", "http://localhost")
            headers["X-OpenRouter-Title"] = self._current_config.get("app_title", "Local Chat UI")
        return headers

    def _apply_config(self, provider_config: dict[str, Any], api_key: str) -> None:
        """Replace the HTTP client for a new provider configuration."""
        self._current_config = provider_config
        self._current_api_key = api_key
        headers = self.build_headers(api_key)

        self.client = httpx.AsyncClient(
            base_url=provider_config["base_url"],
            headers=headers,
            timeout=float(provider_config.get("timeout", 120.0)),
            http2=True,
            transport=self._transport,
            trust_env=False,
        )
        logger.info(
            "LLM client initialized with provider: %s, model: %s, auth: %s",
            self.provider,
            provider_config.get("model", "unknown"),
            redact_authorization_header(headers.get("Authorization")) or "none",
        )

    async def _apply_pending_config_change(self) -> None:
        if not self._pending_config_change or self._active_streams > 0:
            return
        self._pending_config_change = False
        old_client = self.client
        self._apply_config(self.configuration.get_llm_config(), self.configuration.llm_api_key)
        if old_client:
            await old_client.aclose()

    def build_payload(
        self,
        model: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = True,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Build the ``/chat/completions`` request body."""
        payload: dict[str, Any] = {
            "model": model or self._current_config.get("model"),
            "messages": messages,
            "stream": stream,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
        return {k: v for k, v in payload.items() if v is not None}

    @asynccontextmanager
    async def stream_chat_completion(self, payload: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        Open a completion request and yield the response once headers arrive.

        Raises:
            McpError: if the endpoint is unreachable or answers non-200.
        """
        await self._apply_pending_config_change()
        if not self.client:
            raise McpError(
                types.ErrorData(code=types.INTERNAL_ERROR, message="LLM client not initialized")
            )

        if self.provider == "openrouter" and not self._current_api_key:
            raise McpError(
                types.ErrorData(
                    code=types.INVALID_REQUEST, message="OpenRouter API key is required."
                )
            )

        self._active_streams += 1
        start_time = time.monotonic()
        try:
            async with self.client.stream(
                "POST",
                "/chat/completions",
                json=payload,
                headers={"Accept": "text/event-stream, application/json"},
            ) as response:
                if response.status_code != HTTP_OK:
                    body = await response.aread()
                    try:
                        detail = extract_error_message(response.json())
                    except ValueError:
                        detail = extract_error_message(body.decode("utf-8", errors="replace"))
                    message = f"HTTP error! status: {response.status_code}"
                    if detail:
                        message += f" - {detail}"
                    logger.error(
                        "← LLM: %s (request id: %s)",
                        message,
                        response.headers.get("x-request-id")
                        or response.headers.get("x-openrouter-request-id"),
                    )
                    raise McpError(types.ErrorData(code=types.INTERNAL_ERROR, message=message))

                logger.debug(
                    "← LLM: headers received in %.2fms",
                    (time.monotonic() - start_time) * 1000,
                )
                yield response
        except httpx.HTTPError as e:
            logger.error(f"HTTP error during completion request: {type(e).__name__}: {e}")
            raise McpError(
                types.ErrorData(code=types.INTERNAL_ERROR, message=f"HTTP error: {e!s}")
            ) from e
        finally:
            self._active_streams -= 1

    async def list_models(self) -> list[dict[str, Any]]:
        """List models exposed by the active provider, sorted by id."""
        await self._apply_pending_config_change()
        if not self.client:
            return []

        try:
            response = await self.client.get("/models")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise McpError(
                types.ErrorData(code=types.INTERNAL_ERROR, message=f"HTTP error: {e!s}")
            ) from e

        models: list[dict[str, Any]] = []
        for raw in response.json().get("data", []):
            model_id = raw.get("id") if isinstance(raw, dict) else None
            if not model_id:
                continue
            models.append(
                {
                    "id": model_id,
                    "name": (raw.get("name") or "").strip() or model_id,
                    "context_length": raw.get("context_length"),
                    "provider": self.provider,
                }
            )
        return sorted(models, key=lambda m: m["id"])

    async def close(self) -> None:
        """Close the HTTP client and unsubscribe from config changes."""
        self.configuration.unsubscribe_from_changes(self._on_config_change)
        if self.client:
            await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
