"""
Streaming Completion Parser

Handles the fragile part of talking to an OpenAI-compatible endpoint:
- SSE-style ``data: {...}`` frames that may span network chunks
- Content delta accumulation
- Tool call fragments indexed by position, with arguments concatenated
  as an opaque string until the call is complete
- Live client-side metrics (time-to-first-token, tokens/sec)
- Non-streaming JSON completions, handled through the same interface

Streaming bugs are hard to debug, so frame handling is kept here, apart from
the loop that decides what to do with the assembled turn.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from mcp import McpError, types
from pydantic import ValidationError

from local_chat.chat.logging_utils import log_llm_reply, should_log_feature
from local_chat.chat.models import (
    AssistantTurn,
    FunctionCall,
    Metrics,
    StreamingDelta,
    ToolCall,
    ToolCallDelta,
    ToolDefinition,
)

if TYPE_CHECKING:
    from local_chat.chat.listener import GenerationListener
    from local_chat.chat.models import Message
    from local_chat.clients.llm_client import LLMClient

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "data: [DONE]"


class StreamFrameError(McpError):
    """An upstream frame carried an explicit ``error`` field."""

    def __init__(self, message: str) -> None:
        super().__init__(types.ErrorData(code=types.INTERNAL_ERROR, message=message))


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or "Unknown stream error")
    return str(error or "Unknown stream error")


def _synthetic_call_id(index: int) -> str:
    return f"call_{int(time.time() * 1000)}_{index}"


class StreamingCompletionParser:
    """
    Incrementally rebuilds one assistant turn from a chunked completion stream.

    Feed decoded text with ``feed()`` as it arrives and call ``finish()`` once
    the body is exhausted. The listener sees ``update_last_assistant`` after
    every frame that changed content or tool-call state, and metric snapshots
    when ``track_metrics`` is set.
    """

    def __init__(
        self,
        listener: GenerationListener,
        track_metrics: bool = False,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.listener = listener
        self.track_metrics = track_metrics
        self._clock = clock
        self._start_ms = self._now_ms()
        self._first_token_ms: float | None = None
        self._token_count = 0
        self._buffer = ""
        self._tool_calls: dict[int, ToolCall] = {}
        self.content = ""
        self.metrics = Metrics()
        self.finished = False

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls ordered by stream index; index gaps are skipped."""
        return [self._tool_calls[i] for i in sorted(self._tool_calls)]

    def feed(self, text: str) -> None:
        """Consume a decoded chunk; the trailing partial line is held back."""
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            self._handle_line(line)

    def feed_completion(self, payload: dict[str, Any]) -> None:
        """Consume a complete non-streaming JSON completion object."""
        if payload.get("error"):
            raise StreamFrameError(_error_message(payload["error"]))

        choices = payload.get("choices") or []
        message: dict[str, Any] = choices[0].get("message", {}) if choices else {}
        self.content = message.get("content") or ""

        for index, raw_call in enumerate(message.get("tool_calls") or []):
            function = raw_call.get("function") or {}
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments if arguments is not None else {})
            self._tool_calls[index] = ToolCall(
                id=raw_call.get("id") or _synthetic_call_id(index),
                function=FunctionCall(name=function.get("name") or "", arguments=arguments),
            )

        usage = payload.get("usage") or {}
        completion_tokens = usage.get("completion_tokens")
        if isinstance(completion_tokens, int):
            self._token_count = completion_tokens
        self._notify_turn_updated()

    def _handle_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped.startswith(DATA_PREFIX) or stripped == DONE_SENTINEL:
            return

        try:
            frame = json.loads(stripped[len(DATA_PREFIX):])
        except json.JSONDecodeError as e:
            logger.warning("Could not parse stream line %r: %s", line[:200], e)
            return
        if not isinstance(frame, dict):
            logger.warning("Ignoring non-object stream frame: %r", line[:200])
            return

        if should_log_feature("chat", "stream_frames"):
            logger.debug("← LLM frame: %s", stripped[:500])

        if frame.get("error"):
            raise StreamFrameError(_error_message(frame["error"]))

        choices = frame.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return

        try:
            delta = StreamingDelta.model_validate(choices[0].get("delta") or {})
        except ValidationError as e:
            logger.warning("Skipping malformed delta: %s", e)
            return

        changed = False
        if delta.content:
            self._on_content(delta.content)
            changed = True

        if delta.tool_calls:
            for fragment in delta.tool_calls:
                self._accumulate_tool_call(fragment)
            changed = True

        if changed:
            self._notify_turn_updated()
            self._update_live_rate()

    def _on_content(self, text: str) -> None:
        self.content += text
        if not self.track_metrics:
            return
        self._token_count += 1
        if self._first_token_ms is None:
            self._first_token_ms = self._now_ms()
            self.metrics.ttft = self._first_token_ms - self._start_ms
            self.listener.update_metrics(self.metrics.model_copy())

    def _accumulate_tool_call(self, fragment: ToolCallDelta) -> None:
        """
        Merge one tool call fragment into the call at its index.

        The first fragment for an index allocates the call; later fragments
        only append to ``function.arguments``. Indices may arrive sparse.
        """
        index = fragment.index if fragment.index is not None else 0
        function = fragment.function
        existing = self._tool_calls.get(index)

        if existing is None:
            existing = ToolCall(
                id=fragment.id or _synthetic_call_id(index),
                function=FunctionCall(name=(function.name if function else None) or ""),
            )
            self._tool_calls[index] = existing
        elif function and function.name and not existing.function.name:
            existing.function.name = function.name

        if function and function.arguments:
            existing.function.arguments += function.arguments

    def _notify_turn_updated(self) -> None:
        calls = self.tool_calls
        self.listener.update_last_assistant(self.content, calls or None)

    def _update_live_rate(self) -> None:
        if not self.track_metrics or self._first_token_ms is None:
            return
        gen_seconds = (self._now_ms() - self._first_token_ms) / 1000.0
        if gen_seconds > 0:
            self.metrics.total_tokens = self._token_count
            self.metrics.tokens_per_sec = self._token_count / gen_seconds
            self.listener.update_metrics(self.metrics.model_copy())

    def finish(self) -> AssistantTurn:
        """Flush any unterminated final line and finalize metrics."""
        if not self.finished:
            self.finished = True
            if self._buffer.strip():
                pending, self._buffer = self._buffer, ""
                self._handle_line(pending)

            if self.track_metrics:
                end_ms = self._now_ms()
                gen_seconds = (end_ms - (self._first_token_ms or self._start_ms)) / 1000.0
                self.metrics.total_latency = end_ms - self._start_ms
                self.metrics.total_tokens = self._token_count
                self.metrics.tokens_per_sec = (
                    self._token_count / gen_seconds if gen_seconds > 0 else 0.0
                )
                self.listener.update_metrics(self.metrics.model_copy())

        return AssistantTurn(content=self.content, tool_calls=self.tool_calls)


def _is_json_completion(content_type: str) -> bool:
    return "application/json" in content_type.lower()


async def stream_assistant_response(
    llm_client: LLMClient,
    messages: list[Message],
    model_name: str,
    tools: list[ToolDefinition],
    listener: GenerationListener,
    track_metrics: bool,
    temperature: float,
    max_tokens: int,
) -> AssistantTurn:
    """
    Request one assistant turn and reconstruct it from the response body.

    Appends the empty assistant placeholder first, so callers can revert it
    when the request fails. Event-stream bodies are parsed frame by frame;
    a plain JSON body is treated as a non-streaming completion.

    Raises:
        McpError: transport failure or an error frame from the endpoint.
    """
    listener.append_empty_assistant()

    payload = llm_client.build_payload(
        model=model_name,
        messages=[m.to_api_dict() for m in messages],
        tools=[t.to_api_dict() for t in tools],
        stream=True,
        temperature=temperature,
        max_tokens=max_tokens,
    )

    parser = StreamingCompletionParser(listener, track_metrics=track_metrics)
    logger.info("→ LLM: starting completion request (model=%s, tools=%d)", model_name, len(tools))

    async with llm_client.stream_chat_completion(payload) as response:
        content_type = response.headers.get("content-type", "")
        if _is_json_completion(content_type):
            body = await response.aread()
            try:
                completion = json.loads(body)
            except json.JSONDecodeError as e:
                raise McpError(
                    types.ErrorData(
                        code=types.PARSE_ERROR,
                        message=f"Invalid JSON completion body: {e}",
                    )
                ) from e
            parser.feed_completion(completion if isinstance(completion, dict) else {})
        else:
            async for text in response.aiter_text():
                parser.feed(text)

    turn = parser.finish()
    logger.info(
        "← LLM: completion finished, %d chars, %d tool call(s)",
        len(turn.content),
        len(turn.tool_calls),
    )
    log_llm_reply(turn.content, turn.tool_calls, model_name)
    return turn
