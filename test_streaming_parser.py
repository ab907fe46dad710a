#!/usr/bin/env python3
"""Tests for the streaming completion parser."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
from mcp import McpError

from local_chat.chat.models import Metrics, ToolCall, ToolDefinition, ToolFunctionDefinition
from local_chat.chat.streaming_parser import (
    StreamFrameError,
    StreamingCompletionParser,
    stream_assistant_response,
)

FIRST_CHUNK = (
    'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"c1","function":'
    '{"name":"read_file","arguments":"{\\"filePath\\""}}]}}]}\n'
)
SECOND_CHUNK = (
    'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"function":'
    '{"arguments":":\\"x\\"}"}}]}}]}\n'
)
DONE = "data: [DONE]\n"


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []
        self.metrics: list[Metrics] = []

    def append_empty_assistant(self) -> None:
        self.events.append(("append_empty_assistant", None))

    def update_last_assistant(self, content: str, tool_calls: list[ToolCall] | None) -> None:
        calls = [c.model_copy(deep=True) for c in tool_calls] if tool_calls else None
        self.events.append(("update_last_assistant", (content, calls)))

    def append_message(self, message: Any) -> None:
        self.events.append(("append_message", message))

    def append_assistant_warning(self, content: str) -> None:
        self.events.append(("append_assistant_warning", content))

    def update_metrics(self, metrics: Metrics) -> None:
        self.metrics.append(metrics)

    def updates(self) -> list[tuple[str, list[ToolCall] | None]]:
        return [payload for name, payload in self.events if name == "update_last_assistant"]


class FakeClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def content_frame(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\n"


# ---------- Frame handling ----------


def test_reassembles_tool_call_arguments_across_frames():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener)

    parser.feed(FIRST_CHUNK)
    parser.feed(SECOND_CHUNK + DONE)
    turn = parser.finish()

    assert len(turn.tool_calls) == 1
    call = turn.tool_calls[0]
    assert call.id == "c1"
    assert call.function.name == "read_file"
    assert call.function.arguments == '{"filePath":"x"}'
    assert json.loads(call.function.arguments) == {"filePath": "x"}
    assert len(listener.updates()) == 2


def test_line_split_across_chunk_boundary():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener)
    frame = content_frame("Hello") + content_frame(" world")

    for i in range(0, len(frame), 7):
        parser.feed(frame[i : i + 7])
    turn = parser.finish()

    assert turn.content == "Hello world"
    assert [content for content, _ in listener.updates()] == ["Hello", "Hello world"]


def test_malformed_frame_is_skipped():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener)

    parser.feed(content_frame("a") + "data: {not json\n" + content_frame("b") + DONE)

    assert parser.finish().content == "ab"


def test_error_frame_raises():
    parser = StreamingCompletionParser(RecordingListener())
    parser.feed(content_frame("partial"))

    with pytest.raises(StreamFrameError, match="rate limited"):
        parser.feed('data: {"error": {"message": "rate limited"}}\n')


def test_error_frame_is_an_mcp_error():
    parser = StreamingCompletionParser(RecordingListener())
    with pytest.raises(McpError):
        parser.feed('data: {"error": "upstream exploded"}\n')


def test_sparse_tool_call_indices():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener)

    parser.feed(
        'data: {"choices":[{"delta":{"tool_calls":[{"index":2,"id":"c2","function":'
        '{"name":"load_skill","arguments":"{}"}}]}}]}\n'
    )
    parser.feed(
        'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"function":'
        '{"name":"brave_search","arguments":"{\\"query\\":\\"q\\"}"}}]}}]}\n'
    )
    turn = parser.finish()

    assert [c.function.name for c in turn.tool_calls] == ["brave_search", "load_skill"]
    assert turn.tool_calls[0].id.startswith("call_")
    assert turn.tool_calls[0].id.endswith("_0")
    assert turn.tool_calls[1].id == "c2"


def test_empty_delta_does_not_notify():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener)

    parser.feed('data: {"choices":[{"delta":{"role":"assistant"}}]}\n')
    parser.feed(": keep-alive\n\n")
    parser.feed(content_frame("hi"))

    assert listener.updates() == [("hi", None)]


def test_unterminated_last_line_is_flushed_on_finish():
    parser = StreamingCompletionParser(RecordingListener())
    parser.feed(content_frame("a") + content_frame("b").rstrip("\n"))

    assert parser.content == "a"
    assert parser.finish().content == "ab"


def test_name_arriving_in_later_fragment_is_kept():
    parser = StreamingCompletionParser(RecordingListener())
    parser.feed('data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"c9"}]}}]}\n')
    parser.feed(
        'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"function":'
        '{"name":"read_file","arguments":"{}"}}]}}]}\n'
    )

    call = parser.finish().tool_calls[0]
    assert call.function.name == "read_file"
    assert call.function.arguments == "{}"


# ---------- Metrics ----------


def test_metrics_ttft_live_rate_and_final_values():
    clock = FakeClock()
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener, track_metrics=True, clock=clock)

    clock.t = 0.2
    parser.feed(content_frame("Hel"))
    clock.t = 0.7
    parser.feed(content_frame("lo"))
    clock.t = 1.2
    parser.finish()

    assert listener.metrics[0].ttft == pytest.approx(200.0)
    live = listener.metrics[1]
    assert live.total_tokens == 2
    assert live.tokens_per_sec == pytest.approx(4.0)

    final = listener.metrics[-1]
    assert final.total_latency == pytest.approx(1200.0)
    assert final.tokens_per_sec == pytest.approx(2.0)
    assert final.total_tokens == 2


def test_metrics_without_tokens_use_elapsed_since_start():
    clock = FakeClock()
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener, track_metrics=True, clock=clock)

    clock.t = 0.5
    parser.feed(DONE)
    parser.finish()

    final = listener.metrics[-1]
    assert final.ttft is None
    assert final.total_latency == pytest.approx(500.0)
    assert final.tokens_per_sec == 0.0


def test_metrics_not_reported_when_tracking_disabled():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener, track_metrics=False)
    parser.feed(content_frame("x"))
    parser.finish()
    assert listener.metrics == []


# ---------- Non-streaming fallback ----------


def test_feed_completion_handles_non_streaming_body():
    listener = RecordingListener()
    parser = StreamingCompletionParser(listener, track_metrics=True)

    parser.feed_completion(
        {
            "choices": [
                {
                    "message": {
                        "content": "Let me look.",
                        "tool_calls": [
                            {
                                "id": "c1",
                                "type": "function",
                                "function": {"name": "read_file", "arguments": {"filePath": "x"}},
                            }
                        ],
                    }
                }
            ],
            "usage": {"completion_tokens": 7},
        }
    )
    turn = parser.finish()

    assert turn.content == "Let me look."
    assert json.loads(turn.tool_calls[0].function.arguments) == {"filePath": "x"}
    assert len(listener.updates()) == 1
    assert listener.metrics[-1].total_tokens == 7


def test_feed_completion_error_raises():
    parser = StreamingCompletionParser(RecordingListener())
    with pytest.raises(StreamFrameError):
        parser.feed_completion({"error": {"message": "model not loaded"}})


# ---------- stream_assistant_response ----------


class FakeLLMClient:
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.payloads: list[dict[str, Any]] = []

    def build_payload(self, **kwargs: Any) -> dict[str, Any]:
        return kwargs

    @asynccontextmanager
    async def stream_chat_completion(self, payload: dict[str, Any]):
        self.payloads.append(payload)
        yield self.response


async def test_stream_assistant_response_sse_body():
    body = (content_frame("Hi") + FIRST_CHUNK + SECOND_CHUNK + DONE).encode()
    client = FakeLLMClient(
        httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)
    )
    listener = RecordingListener()
    tool = ToolDefinition(
        function=ToolFunctionDefinition(name="read_file", requires_confirmation=True)
    )

    turn = await stream_assistant_response(
        client, [], "m", [tool], listener, track_metrics=False, temperature=0.1, max_tokens=64
    )

    assert listener.events[0] == ("append_empty_assistant", None)
    assert turn.content == "Hi"
    assert turn.tool_calls[0].function.arguments == '{"filePath":"x"}'
    sent_tools = client.payloads[0]["tools"]
    assert "requires_confirmation" not in sent_tools[0]["function"]


async def test_stream_assistant_response_json_body():
    completion = {"choices": [{"message": {"content": "plain answer"}}]}
    client = FakeLLMClient(httpx.Response(200, json=completion))
    listener = RecordingListener()

    turn = await stream_assistant_response(
        client, [], "m", [], listener, track_metrics=False, temperature=0.7, max_tokens=16
    )

    assert turn.content == "plain answer"
    assert turn.tool_calls == []
    assert listener.updates() == [("plain answer", None)]
