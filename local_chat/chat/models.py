"""
Chat Data Models

Data structures shared by the generation loop, the tool router and the
audit log: conversation messages, tool call wire types, tool definitions,
execution events and generation metrics.
All strongly typed with Pydantic for validation and serialization.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "assistant", "system", "tool"]
ToolSource = Literal["native", "mcp"]
ToolStatus = Literal["running", "success", "error"]

MCP_TOOL_PREFIX = "mcp."


# ==============================================================================
# TOOL CALLS (LLM API Types)
# ==============================================================================


class FunctionCall(BaseModel):
    """Function call within a tool call."""

    name: str = ""
    # JSON string, accumulated verbatim while streaming
    arguments: str = ""


class ToolCall(BaseModel):
    """Tool call requested by the model."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


# ==============================================================================
# TOOL DEFINITIONS
# ==============================================================================


class ToolFunctionDefinition(BaseModel):
    """Function schema advertised to the model."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    requires_confirmation: bool | None = None


class ToolDefinition(BaseModel):
    """Complete tool definition in OpenAI function-calling format."""

    type: Literal["function"] = "function"
    function: ToolFunctionDefinition

    @property
    def name(self) -> str:
        return self.function.name

    def to_api_dict(self) -> dict[str, Any]:
        """Wire format for the completion endpoint.

        ``requires_confirmation`` is a client-side gate and is not sent.
        """
        return self.model_dump(exclude_none=True, exclude={"function": {"requires_confirmation"}})


# ==============================================================================
# TOOL EXECUTION AUDIT
# ==============================================================================


class ToolExecutionEvent(BaseModel):
    """Audit record of one tool execution.

    Created with ``status="running"``, finalized exactly once, then appended
    to the JSONL log. Unknown fields from newer log lines are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    sequence: int
    source: ToolSource
    tool_name: str
    mcp_tool_name: str | None = None
    server_id: str | None = None
    server_name: str | None = None
    replay_of: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    args_preview: Any = None
    started_at: str
    ended_at: str | None = None
    duration_ms: int | None = None
    status: ToolStatus = "running"
    error_message: str | None = None
    result: Any = None


class ToolExecutionResponse(BaseModel):
    """Outcome of one routed tool execution."""

    event: ToolExecutionEvent
    result: Any = None


# ==============================================================================
# CONVERSATION MESSAGES
# ==============================================================================


class Message(BaseModel):
    """One turn in a conversation."""

    role: Role
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_event: ToolExecutionEvent | None = None

    @model_validator(mode="after")
    def _tool_messages_reference_a_call(self) -> Message:
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        return self

    def to_api_dict(self) -> dict[str, Any]:
        """Wire format for the completion endpoint (audit record stripped)."""
        return self.model_dump(exclude_none=True, exclude={"tool_event"})


class AssistantTurn(BaseModel):
    """Assistant output reconstructed from one completion request."""

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)

    def to_message(self) -> Message:
        return Message(
            role="assistant",
            content=self.content,
            tool_calls=list(self.tool_calls) or None,
        )


# ==============================================================================
# STREAMING MODELS
# ==============================================================================


class FunctionCallDelta(BaseModel):
    """Partial function call data in streaming response."""

    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    """Partial tool call data in streaming response."""

    index: int | None = None
    id: str | None = None
    type: str | None = None
    function: FunctionCallDelta | None = None


class StreamingDelta(BaseModel):
    """Delta content in streaming response."""

    model_config = ConfigDict(extra="allow")

    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None


# ==============================================================================
# METRICS AND REQUESTS
# ==============================================================================


class Metrics(BaseModel):
    """Client-side generation telemetry (milliseconds / tokens per second)."""

    ttft: float | None = None
    tokens_per_sec: float | None = None
    total_tokens: int = 0
    total_latency: float | None = None


class ToolConversationRequest(BaseModel):
    """Parameters of one tool-augmented generation run."""

    initial_conversation: list[Message]
    model_name: str
    tools: list[ToolDefinition] = Field(default_factory=list)
    max_rounds: int = Field(default=3, ge=0)
    max_tool_calls_per_message: int = Field(default=10, ge=1)
    temperature: float = 0.7
    max_tokens: int = Field(default=4096, ge=1)
    tools_enabled: bool = True

    def active_tools(self) -> list[ToolDefinition]:
        return list(self.tools) if self.tools_enabled and self.tools else []
