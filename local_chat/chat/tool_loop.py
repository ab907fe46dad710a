"""
Tool-Augmented Conversation Loop

Drives rounds of: stream one assistant turn → run its tool calls → feed the
results back, until the model stops asking for tools or a safety limit trips.

Safety bounds:
- max_rounds: tool-invoking assistant turns per user message
- max_tool_calls_per_message: calls executed from a single assistant turn
- requires_confirmation: tools that are never executed automatically

Tool failures never stop the loop; they become tool messages the model can
react to. A failure of the completion request itself propagates.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from local_chat.chat.listener import GenerationListener, NullListener
from local_chat.chat.logging_utils import log_tool_args_error, log_tool_execution_start
from local_chat.chat.models import (
    MCP_TOOL_PREFIX,
    Message,
    ToolCall,
    ToolConversationRequest,
    ToolExecutionEvent,
    ToolExecutionResponse,
    ToolFunctionDefinition,
    ToolSource,
)
from local_chat.chat.streaming_parser import stream_assistant_response

if TYPE_CHECKING:
    from local_chat.clients.llm_client import LLMClient
    from local_chat.tools.event_logger import ToolEventLogger

logger = logging.getLogger(__name__)

CONFIRMATION_REQUIRED_MESSAGE = "Tool requires user confirmation. Skipped."
CONFIRMATION_REQUIRED_CODE = "REQUIRES_CONFIRMATION"
UNKNOWN_TOOL_ERROR = "Unknown tool execution error"


class ToolExecutor(Protocol):
    """Anything that can run a named tool: the in-process router or the HTTP client."""

    async def execute(self, tool_name: str, args: dict[str, Any]) -> ToolExecutionResponse: ...


def round_limit_warning(max_rounds: int) -> str:
    return f"⚠️ Tool loop stopped after {max_rounds} rounds to prevent runaway execution."


def call_cap_warning(cap: int, requested: int) -> str:
    return f"⚠️ Capped at {cap} tool calls per message (model requested {requested})."


def _tool_source(tool_name: str) -> ToolSource:
    return "mcp" if tool_name.startswith(MCP_TOOL_PREFIX) else "native"


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def create_client_side_tool_error_event(
    tool_name: str, args: dict[str, Any], error_message: str
) -> ToolExecutionEvent:
    """Terminal error event for a failure that never reached a tool backend."""
    now = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return ToolExecutionEvent(
        id=f"client_error_{int(time.time() * 1000)}",
        sequence=-1,
        source=_tool_source(tool_name),
        tool_name=tool_name,
        args=args,
        started_at=now,
        ended_at=now,
        duration_ms=0,
        status="error",
        error_message=error_message,
        result={"error": error_message},
    )


def parse_tool_arguments(call: ToolCall) -> dict[str, Any]:
    """Parse the accumulated argument string once; anything but a JSON object is ``{}``."""
    try:
        parsed = json.loads(call.function.arguments or "{}")
    except json.JSONDecodeError as e:
        log_tool_args_error(call.function.name, e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def _confirmation_skip_event(
    tool_name: str, args: dict[str, Any], event_logger: ToolEventLogger | None
) -> ToolExecutionEvent:
    if event_logger is None:
        return create_client_side_tool_error_event(tool_name, args, CONFIRMATION_REQUIRED_MESSAGE)

    event = event_logger.start_event(tool_name, args, _tool_source(tool_name))
    return await event_logger.persist(
        event_logger.finalize_error(
            event, CONFIRMATION_REQUIRED_MESSAGE, {"code": CONFIRMATION_REQUIRED_CODE}
        )
    )


async def _run_tool_call(
    call: ToolCall,
    args: dict[str, Any],
    definition: ToolFunctionDefinition | None,
    tool_executor: ToolExecutor,
    event_logger: ToolEventLogger | None,
) -> Message:
    tool_name = call.function.name

    if definition is not None and definition.requires_confirmation:
        logger.warning("Tool %s requires confirmation; not executed", tool_name)
        event = await _confirmation_skip_event(tool_name, args, event_logger)
        return Message(
            role="tool",
            tool_call_id=call.id,
            name=tool_name,
            content=_to_json(
                {"error": CONFIRMATION_REQUIRED_MESSAGE, "code": CONFIRMATION_REQUIRED_CODE}
            ),
            tool_event=event,
        )

    try:
        execution = await tool_executor.execute(tool_name, args)
    except Exception as e:
        error_message = str(e) or UNKNOWN_TOOL_ERROR
        logger.error("Tool %s failed before producing a result: %s", tool_name, error_message)
        execution = ToolExecutionResponse(
            event=create_client_side_tool_error_event(tool_name, args, error_message),
            result={"error": error_message},
        )

    return Message(
        role="tool",
        tool_call_id=call.id,
        name=tool_name,
        content=_to_json(execution.result),
        tool_event=execution.event,
    )


def _keep_executed_calls(
    conversation: list[Message], listener: GenerationListener, executed: list[ToolCall]
) -> None:
    """
    Rewrite the last assistant turn to list only the calls that will run.

    Every ``tool_calls`` entry must be answered by a tool message before the
    next request, so calls dropped by a safety limit are removed from the turn.
    """
    turn = conversation[-1]
    conversation[-1] = turn.model_copy(update={"tool_calls": list(executed) or None})
    listener.update_last_assistant(turn.content, list(executed) or None)


async def run_tool_conversation(
    request: ToolConversationRequest,
    llm_client: LLMClient,
    tool_executor: ToolExecutor,
    listener: GenerationListener | None = None,
    event_logger: ToolEventLogger | None = None,
) -> list[Message]:
    """
    Run the tool loop for one user message.

    Args:
        request: Conversation so far plus model, tools and loop limits
        llm_client: Completion endpoint client
        tool_executor: Backend that runs non-gated tool calls
        listener: Receives placeholder, turn, message, warning and metric updates
        event_logger: Audit log for confirmation-gated skips; without one a
            client-side event is attached instead

    Returns:
        The model-visible conversation: the initial messages followed by every
        assistant turn and tool message produced. Warnings go to the listener
        only, so tool messages always directly follow their assistant turn.

    Raises:
        McpError: the completion request failed or the stream carried an error.
    """
    listener = listener or NullListener()
    tools = request.active_tools()
    definitions = {tool.name: tool.function for tool in request.tools}

    conversation = list(request.initial_conversation)
    rounds = 0

    while True:
        turn = await stream_assistant_response(
            llm_client,
            conversation,
            request.model_name,
            tools,
            listener,
            track_metrics=rounds == 0,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        conversation.append(turn.to_message())

        if not turn.tool_calls:
            break

        rounds += 1
        if rounds > request.max_rounds:
            logger.warning("Tool loop stopped after %d rounds", request.max_rounds)
            _keep_executed_calls(conversation, listener, [])
            listener.append_assistant_warning(round_limit_warning(request.max_rounds))
            break

        calls_to_run = turn.tool_calls
        if len(calls_to_run) > request.max_tool_calls_per_message:
            logger.warning(
                "Model requested %d tool calls; running the first %d",
                len(calls_to_run),
                request.max_tool_calls_per_message,
            )
            calls_to_run = calls_to_run[: request.max_tool_calls_per_message]
            _keep_executed_calls(conversation, listener, calls_to_run)
            listener.append_assistant_warning(
                call_cap_warning(request.max_tool_calls_per_message, len(turn.tool_calls))
            )

        for i, call in enumerate(calls_to_run):
            log_tool_execution_start(call.function.name, i, len(calls_to_run))
            args = parse_tool_arguments(call)
            message = await _run_tool_call(
                call,
                args,
                definitions.get(call.function.name),
                tool_executor,
                event_logger,
            )
            conversation.append(message)
            listener.append_message(message)

    return conversation
