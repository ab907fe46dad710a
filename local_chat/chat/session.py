"""
Chat Session

Interactive caller of the tool loop. Keeps two views of one conversation:
- ``transcript``: everything shown to the user, warnings included
- ``history``: what is sent back to the model on the next turn
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mcp import McpError

from local_chat.chat.models import (
    Message,
    Metrics,
    ToolCall,
    ToolConversationRequest,
    ToolDefinition,
)
from local_chat.chat.tool_loop import ToolExecutor, run_tool_conversation

if TYPE_CHECKING:
    from collections.abc import Callable

    from local_chat.clients.llm_client import LLMClient
    from local_chat.history.chat_store import ChatStore
    from local_chat.tools.event_logger import ToolEventLogger

logger = logging.getLogger(__name__)

SKILLS_PROMPT_TEMPLATE = (
    "You are a helpful AI assistant. You have access to the following skills "
    "(instructions) which you can read using the 'load_skill' tool:\n\n{skills}\n\n"
    "When a user asks you to do a task that matches one of these skills, ALWAYS use the "
    "'load_skill' tool to read its instructions before completing the task. "
    "Follow the instructions precisely."
)


def build_skills_prompt(skills: list[dict[str, str]]) -> str:
    """System prompt listing installed skills as ``- name: description`` lines."""
    if not skills:
        return ""
    lines = "\n".join(f"- {skill['name']}: {skill['description']}" for skill in skills)
    return SKILLS_PROMPT_TEMPLATE.format(skills=lines)


class ChatSession:
    """
    One user-facing conversation driven by ``run_tool_conversation``.

    Implements ``GenerationListener``. Metrics are reset at the start of each
    user turn. When the completion request fails, the in-progress assistant
    placeholder is removed and a single explanatory warning takes its place.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        model_name: str,
        tools: list[ToolDefinition] | None = None,
        loop_config: dict | None = None,
        system_prompt: str = "",
        skills: list[dict[str, str]] | None = None,
        event_logger: ToolEventLogger | None = None,
        on_update: Callable[[ChatSession], None] | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.model_name = model_name
        self.tools = tools or []
        self.loop_config = loop_config or {}
        self.system_prompt = system_prompt
        self.skills = skills or []
        self.event_logger = event_logger
        self.on_update = on_update

        self.transcript: list[Message] = []
        self.history: list[Message] = []
        self.metrics = Metrics()
        self._placeholder_index: int | None = None

    # ---------- GenerationListener ----------

    def _changed(self) -> None:
        if self.on_update:
            self.on_update(self)

    def append_empty_assistant(self) -> None:
        self.transcript.append(Message(role="assistant", content=""))
        self._placeholder_index = len(self.transcript) - 1
        self._changed()

    def update_last_assistant(self, content: str, tool_calls: list[ToolCall] | None) -> None:
        if not self.transcript:
            return
        last = self.transcript[-1]
        self.transcript[-1] = last.model_copy(
            update={"content": content, "tool_calls": list(tool_calls) if tool_calls else None}
        )
        self._changed()

    def append_message(self, message: Message) -> None:
        self.transcript.append(message)
        self._changed()

    def append_assistant_warning(self, content: str) -> None:
        self.transcript.append(Message(role="assistant", content=content))
        self._changed()

    def update_metrics(self, metrics: Metrics) -> None:
        self.metrics = metrics
        self._changed()

    # ---------- Turns ----------

    def _request_messages(self) -> list[Message]:
        """History behind one system message: configured prompt, then installed skills."""
        parts = [p for p in (self.system_prompt, build_skills_prompt(self.skills)) if p]
        if not parts:
            return list(self.history)
        return [Message(role="system", content="\n\n".join(parts)), *self.history]

    async def send(self, text: str) -> bool:
        """
        Run one user turn through the tool loop.

        Returns:
            True on success, False when the completion request failed (the
            transcript then ends with a warning explaining the failure).
        """
        user_message = Message(role="user", content=text.strip())
        self.transcript.append(user_message)
        self.history.append(user_message)
        self.metrics = Metrics()
        self._placeholder_index = None

        request = ToolConversationRequest(
            initial_conversation=self._request_messages(),
            model_name=self.model_name,
            tools=self.tools,
            **self.loop_config,
        )
        prefix = len(request.initial_conversation) - len(self.history)

        try:
            conversation = await run_tool_conversation(
                request,
                self.llm_client,
                self.tool_executor,
                listener=self,
                event_logger=self.event_logger,
            )
        except McpError as e:
            logger.error(f"Completion request failed: {e}")
            self._revert_placeholder()
            self.transcript.append(
                Message(
                    role="assistant",
                    content=(
                        f"⚠️ Error: {e}. Please check your endpoint: the model server must be "
                        "running and the selected model loaded."
                    ),
                )
            )
            self._changed()
            return False

        self.history = conversation[prefix:]
        return True

    def _revert_placeholder(self) -> None:
        index = self._placeholder_index
        if index is not None and index == len(self.transcript) - 1:
            self.transcript.pop()
        self._placeholder_index = None

    def reset(self) -> None:
        self.transcript.clear()
        self.history.clear()
        self.metrics = Metrics()

    # ---------- Persistence ----------

    def save(self, store: ChatStore, title: str | None = None) -> str:
        return store.save(self.transcript, title)

    def load(self, store: ChatStore, filename: str) -> bool:
        """
        Replace the session with a saved chat.

        Warnings are display-only and the model never saw them, so the
        restored history drops them.
        """
        chat = store.load(filename)
        if chat is None:
            return False
        self.transcript = list(chat.messages)
        self.history = [m for m in chat.messages if not _is_warning(m)]
        self.metrics = Metrics()
        return True


def _is_warning(message: Message) -> bool:
    return message.role == "assistant" and not message.tool_calls and message.content.startswith("⚠️")
