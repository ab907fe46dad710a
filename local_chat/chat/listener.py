"""
Generation Listener

Observer interface through which the generation loop reports progress to
its caller. The loop never assumes what renders these updates.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Message, Metrics, ToolCall


@runtime_checkable
class GenerationListener(Protocol):
    """Receives discrete turn updates from the tool-augmented loop."""

    def append_empty_assistant(self) -> None: ...

    def update_last_assistant(self, content: str, tool_calls: list[ToolCall] | None) -> None: ...

    def append_message(self, message: Message) -> None: ...

    def append_assistant_warning(self, content: str) -> None: ...

    def update_metrics(self, metrics: Metrics) -> None: ...


class NullListener:
    """Listener that ignores every update."""

    def append_empty_assistant(self) -> None:
        pass

    def update_last_assistant(self, content: str, tool_calls: list[ToolCall] | None) -> None:
        pass

    def append_message(self, message: Message) -> None:
        pass

    def append_assistant_warning(self, content: str) -> None:
        pass

    def update_metrics(self, metrics: Metrics) -> None:
        pass
