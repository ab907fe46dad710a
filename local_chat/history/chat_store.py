"""
Saved Chat Storage

One JSON file per saved conversation: ``{"messages", "title", "timestamp"}``
named ``<safe-timestamp>_<safe-title>.json`` inside the chats directory.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from local_chat.chat.models import Message

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Chat"


class ChatStoreError(ValueError):
    """Invalid chat filename or unreadable chat file."""


class SavedChat(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    title: str | None = None
    timestamp: str | None = None


class ChatSummary(BaseModel):
    filename: str
    title: str
    timestamp: str


def _safe_title(title: str | None) -> str:
    return re.sub(r"[^a-z0-9]", "_", (title or "chat"), flags=re.IGNORECASE).lower()


class ChatStore:
    """Directory of saved chats."""

    def __init__(self, chats_dir: str):
        self.chats_dir = chats_dir
        os.makedirs(self.chats_dir, exist_ok=True)

    def _path_for(self, filename: str) -> str:
        safe = os.path.basename(filename)
        if safe != filename or not safe.endswith(".json"):
            raise ChatStoreError("Invalid filename")
        return os.path.join(self.chats_dir, safe)

    def save(self, messages: list[Message], title: str | None = None) -> str:
        """Write a chat file and return its filename."""
        timestamp = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        filename = f"{re.sub(r'[:.]', '-', timestamp)}_{_safe_title(title)}.json"

        chat = SavedChat(messages=messages, title=title, timestamp=timestamp)
        with open(os.path.join(self.chats_dir, filename), "w", encoding="utf-8") as f:
            json.dump(chat.model_dump(mode="json", exclude_none=True), f, indent=2, ensure_ascii=False)

        logger.info(f"Saved chat {filename} ({len(messages)} messages)")
        return filename

    def list_chats(self) -> list[ChatSummary]:
        """Summaries of readable chat files, newest first."""
        summaries: list[ChatSummary] = []
        for filename in os.listdir(self.chats_dir):
            if not filename.endswith(".json"):
                continue
            path = os.path.join(self.chats_dir, filename)
            try:
                with open(path, encoding="utf-8") as f:
                    data: dict[str, Any] = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable chat file {filename}: {e}")
                continue

            timestamp = data.get("timestamp") or datetime.fromtimestamp(
                os.path.getmtime(path), UTC
            ).isoformat()
            summaries.append(
                ChatSummary(
                    filename=filename,
                    title=data.get("title") or DEFAULT_TITLE,
                    timestamp=str(timestamp),
                )
            )

        summaries.sort(key=lambda s: s.timestamp, reverse=True)
        return summaries

    def load(self, filename: str) -> SavedChat | None:
        """
        Load a saved chat by filename.

        Raises:
            ChatStoreError: the name has a path component, is not ``.json``,
                or the file does not hold a valid chat.
        """
        path = self._path_for(filename)
        if not os.path.exists(path):
            return None

        try:
            with open(path, encoding="utf-8") as f:
                return SavedChat.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ChatStoreError(f"Invalid chat file {filename}: {e}") from e
