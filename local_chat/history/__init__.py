"""
Chat History Module

Saved-chat persistence.
"""

from __future__ import annotations

from .chat_store import ChatStore, ChatStoreError, ChatSummary, SavedChat

__all__ = ["ChatStore", "ChatStoreError", "ChatSummary", "SavedChat"]
