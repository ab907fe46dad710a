"""Clients package containing the LLM completion client."""

from __future__ import annotations

from .llm_client import LLMClient

__all__ = ["LLMClient"]
