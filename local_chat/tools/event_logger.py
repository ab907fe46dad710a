"""
Sanitizing Tool Event Logger

Append-only, sequence-numbered audit log of tool executions stored as JSONL
(``<project_root>/logs/tool-calls.jsonl``).

Features:
- Monotonic sequence numbers seeded from the highest value already on disk
- Secret redaction and size truncation for argument previews and results
- Deterministic key ordering, so identical content serializes identically
- Cross-process safe appends (fcntl lock + fsync)
- Filtered, newest-first listing; readers re-parse the whole file per query
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import threading
from datetime import UTC, datetime
from functools import partial
from typing import Any

from pydantic import BaseModel, ValidationError

from local_chat.chat.models import ToolExecutionEvent, ToolSource

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 8_000
MAX_ARRAY_LENGTH = 200
MAX_DEPTH = 8
DEFAULT_LIST_LIMIT = 100
REDACTED = "[REDACTED]"
MAX_DEPTH_MARKER = "[MAX_DEPTH_REACHED]"
SENSITIVE_KEY_PATTERNS = (
    "password",
    "secret",
    "token",
    "apikey",
    "api_key",
    "authorization",
    "cookie",
)
UNKNOWN_ERROR_MESSAGE = "Unknown tool execution error"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_KEY_PATTERNS)


def _truncate_text(value: str) -> str:
    """Shorten ``value`` so that text plus marker fits in ``MAX_STRING_LENGTH``."""
    omitted = len(value) - MAX_STRING_LENGTH
    # the marker length depends on the omitted count; two passes settle it
    for _ in range(2):
        marker = f"… [truncated {omitted} chars]"
        keep = MAX_STRING_LENGTH - len(marker)
        omitted = len(value) - keep
    marker = f"… [truncated {omitted} chars]"
    return value[: MAX_STRING_LENGTH - len(marker)] + marker


def sanitize_value(value: Any, depth: int = 0) -> Any:
    """
    Redact and bound a JSON-like value for logging.

    - Values of keys containing a sensitive pattern become ``[REDACTED]``
    - Strings and lists are truncated with a marker naming what was dropped;
      the output never exceeds the limits, so sanitizing twice is a no-op
    - Mapping keys are sorted
    - Anything nested deeper than ``MAX_DEPTH`` becomes ``[MAX_DEPTH_REACHED]``
    - Numbers, booleans and None pass through; other objects become ``str()``
    """
    if depth > MAX_DEPTH:
        return MAX_DEPTH_MARKER

    if value is None or isinstance(value, bool | int | float):
        return value

    if isinstance(value, str):
        return value if len(value) <= MAX_STRING_LENGTH else _truncate_text(value)

    if isinstance(value, BaseModel):
        return sanitize_value(value.model_dump(mode="json"), depth)

    if isinstance(value, list | tuple):
        if len(value) <= MAX_ARRAY_LENGTH:
            return [sanitize_value(item, depth + 1) for item in value]
        kept = MAX_ARRAY_LENGTH - 1
        sliced = [sanitize_value(item, depth + 1) for item in value[:kept]]
        sliced.append(f"[truncated {len(value) - kept} items]")
        return sliced

    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for key in sorted(value, key=str):
            name = str(key)
            sanitized[name] = REDACTED if is_sensitive_key(name) else sanitize_value(
                value[key], depth + 1
            )
        return sanitized

    return str(value)


def clone_json_safe(value: Any) -> Any:
    """Deep copy through JSON; unserializable input becomes ``{}``."""
    try:
        return json.loads(json.dumps(value, ensure_ascii=False))
    except (TypeError, ValueError) as e:
        logger.debug(f"Value is not JSON serializable, storing empty object: {e}")
        return {}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _duration_ms(started_at: str, ended: datetime) -> int:
    try:
        started = datetime.fromisoformat(started_at)
    except ValueError:
        return 0
    return int((ended - started).total_seconds() * 1000)


class EventFilters(BaseModel):
    """Filters accepted by ``ToolEventLogger.list_events``."""

    tool_name: str | None = None
    status: str | None = None
    server_id: str | None = None
    limit: int = DEFAULT_LIST_LIMIT


class ToolEventLogger:
    """
    Owner of the tool execution log and its sequence counter.

    Constructed once per process against a log path; the counter is seeded
    from the maximum ``sequence`` found in the existing log, so restarts
    never reuse a number.
    """

    def __init__(self, log_path: str):
        self.log_path = log_path
        self._sequence_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._ensure_log_file()
        self._sequence = max(
            (e.get("sequence") for e in self._read_raw() if isinstance(e.get("sequence"), int)),
            default=0,
        )
        logger.debug(f"Tool event log {self.log_path} seeded at sequence {self._sequence}")

    @classmethod
    def for_project(cls, project_root: str) -> ToolEventLogger:
        return cls(os.path.join(project_root, "logs", "tool-calls.jsonl"))

    @property
    def sequence(self) -> int:
        """Last sequence number handed out."""
        return self._sequence

    def _ensure_log_file(self) -> None:
        log_dir = os.path.dirname(self.log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        if not os.path.exists(self.log_path):
            with open(self.log_path, "a", encoding="utf-8"):
                pass

    def _read_raw(self) -> list[dict[str, Any]]:
        """Parse every line of the log; unparseable lines are skipped."""
        self._ensure_log_file()
        entries: list[dict[str, Any]] = []
        with open(self.log_path, encoding="utf-8") as f:
            for file_line in f:
                stripped_line = file_line.strip()
                if not stripped_line:
                    continue
                try:
                    data = json.loads(stripped_line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt line in {self.log_path}")
                    continue
                if isinstance(data, dict):
                    entries.append(data)
        return entries

    def _read_events(self) -> list[ToolExecutionEvent]:
        events: list[ToolExecutionEvent] = []
        for data in self._read_raw():
            try:
                events.append(ToolExecutionEvent.model_validate(data))
            except ValidationError as e:
                logger.warning(f"Skipping invalid tool event {data.get('id')!r}: {e}")
        return events

    # ---------- Event lifecycle ----------

    def start_event(
        self,
        tool_name: str,
        args: Any,
        source: ToolSource,
        server_id: str | None = None,
        server_name: str | None = None,
        mcp_tool_name: str | None = None,
        replay_of: str | None = None,
    ) -> ToolExecutionEvent:
        """Open a ``running`` event with the next sequence number."""
        with self._sequence_lock:
            self._sequence += 1
            sequence = self._sequence

        args = args if args is not None else {}
        cloned = clone_json_safe(args)
        return ToolExecutionEvent(
            id=f"tool_evt_{sequence}",
            sequence=sequence,
            source=source,
            tool_name=tool_name,
            mcp_tool_name=mcp_tool_name,
            server_id=server_id,
            server_name=server_name,
            replay_of=replay_of,
            args=cloned if isinstance(cloned, dict) else {},
            args_preview=sanitize_value(args),
            started_at=_iso(_utc_now()),
        )

    def finalize_success(self, event: ToolExecutionEvent, result: Any) -> ToolExecutionEvent:
        ended = _utc_now()
        return event.model_copy(
            update={
                "ended_at": _iso(ended),
                "duration_ms": _duration_ms(event.started_at, ended),
                "status": "success",
                "result": sanitize_value(result),
                "error_message": None,
            }
        )

    def finalize_error(
        self,
        event: ToolExecutionEvent,
        error_message: str | None,
        partial_result: Any = None,
    ) -> ToolExecutionEvent:
        ended = _utc_now()
        return event.model_copy(
            update={
                "ended_at": _iso(ended),
                "duration_ms": _duration_ms(event.started_at, ended),
                "status": "error",
                "result": sanitize_value(partial_result),
                "error_message": str(error_message or UNKNOWN_ERROR_MESSAGE),
            }
        )

    # ---------- Persistence ----------

    def _append_sync(self, event: ToolExecutionEvent) -> None:
        """Append one JSON line under an exclusive lock, then fsync."""
        line = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
        with self._write_lock, open(self.log_path, "a", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    async def persist(self, event: ToolExecutionEvent) -> ToolExecutionEvent:
        self._ensure_log_file()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, partial(self._append_sync, event))
        return event

    # ---------- Queries ----------

    def _list_events_sync(self, filters: EventFilters) -> list[ToolExecutionEvent]:
        events = self._read_events()

        tool_needle = (filters.tool_name or "").strip().lower()
        if tool_needle:
            events = [
                e
                for e in events
                if tool_needle in e.tool_name.lower()
                or tool_needle in (e.mcp_tool_name or "").lower()
            ]

        status_needle = (filters.status or "").strip().lower()
        if status_needle:
            events = [e for e in events if e.status.lower() == status_needle]

        server_needle = (filters.server_id or "").strip().lower()
        if server_needle:
            events = [e for e in events if server_needle in (e.server_id or "").lower()]

        events.sort(key=lambda e: e.sequence, reverse=True)
        limit = filters.limit if filters.limit > 0 else DEFAULT_LIST_LIMIT
        return events[:limit]

    async def list_events(
        self, filters: EventFilters | None = None, **kwargs: Any
    ) -> list[ToolExecutionEvent]:
        """
        List persisted events, newest first.

        Filters: ``tool_name`` (substring of the tool or MCP tool name),
        ``status`` (exact), ``server_id`` (substring), all case-insensitive,
        and ``limit`` (default 100).
        """
        filters = filters or EventFilters(**kwargs)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._list_events_sync, filters))

    def _get_event_by_id_sync(self, event_id: str) -> ToolExecutionEvent | None:
        return next((e for e in self._read_events() if e.id == event_id), None)

    async def get_event_by_id(self, event_id: str) -> ToolExecutionEvent | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._get_event_by_id_sync, event_id))
