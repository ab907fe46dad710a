"""
Native (in-process) tools.

A small fixed registry of handlers keyed by exact tool name:
- read_file: read a UTF-8 file sandboxed to the project root
- brave_search: top web results from the Brave Search API
- load_skill: the SKILL.md instructions of an installed agent skill
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError

from local_chat.chat.models import ToolDefinition, ToolFunctionDefinition

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_RESULTS = 5
SKILL_FILE = "SKILL.md"

NATIVE_TOOL_DEFINITIONS: list[ToolDefinition] = [
    ToolDefinition(
        function=ToolFunctionDefinition(
            name="read_file",
            description="Read the contents of a file on the local file system.",
            parameters={
                "type": "object",
                "properties": {
                    "filePath": {
                        "type": "string",
                        "description": "The absolute or relative path to the file to read.",
                    }
                },
                "required": ["filePath"],
            },
        )
    ),
    ToolDefinition(
        function=ToolFunctionDefinition(
            name="brave_search",
            description=(
                "Search the web using the Brave Search API. Use this to find current "
                "information, news, or answer questions requiring internet access."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The search query."}
                },
                "required": ["query"],
            },
        )
    ),
    ToolDefinition(
        function=ToolFunctionDefinition(
            name="load_skill",
            description="Load the instructions (SKILL.md) for a specific agent skill.",
            parameters={
                "type": "object",
                "properties": {
                    "skillName": {
                        "type": "string",
                        "description": (
                            "The name of the skill to load "
                            "(e.g., 'vercel-react-best-practices')."
                        ),
                    }
                },
                "required": ["skillName"],
            },
        )
    ),
]


class NativeToolError(ValueError):
    """A native tool rejected its input or could not produce a result."""


class PathOutsideRootError(NativeToolError):
    def __init__(self) -> None:
        super().__init__("Path is outside the project root")


# ---------- Argument models ----------


class ReadFileArgs(BaseModel):
    filePath: str = Field(min_length=1)


class BraveSearchArgs(BaseModel):
    query: str = Field(min_length=1)


class LoadSkillArgs(BaseModel):
    skillName: str = Field(min_length=1)


def _argument_error(error: ValidationError) -> NativeToolError:
    """Turn the first validation failure into a short message (``filePath is required``)."""
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
    if first.get("type") in ("missing", "string_too_short", "string_type"):
        return NativeToolError(f"{field} is required")
    return NativeToolError(f"{field}: {first.get('msg')}")


def resolve_safe_path(project_root: str, input_path: str) -> str:
    """
    Resolve ``input_path`` against ``project_root`` and refuse escapes.

    ``..`` segments are collapsed and symlinks followed on both sides; anything
    that lands outside the root (including absolute paths elsewhere) raises
    ``PathOutsideRootError``.
    """
    root = os.path.realpath(project_root)
    resolved = os.path.realpath(os.path.join(root, os.path.normpath(input_path)))
    relative = os.path.relpath(resolved, root)
    if relative == os.pardir or relative.startswith(os.pardir + os.sep) or os.path.isabs(relative):
        raise PathOutsideRootError()
    return resolved


# ---------- Skills ----------

_FRONTMATTER_PATTERN = re.compile(r"^---\r?\n(.*?)\r?\n---", re.DOTALL)


def parse_skill_frontmatter(content: str) -> dict[str, str]:
    """Read ``name``/``description`` from a SKILL.md YAML frontmatter block."""
    parsed = {"name": "Unknown", "description": "No description found"}
    match = _FRONTMATTER_PATTERN.match(content)
    if not match:
        return parsed

    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.warning(f"Invalid skill frontmatter: {e}")
        return parsed

    if isinstance(data, dict):
        for key in ("name", "description"):
            value = data.get(key)
            if value is not None and str(value).strip():
                parsed[key] = str(value).strip()
    return parsed


def list_skills(skills_dir: str) -> list[dict[str, str]]:
    """List installed skills (directories that contain a SKILL.md), sorted by folder."""
    if not os.path.isdir(skills_dir):
        return []

    skills: list[dict[str, str]] = []
    for entry in sorted(os.listdir(skills_dir)):
        skill_md = os.path.join(skills_dir, entry, SKILL_FILE)
        if not os.path.isfile(skill_md):
            continue
        with open(skill_md, encoding="utf-8", errors="replace") as f:
            meta = parse_skill_frontmatter(f.read())
        skills.append({"id": entry, **meta})
    return skills


# ---------- Executor ----------

NativeHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class NativeToolExecutor:
    """In-process tool handlers keyed by exact tool name."""

    def __init__(
        self,
        project_root: str,
        skills_dir: str,
        brave_api_key: Callable[[], str | None] = lambda: None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.project_root = os.path.realpath(project_root)
        self.skills_dir = skills_dir
        self._brave_api_key = brave_api_key
        self._transport = transport
        self._handlers: dict[str, NativeHandler] = {
            "read_file": self._read_file,
            "brave_search": self._brave_search,
            "load_skill": self._load_skill,
        }

    def is_native_tool(self, tool_name: str) -> bool:
        return tool_name in self._handlers

    def list_tool_definitions(self) -> list[ToolDefinition]:
        return [d.model_copy(deep=True) for d in NATIVE_TOOL_DEFINITIONS]

    async def execute(self, tool_name: str, args: dict[str, Any] | None) -> dict[str, Any]:
        """
        Run a native tool.

        Raises:
            NativeToolError: unknown tool, invalid arguments or a failed lookup.
        """
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise NativeToolError(f"Unsupported native tool: {tool_name}")
        return await handler(args if isinstance(args, dict) else {})

    async def _read_file(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            parsed = ReadFileArgs.model_validate(args)
        except ValidationError as e:
            raise _argument_error(e) from e

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._read_file_sync, parsed.filePath))

    def _read_file_sync(self, file_path: str) -> dict[str, Any]:
        resolved = resolve_safe_path(self.project_root, file_path)
        if not os.path.exists(resolved):
            raise NativeToolError(f"File not found: {file_path}")
        if not os.path.isfile(resolved):
            raise NativeToolError(f"Path is not a file: {file_path}")

        with open(resolved, encoding="utf-8", errors="replace") as f:
            return {"content": f.read()}

    async def _brave_search(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            parsed = BraveSearchArgs.model_validate(args)
        except ValidationError as e:
            raise _argument_error(e) from e

        api_key = self._brave_api_key()
        if not api_key:
            raise NativeToolError("BRAVE_API_KEY is not set")

        headers = {"Accept": "application/json", "X-Subscription-Token": api_key}
        async with httpx.AsyncClient(transport=self._transport, timeout=20.0) as client:
            try:
                response = await client.get(
                    BRAVE_SEARCH_URL, params={"q": parsed.query}, headers=headers
                )
            except httpx.HTTPError as e:
                raise NativeToolError(f"Brave Search request failed: {e}") from e

        if response.status_code != 200:
            raise NativeToolError(f"Brave Search API error: {response.status_code}")

        data = response.json()
        raw_results = ((data.get("web") or {}).get("results") or [])[:BRAVE_MAX_RESULTS]
        return {
            "results": [
                {
                    "title": item.get("title"),
                    "url": item.get("url"),
                    "description": item.get("description"),
                }
                for item in raw_results
                if isinstance(item, dict)
            ]
        }

    async def _load_skill(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            parsed = LoadSkillArgs.model_validate(args)
        except ValidationError as e:
            raise _argument_error(e) from e

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._load_skill_sync, parsed.skillName))

    def _load_skill_sync(self, skill_name: str) -> dict[str, Any]:
        safe_name = os.path.basename(skill_name.rstrip("/\\"))
        skill_md = os.path.join(self.skills_dir, safe_name, SKILL_FILE)
        if safe_name in ("", os.curdir, os.pardir) or not os.path.isfile(skill_md):
            raise NativeToolError(f"Skill '{safe_name}' not found or has no SKILL.md")

        with open(skill_md, encoding="utf-8", errors="replace") as f:
            return {"content": f.read()}
