"""
Local Chat

Local-first chat core: streams completions from an OpenAI-compatible
endpoint, runs native and MCP tools on the model's behalf, and keeps an
audit log of every tool execution.
"""

__version__ = "0.1.0"
