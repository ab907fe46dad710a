"""
Main application entry points - interactive chat REPL and the tool server,
both with graceful shutdown handling.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from mcp import McpError

from local_chat.chat.logging_utils import configure_logging
from local_chat.chat.models import Message
from local_chat.chat.session import ChatSession
from local_chat.chat.tool_loop import ToolExecutor
from local_chat.clients.llm_client import LLMClient
from local_chat.config import Configuration
from local_chat.history.chat_store import ChatStore, ChatStoreError
from local_chat.mcp_client.registry import McpServerRegistry
from local_chat.tool_server import ToolServer
from local_chat.tools.event_logger import EventFilters, ToolEventLogger
from local_chat.tools.native import NativeToolExecutor, list_skills
from local_chat.tools.remote import RemoteToolExecutor
from local_chat.tools.router import ToolRouter

# Configure logging for the application
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

HELP_TEXT = """Commands:
  /tools            list available tools
  /models           list models offered by the endpoint
  /profile [name]   show profiles or switch the generation profile
  /events [N]       show the last N tool executions
  /replay <id>      re-run a logged tool execution
  /save [title]     save this chat
  /chats            list saved chats
  /load <file>      load a saved chat
  /reset            start a new chat
  /quit             exit"""


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """Re-apply logging settings when the override file changes."""
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            configure_logging(logging_config)
            logging.info("🔄 Logging configuration updated in real-time")
    except Exception as e:
        logging.error(f"❌ Failed to update logging configuration: {e}")


def _load_configuration() -> Configuration:
    config = Configuration()
    configure_logging(config.get_logging_config())
    config.subscribe_to_changes(_on_logging_config_change)
    return config


def build_tool_router(config: Configuration) -> ToolRouter:
    """Wire native tools, the MCP registry and the audit log into a router."""
    paths = config.get_paths()
    native = NativeToolExecutor(
        project_root=paths["project_root"],
        skills_dir=paths["skills_dir"],
        brave_api_key=lambda: config.brave_api_key,
    )
    return ToolRouter(
        native=native,
        registry=McpServerRegistry(paths["mcp_config_path"]),
        event_logger=ToolEventLogger(paths["tool_log_path"]),
        connection_config=config.get_mcp_connection_config(),
    )


def _install_shutdown_handler(shutdown_event: asyncio.Event) -> None:
    def signal_handler() -> None:
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)


async def _run_until_shutdown(coro: Any, shutdown_event: asyncio.Event) -> None:
    main_task = asyncio.create_task(coro)
    done, pending = await asyncio.wait(
        [main_task, asyncio.create_task(shutdown_event.wait())],
        return_when=asyncio.FIRST_COMPLETED,
    )
    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    if main_task in done:
        exception = main_task.exception()
        if exception is not None:
            raise exception


# ---------- Tool server ----------


async def serve_tools() -> None:
    """Run the tool execution server until a shutdown signal arrives."""
    config = _load_configuration()
    server_config = config.get_tool_server_config()
    server = ToolServer(
        router=build_tool_router(config),
        chat_store=ChatStore(config.get_paths()["chats_dir"]),
        tool_api_key=config.tool_api_key,
        host=server_config["host"],
        port=server_config["port"],
    )
    if not config.tool_api_key:
        logging.warning("TOOL_API_KEY is not set; tool endpoints accept unauthenticated calls")

    shutdown_event = asyncio.Event()
    _install_shutdown_handler(shutdown_event)
    try:
        await _run_until_shutdown(server.start_server(), shutdown_event)
    finally:
        logging.info("Tool server shutdown complete")


# ---------- Interactive chat ----------


def _print_message(message: Message) -> None:
    if message.role == "tool":
        event = message.tool_event
        status = event.status if event else "unknown"
        print(f"  [{message.name}] {status}: {message.content[:200]}")
    elif message.role == "assistant":
        if message.content:
            print(f"\nassistant> {message.content}")
        for call in message.tool_calls or []:
            print(f"  → {call.function.name}({call.function.arguments})")


def _print_metrics(session: ChatSession) -> None:
    m = session.metrics
    if m.ttft is None:
        return
    print(
        f"  ttft {m.ttft:.0f}ms · {m.tokens_per_sec or 0:.1f} tok/s · "
        f"{m.total_tokens} tokens · {m.total_latency or 0:.0f}ms"
    )


def _switch_profile(session: ChatSession, config: Configuration, name: str) -> None:
    if not name:
        for profile_name, settings in config.get_profiles().items():
            label = settings.get("label", profile_name)
            print(f"  {profile_name}  {label}")
        return
    try:
        session.loop_config = config.get_tool_loop_config(name)
    except ValueError as e:
        print(f"Cannot switch profile: {e}")
        return
    print(f"Profile {name}: tools {'on' if session.loop_config['tools_enabled'] else 'off'}.")


async def _handle_command(
    line: str,
    session: ChatSession,
    router: ToolRouter | None,
    store: ChatStore,
    config: Configuration,
) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    command, _, argument = line.partition(" ")
    argument = argument.strip()

    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        print(HELP_TEXT)
    elif command == "/reset":
        session.reset()
        print("Started a new chat.")
    elif command == "/tools":
        for tool in session.tools:
            flag = " (requires confirmation)" if tool.function.requires_confirmation else ""
            print(f"  {tool.name}{flag}: {tool.function.description[:80]}")
    elif command == "/models":
        try:
            models = await session.llm_client.list_models()
        except McpError as e:
            print(f"Cannot list models: {e}")
            return True
        for model in models:
            marker = "*" if model["id"] == session.model_name else " "
            print(f" {marker} {model['id']}  {model['name']}")
    elif command == "/profile":
        _switch_profile(session, config, argument)
    elif command == "/save":
        print(f"Saved as {session.save(store, argument or None)}")
    elif command == "/chats":
        for chat in store.list_chats():
            print(f"  {chat.filename}  {chat.title}")
    elif command == "/load":
        try:
            loaded = session.load(store, argument)
        except ChatStoreError as e:
            print(f"Cannot load chat: {e}")
            return True
        print(f"Loaded {argument}." if loaded else f"No saved chat named {argument}.")
    elif command in ("/events", "/replay") and router is None:
        print("Tool events are only available with in-process tools.")
    elif command == "/events":
        limit = int(argument) if argument.isdigit() else 10
        for event in await router.list_events(EventFilters(limit=limit)):
            print(f"  {event.id}  {event.status:<7} {event.tool_name}  {event.duration_ms}ms")
    elif command == "/replay":
        response = await router.replay(argument)
        if response is None:
            print(f"No event {argument}.")
        else:
            print(f"  {response.event.id} {response.event.status}: {response.result}")
    else:
        print(f"Unknown command {command}. Type /help.")
    return True


async def chat_main(tool_server_url: str | None = None) -> None:
    """Interactive chat loop on stdin/stdout."""
    config = _load_configuration()
    paths = config.get_paths()
    store = ChatStore(paths["chats_dir"])
    loop_config = config.get_tool_loop_config()

    router: ToolRouter | None = None
    remote: RemoteToolExecutor | None = None
    tool_executor: ToolExecutor
    if tool_server_url:
        remote = RemoteToolExecutor(tool_server_url, api_key=config.tool_api_key)
        tool_executor = remote
        tools = await remote.list_tool_definitions()
        skills = await remote.list_skills()
    else:
        router = build_tool_router(config)
        tool_executor = router
        tools = await router.list_tool_definitions()
        skills = list_skills(paths["skills_dir"])

    async with LLMClient(config) as llm_client:
        session = ChatSession(
            llm_client,
            tool_executor,
            model_name=llm_client.config.get("model", ""),
            tools=tools,
            loop_config=loop_config,
            system_prompt=config.get_system_prompt(),
            skills=skills,
            event_logger=router.event_logger if router else None,
        )
        print(
            f"Model {session.model_name} · profile {config.active_profile} · "
            f"{len(tools)} tools · {len(skills)} skills · /help for commands"
        )

        try:
            while True:
                try:
                    line = (await asyncio.to_thread(input, "\nyou> ")).strip()
                except EOFError:
                    break
                if not line:
                    continue
                if line.startswith("/"):
                    if not await _handle_command(line, session, router, store, config):
                        break
                    continue

                start = len(session.transcript)
                await session.send(line)
                for message in session.transcript[start + 1 :]:
                    _print_message(message)
                _print_metrics(session)
        finally:
            if remote:
                await remote.close()
            logging.info("Chat session closed")


def cli_main() -> None:
    """Synchronous CLI entrypoint for the interactive chat."""
    parser = argparse.ArgumentParser(description="Local chat with tool calling")
    parser.add_argument(
        "--tool-server",
        metavar="URL",
        help="execute tools through a running tool server instead of in-process",
    )
    args = parser.parse_args()
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(chat_main(args.tool_server))


def serve_tools_cli() -> None:
    """Synchronous entrypoint for the tool server."""
    asyncio.run(serve_tools())


if __name__ == "__main__":
    cli_main()
