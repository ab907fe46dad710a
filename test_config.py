#!/usr/bin/env python3
"""Tests for layered configuration loading."""

from __future__ import annotations

import os

import pytest

from local_chat.config import CONFIG_ENV_VAR, Configuration


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (CONFIG_ENV_VAR, "OPENROUTER_API_KEY", "LOCAL_LLM_API_KEY", "TOOL_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(Configuration, "load_env", staticmethod(lambda: None))


def write_override(path, text: str, mtime: float | None = None) -> str:
    path.write_text(text)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)


def test_defaults_use_local_provider():
    config = Configuration()

    llm = config.get_llm_config()
    assert llm["provider"] == "local"
    assert llm["base_url"] == "http://localhost:8080/v1"
    assert config.llm_api_key == ""
    assert config.get_tool_loop_config() == {
        "max_rounds": 3,
        "max_tool_calls_per_message": 10,
        "temperature": 0.7,
        "max_tokens": 4096,
        "tools_enabled": True,
    }
    assert config.get_mcp_connection_config() == {
        "connect_timeout": 10.0,
        "operation_timeout": 30.0,
    }


def test_override_is_deep_merged(tmp_path):
    override = write_override(
        tmp_path / "override.yaml",
        "chat:\n  tool_loop:\n    max_rounds: 5\n  system_prompt: Be brief.\n",
    )

    config = Configuration(override)

    loop = config.get_tool_loop_config()
    assert loop["max_rounds"] == 5
    assert loop["max_tool_calls_per_message"] == 10
    assert config.get_system_prompt() == "Be brief."


def test_override_path_from_environment(tmp_path, monkeypatch):
    override = write_override(tmp_path / "env.yaml", "tool_server:\n  port: 4100\n")
    monkeypatch.setenv(CONFIG_ENV_VAR, override)

    assert Configuration().get_tool_server_config() == {"host": "localhost", "port": 4100}


@pytest.mark.parametrize(
    "yaml_text, message",
    [
        ("chat:\n  tool_loop:\n    max_rounds: 0\n", "max_rounds must be a positive integer"),
        (
            "chat:\n  tool_loop:\n    max_tool_calls_per_message: -1\n",
            "max_tool_calls_per_message must be a positive integer",
        ),
        ("mcp:\n  connection:\n    connect_timeout: 0\n", "connect_timeout must be positive"),
    ],
)
def test_invalid_limits_are_rejected(tmp_path, yaml_text, message):
    config = Configuration(write_override(tmp_path / "bad.yaml", yaml_text))
    with pytest.raises(ValueError, match=message):
        if "connection" in yaml_text:
            config.get_mcp_connection_config()
        else:
            config.get_tool_loop_config()


def test_default_profiles():
    config = Configuration()

    assert config.active_profile == "default"
    assert sorted(config.get_profiles()) == ["accurate", "default", "fast", "no-tools", "vision"]

    fast = config.get_tool_loop_config("fast")
    assert fast["temperature"] == 0.3
    assert fast["max_tokens"] == 1024
    assert fast["max_rounds"] == 3

    assert config.get_tool_loop_config("no-tools")["tools_enabled"] is False


def test_active_profile_and_custom_profile_from_override(tmp_path):
    override = write_override(
        tmp_path / "profiles.yaml",
        "chat:\n"
        "  active_profile: terse\n"
        "  profiles:\n"
        "    terse:\n"
        "      label: Terse\n"
        "      temperature: 0\n"
        "      max_tokens: 256\n"
        "      tools_enabled: false\n",
    )

    config = Configuration(override)

    assert config.get_tool_loop_config() == {
        "max_rounds": 3,
        "max_tool_calls_per_message": 10,
        "temperature": 0.0,
        "max_tokens": 256,
        "tools_enabled": False,
    }
    assert "default" in config.get_profiles()


@pytest.mark.parametrize(
    "yaml_text, message",
    [
        ("chat:\n  active_profile: turbo\n", "Unknown profile 'turbo'"),
        (
            "chat:\n  profiles:\n    default:\n      temperature: hot\n",
            "temperature must be a number",
        ),
        (
            "chat:\n  profiles:\n    default:\n      max_tokens: 0\n",
            "max_tokens must be a positive integer",
        ),
        (
            "chat:\n  profiles:\n    default:\n      tools_enabled: maybe\n",
            "tools_enabled must be true or false",
        ),
    ],
)
def test_invalid_profiles_are_rejected(tmp_path, yaml_text, message):
    config = Configuration(write_override(tmp_path / "bad.yaml", yaml_text))
    with pytest.raises(ValueError, match=message):
        config.get_tool_loop_config()


def test_unreadable_override_falls_back_to_defaults(tmp_path):
    config = Configuration(write_override(tmp_path / "broken.yaml", "chat: [unclosed\n"))
    assert config.get_tool_loop_config()["max_rounds"] == 3


def test_openrouter_requires_api_key(tmp_path, monkeypatch):
    config = Configuration(write_override(tmp_path / "or.yaml", "llm:\n  active: openrouter\n"))

    with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
        config.llm_api_key

    monkeypatch.setenv("OPENROUTER_API_KEY", " sk-or-123 ")
    assert config.llm_api_key == "sk-or-123"
    assert config.get_llm_config()["provider"] == "openrouter"


def test_unknown_provider(tmp_path):
    config = Configuration(write_override(tmp_path / "x.yaml", "llm:\n  active: mystery\n"))
    with pytest.raises(ValueError, match="Unknown provider 'mystery'"):
        config.get_llm_config()


def test_paths_resolve_against_project_root(tmp_path):
    override = write_override(
        tmp_path / "paths.yaml",
        f"paths:\n  project_root: {tmp_path}\n  chats_dir: /var/chats\n",
    )

    paths = Configuration(override).get_paths()

    assert paths["project_root"] == str(tmp_path)
    assert paths["skills_dir"] == os.path.join(str(tmp_path), "skills")
    assert paths["tool_log_path"] == os.path.join(str(tmp_path), "logs/tool-calls.jsonl")
    assert paths["mcp_config_path"] == os.path.join(str(tmp_path), "config/mcp-servers.json")
    assert paths["chats_dir"] == "/var/chats"


def test_secrets_come_from_environment(monkeypatch):
    monkeypatch.setenv("TOOL_API_KEY", "tool-secret")
    monkeypatch.setenv("BRAVE_API_KEY", "")

    config = Configuration()

    assert config.tool_api_key == "tool-secret"
    assert config.brave_api_key is None


def test_reload_notifies_subscribers(tmp_path):
    path = tmp_path / "live.yaml"
    override = write_override(path, "logging:\n  level: INFO\n", mtime=1_000_000)
    config = Configuration(override)
    received: list[dict] = []
    config.subscribe_to_changes(received.append)

    assert config.reload() is False

    write_override(path, "logging:\n  level: DEBUG\n", mtime=2_000_000)
    assert config.reload() is True

    assert len(received) == 1
    assert received[0]["logging"]["level"] == "DEBUG"
    assert config.get_logging_config()["level"] == "DEBUG"


def test_failing_subscriber_does_not_block_others(tmp_path):
    path = tmp_path / "live.yaml"
    config = Configuration(write_override(path, "tool_server:\n  port: 1\n", mtime=1_000_000))
    received: list[int] = []

    def broken(_config: dict) -> None:
        raise RuntimeError("subscriber bug")

    config.subscribe_to_changes(broken)
    config.subscribe_to_changes(lambda c: received.append(c["tool_server"]["port"]))

    write_override(path, "tool_server:\n  port: 2\n", mtime=2_000_000)
    config.reload()

    assert received == [2]
