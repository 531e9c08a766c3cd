from __future__ import annotations

import allure
import pytest

from testgen_agents.backend import (
    SUPPORTED_PROVIDERS,
    UnknownProviderError,
    configured_provider_id,
    create_provider,
    resolve_provider_id,
)
from testgen_agents.backend.codex_cli import CodexCliProvider
from testgen_agents.backend.devin_api import DevinApiProvider
from testgen_agents.backend.registry import default_command
from testgen_agents.config import Settings

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Provider Registry"),
]


@pytest.mark.parametrize(
    ("configured", "expected"),
    [
        ("claude-code", "claude-code"),
        ("claudeCode", "claude-code"),
        ("CLAUDE_CODE", "claude-code"),
        ("gemini", "gemini-cli"),
        ("geminiCli", "gemini-cli"),
        ("codexCli", "codex-cli"),
        ("copilot", "copilot-cli"),
        ("devinApi", "devin-api"),
        (" cursor-agent ", "cursor-agent"),
    ],
)
def test_resolve_provider_id_accepts_aliases(configured: str, expected: str) -> None:
    assert resolve_provider_id(configured) == expected


def test_resolve_provider_id_rejects_unknown() -> None:
    with pytest.raises(UnknownProviderError) as error:
        resolve_provider_id("chatgpt")

    assert error.value.provider_id == "chatgpt"
    assert error.value.transient is False


@pytest.mark.parametrize("configured", [None, "", "  ", "chatgpt", 42])
def test_configured_provider_id_falls_back_to_cursor_agent(configured: object) -> None:
    assert configured_provider_id(configured) == "cursor-agent"


def test_create_provider_builds_every_supported_backend() -> None:
    settings = Settings()

    providers = [
        create_provider(provider_id, settings=settings) for provider_id in SUPPORTED_PROVIDERS
    ]

    assert [provider.provider_id for provider in providers] == list(SUPPORTED_PROVIDERS)
    assert isinstance(providers[SUPPORTED_PROVIDERS.index("codex-cli")], CodexCliProvider)
    assert isinstance(create_provider("devin", settings=settings), DevinApiProvider)


def test_each_create_returns_a_fresh_instance() -> None:
    assert create_provider("claude") is not create_provider("claude")


def test_default_commands() -> None:
    assert default_command("cursor-agent") == "cursor-agent"
    assert default_command("claude-code") == "claude"
    assert default_command("gemini-cli") == "gemini"
    assert default_command("codex-cli") == "codex"
    assert default_command("copilot-cli") == "copilot"
    assert default_command("devin-api") is None
