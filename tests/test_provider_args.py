from __future__ import annotations

from pathlib import Path

import allure
import pytest

from testgen_agents.backend.base import RunEmitter
from testgen_agents.backend.claude_code import ClaudeCodeProvider, default_additional_paths
from testgen_agents.backend.codex_cli import CodexCliProvider
from testgen_agents.backend.copilot_cli import CopilotCliProvider
from testgen_agents.backend.cursor_agent import CursorAgentProvider, CursorStreamMapper
from testgen_agents.backend.gemini_cli import GeminiCliProvider
from testgen_agents.backend.mapping import PlainTextMapper, StreamStats
from testgen_agents.config import CodexSettings
from testgen_agents.events import OutputFormat

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Command Rendering"),
]

WORKSPACE = Path("/ws")


def test_cursor_agent_args(recorder) -> None:
    provider = CursorAgentProvider(environ={})
    request = recorder.request(WORKSPACE, "make tests", model="gpt-5", allow_write=True)

    assert provider.build_args(request) == [
        "-p",
        "--output-format",
        "stream-json",
        "--model",
        "gpt-5",
        "--force",
        "make tests",
    ]
    assert provider.describe(request, "cursor-agent") == (
        "cmd=cursor-agent format=stream-json model=gpt-5 write=on"
    )


def test_cursor_agent_never_gets_ide_overrides(recorder) -> None:
    provider = CursorAgentProvider(environ={"VSCODE_PID": "1", "PATH": "/bin"})
    request = recorder.request(WORKSPACE)
    plan = provider.build_launch(request, RunEmitter(request))

    assert "EDITOR" not in plan.env
    assert plan.argv[0] == "cursor-agent"
    assert plan.stdin_text is None


def test_claude_code_args_and_stdin(recorder) -> None:
    provider = ClaudeCodeProvider(environ={"PATH": "/bin"})
    request = recorder.request(WORKSPACE, "prompt via stdin", allow_write=True, model="opus")

    assert provider.build_args(request) == [
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--input-format",
        "text",
        "--model",
        "opus",
        "--permission-mode",
        "acceptEdits",
        "--allowedTools",
        "Bash",
    ]
    plan = provider.build_launch(request, RunEmitter(request))
    assert plan.stdin_text == "prompt via stdin"
    assert "prompt via stdin" not in plan.argv


def test_claude_code_text_format_drops_verbose(recorder) -> None:
    provider = ClaudeCodeProvider(environ={})
    args = provider.build_args(recorder.request(WORKSPACE, output_format=OutputFormat.TEXT))

    assert "--verbose" not in args
    assert "--permission-mode" not in args
    assert args[:3] == ["-p", "--output-format", "text"]


def test_claude_code_prepends_install_locations_to_path(recorder) -> None:
    provider = ClaudeCodeProvider(environ={"PATH": "/usr/bin", "VSCODE_CWD": "/x"})
    request = recorder.request(WORKSPACE)

    plan = provider.build_launch(request, RunEmitter(request))

    entries = plan.env["PATH"].split(":")
    assert entries[-1] == "/usr/bin"
    assert "/opt/homebrew/bin" in entries
    assert plan.env["VISUAL"] == "true"


def test_default_additional_paths_per_platform(tmp_path: Path) -> None:
    posix = default_additional_paths(platform="linux", environ={}, home=tmp_path)
    windows = default_additional_paths(
        platform="win32",
        environ={"LOCALAPPDATA": "C:/Local", "USERPROFILE": "C:/Users/me"},
    )

    assert str(tmp_path / ".local" / "bin") in posix
    assert "/usr/local/bin" in posix
    assert len(windows) == 2


def test_gemini_args_and_start_announcement(recorder) -> None:
    provider = GeminiCliProvider(environ={})
    stream_request = recorder.request(WORKSPACE, "do it", allow_write=True)
    text_request = recorder.request(WORKSPACE, "do it", output_format=OutputFormat.TEXT)

    assert provider.build_args(stream_request) == [
        "-p",
        "do it",
        "--output-format",
        "stream-json",
        "--approval-mode",
        "auto_edit",
    ]
    assert provider.build_args(text_request)[-1] == "default"
    assert provider.announces_start(stream_request) is False
    assert provider.announces_start(text_request) is True


def test_codex_args_with_reasoning_effort(recorder) -> None:
    provider = CodexCliProvider(codex=CodexSettings(reasoning_effort="high"), environ={})
    request = recorder.request(WORKSPACE, "p", model="gpt-5-codex")

    assert provider.build_args(request) == [
        "exec",
        "--model",
        "gpt-5-codex",
        "-c",
        'model_reasoning_effort="high"',
        "-",
    ]


def test_codex_without_extras(recorder) -> None:
    provider = CodexCliProvider(environ={})
    request = recorder.request(WORKSPACE, "p")

    assert provider.build_args(request) == ["exec", "-"]
    assert provider.prompt_input(request, RunEmitter(request)) == "p\n"
    assert recorder.events == []


@pytest.mark.parametrize(
    ("allow_write", "write_flag"),
    [(True, "--allow-tool"), (False, "--deny-tool")],
)
def test_copilot_args(recorder, allow_write: bool, write_flag: str) -> None:
    provider = CopilotCliProvider(environ={})
    request = recorder.request(WORKSPACE, "go", allow_write=allow_write, model="m")

    args = provider.build_args(request)

    assert args[:10] == [
        "-p",
        "go",
        "--silent",
        "--stream",
        "off",
        "--no-color",
        "--no-auto-update",
        "--no-custom-instructions",
        "--add-dir",
        str(WORKSPACE),
    ]
    assert args[10:] == [
        "--model",
        "m",
        "--allow-tool",
        "shell(command:*)",
        write_flag,
        "write",
    ]
    assert provider.describe(request, "copilot") == (
        f"cmd=copilot model=m write={'on' if allow_write else 'off'}"
    )


def test_mapper_selection_follows_output_format(recorder) -> None:
    provider = CursorAgentProvider(environ={})
    stats = StreamStats()

    stream = provider.create_mapper(recorder.request(WORKSPACE), stats)
    plain = provider.create_mapper(
        recorder.request(WORKSPACE, output_format=OutputFormat.JSON),
        stats,
    )
    copilot = CopilotCliProvider(environ={}).create_mapper(recorder.request(WORKSPACE), stats)

    assert isinstance(stream, CursorStreamMapper)
    assert isinstance(plain, PlainTextMapper)
    assert isinstance(copilot, PlainTextMapper)


def test_agent_command_override(recorder) -> None:
    provider = GeminiCliProvider(environ={})
    request = recorder.request(WORKSPACE, agent_command="/opt/gemini-nightly")

    plan = provider.build_launch(request, RunEmitter(request))

    assert plan.argv[0] == "/opt/gemini-nightly"
    assert plan.detail.startswith("cmd=/opt/gemini-nightly format=stream-json")
