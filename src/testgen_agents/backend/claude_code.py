"""Claude Code backend: prompt on stdin, cursor-style stream-json on stdout."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from testgen_agents.backend.base import RunEmitter
from testgen_agents.backend.cursor_agent import (
    AssistantText,
    CursorStreamMapper,
    FinalResult,
)
from testgen_agents.backend.mapping import (
    FileWrite,
    LogLine,
    MappedEvent,
    as_record,
    get_str,
)
from testgen_agents.backend.process import ProcessProvider
from testgen_agents.events import LogLevel, OutputFormat, RunRequest

CLAUDE_CODE_PROVIDER_ID = "claude-code"
_WRITE_TOOL_NAMES = frozenset({"Write", "Edit", "editToolCall", "writeToolCall"})


def is_claude_write_tool(name: str) -> bool:
    if name in _WRITE_TOOL_NAMES:
        return True
    lowered = name.lower()
    return "write" in lowered or "edit" in lowered


def extract_result_text(payload: dict[str, Any]) -> str | None:
    result = payload.get("result")
    if isinstance(result, str):
        return result or None
    record = as_record(result)
    if record is None:
        return None
    for key in ("text", "content", "message"):
        value = record.get(key)
        if isinstance(value, str):
            return value or None
    content = record.get("content")
    if isinstance(content, list) and content:
        return get_str(as_record(content[0]), "text") or None
    return None


class ClaudeStreamMapper(CursorStreamMapper):
    """Cursor tag set plus ``tool_use`` items inside assistant messages and result text."""

    label = "claude"

    def is_write_tool(self, name: str) -> bool:
        return is_claude_write_tool(name)

    def translate(self, variant: object) -> Iterable[MappedEvent]:
        if isinstance(variant, AssistantText):
            return [*self.text_line(variant.text), *self._tool_uses(variant.message)]
        return super().translate(variant)

    def translate_result(self, result: FinalResult) -> list[MappedEvent]:
        events = super().translate_result(result)
        text = extract_result_text(result.payload)
        if text:
            events.append(LogLine(LogLevel.INFO, text))
        return events

    def _tool_uses(self, message: dict[str, Any] | None) -> list[MappedEvent]:
        content = message.get("content") if message else None
        if not isinstance(content, list):
            return []
        events: list[MappedEvent] = []
        for item in content:
            record = as_record(item)
            if get_str(record, "type") != "tool_use":
                continue
            name = get_str(record, "name")
            path = get_str(as_record(record.get("input")), "file_path")
            if not name or not path or not self.is_write_tool(name):
                continue
            self.registry.remember(get_str(record, "id"), path)
            events.append(FileWrite(self.relative(path)))
        return events


def default_additional_paths(
    *,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> list[str]:
    """Common Claude install locations missing from a GUI-launched PATH."""

    platform = platform or sys.platform
    env = os.environ if environ is None else environ
    entries: list[str] = []
    if platform == "win32":
        local_app_data = env.get("LOCALAPPDATA")
        user_profile = env.get("USERPROFILE")
        if local_app_data:
            entries.append(str(Path(local_app_data) / "Programs" / "Claude"))
        if user_profile:
            entries.append(str(Path(user_profile) / ".claude" / "local"))
        return entries
    home = home or Path.home()
    entries.extend(
        [
            "/opt/homebrew/bin",
            str(home / ".local" / "bin"),
            "/usr/local/bin",
            str(home / ".claude" / "local"),
        ],
    )
    return list(dict.fromkeys(entries))


class ClaudeCodeProvider(ProcessProvider):
    """Run ``claude -p`` with the prompt written to stdin."""

    provider_id = CLAUDE_CODE_PROVIDER_ID
    display_name = "Claude Code"
    short_name = "claude"
    default_command = "claude"
    stream_mapper = ClaudeStreamMapper

    def build_args(self, request: RunRequest) -> list[str]:
        output_format = OutputFormat(request.output_format)
        args = ["-p", "--output-format", output_format.value]
        if output_format is OutputFormat.STREAM_JSON:
            args.append("--verbose")
        args.extend(["--input-format", "text"])
        if request.model:
            args.extend(["--model", request.model])
        if request.allow_write:
            args.extend(["--permission-mode", "acceptEdits"])
        args.extend(["--allowedTools", "Bash"])
        return args

    def prompt_input(self, request: RunRequest, emitter: RunEmitter) -> str | None:
        return request.prompt

    def extra_path(self) -> list[str]:
        return default_additional_paths(environ=self._environ)
