"""cursor-agent backend: stream-json on stdout, prompt as the last argument."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from testgen_agents.backend.mapping import (
    FileWrite,
    JsonLineMapper,
    LogLine,
    MappedEvent,
    Noise,
    Unknown,
    as_record,
    extract_text,
    get_int,
    get_number,
    get_str,
)
from testgen_agents.backend.process import ProcessProvider
from testgen_agents.events import LogLevel, OutputFormat, RunRequest

CURSOR_AGENT_PROVIDER_ID = "cursor-agent"
_NOISE_TAGS = frozenset({"thinking", "user"})


@dataclass(frozen=True, slots=True)
class AssistantText:
    text: str | None
    message: dict[str, Any] | None


@dataclass(frozen=True, slots=True)
class SystemNotice:
    subtype: str | None


@dataclass(frozen=True, slots=True)
class FinalResult:
    duration_ms: int | float | None
    payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolCall:
    """One ``tool_call`` line, started or completed."""

    subtype: str | None
    call_id: str | None
    tool_name: str | None
    args_path: str | None
    result_path: str | None
    lines_added: int | None


def decode_agent_line(payload: dict[str, Any]) -> object:
    """Decode the stream-json tag set shared by cursor-agent and claude."""

    tag = get_str(payload, "type")
    if tag in _NOISE_TAGS:
        return Noise(category=tag)
    if tag == "assistant":
        message = as_record(payload.get("message"))
        return AssistantText(text=extract_text(message), message=message)
    if tag == "system":
        return SystemNotice(subtype=get_str(payload, "subtype"))
    if tag == "result":
        return FinalResult(duration_ms=get_number(payload, "duration_ms"), payload=payload)
    if tag == "tool_call":
        return _decode_tool_call(payload)
    return Unknown(tag=tag)


def _decode_tool_call(payload: dict[str, Any]) -> ToolCall:
    tool_call = as_record(payload.get("tool_call")) or {}
    tool_name = _find_tool_name(tool_call)
    body = as_record(tool_call.get(tool_name)) if tool_name else None
    args = as_record(body.get("args")) if body else None
    result = as_record(body.get("result")) if body else None
    success = as_record(result.get("success")) if result else None
    return ToolCall(
        subtype=get_str(payload, "subtype"),
        call_id=get_str(payload, "call_id"),
        tool_name=tool_name,
        args_path=get_str(args, "path") or get_str(args, "file_path"),
        result_path=get_str(success, "path"),
        lines_added=get_int(success, "linesAdded"),
    )


def _find_tool_name(tool_call: dict[str, Any]) -> str | None:
    for key in tool_call:
        if key.endswith("ToolCall") or key in {"Write", "Edit"}:
            return key
    return next(iter(tool_call), None)


class CursorStreamMapper(JsonLineMapper):
    """Map cursor-agent stream-json lines to normalized events."""

    label = "cursor"

    def is_write_tool(self, name: str) -> bool:
        return name == "editToolCall"

    def decode(self, payload: dict[str, Any]) -> object:
        return decode_agent_line(payload)

    def translate(self, variant: object) -> Iterable[MappedEvent]:
        if isinstance(variant, AssistantText):
            return self.text_line(variant.text)
        if isinstance(variant, SystemNotice):
            if not variant.subtype:
                return []
            return [LogLine(LogLevel.INFO, f"system:{variant.subtype}")]
        if isinstance(variant, FinalResult):
            return self.translate_result(variant)
        if isinstance(variant, ToolCall):
            return self.translate_tool_call(variant)
        return [LogLine(LogLevel.INFO, "event:unknown")]

    def translate_result(self, result: FinalResult) -> list[MappedEvent]:
        duration = "unknown" if result.duration_ms is None else str(result.duration_ms)
        return [LogLine(LogLevel.INFO, f"result: duration_ms={duration}")]

    def translate_tool_call(self, call: ToolCall) -> list[MappedEvent]:
        if not call.tool_name or not self.is_write_tool(call.tool_name):
            return []
        if call.args_path:
            self.registry.remember(call.call_id, call.args_path)
        if call.subtype == "started":
            path = call.args_path or self.registry.resolve(call.call_id)
            return [FileWrite(self.relative(path))] if path else []
        if call.subtype == "completed":
            path = call.result_path or call.args_path or self.registry.resolve(call.call_id)
            if not path:
                return []
            return [FileWrite(self.relative(path), call.lines_added)]
        return []


class CursorAgentProvider(ProcessProvider):
    """Run ``cursor-agent -p`` headless."""

    provider_id = CURSOR_AGENT_PROVIDER_ID
    display_name = "Cursor Agent"
    short_name = "cursor-agent"
    default_command = "cursor-agent"
    stream_mapper = CursorStreamMapper
    ide_overrides = False

    def build_args(self, request: RunRequest) -> list[str]:
        args = ["-p", "--output-format", OutputFormat(request.output_format).value]
        if request.model:
            args.extend(["--model", request.model])
        if request.allow_write:
            args.append("--force")
        args.append(request.prompt)
        return args
