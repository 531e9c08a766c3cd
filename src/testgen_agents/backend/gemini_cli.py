"""Gemini CLI backend: prompt as an argument, its own stream-json dialect on stdout."""

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
    StreamInit,
    Unknown,
    as_record,
    extract_text,
    get_str,
)
from testgen_agents.backend.process import ProcessProvider
from testgen_agents.events import LogLevel, OutputFormat, RunRequest

GEMINI_CLI_PROVIDER_ID = "gemini-cli"
_WRITE_TOOL_NAMES = frozenset({"write_file", "replace"})
_ASSISTANT_ROLES = frozenset({"assistant", "model"})


@dataclass(frozen=True, slots=True)
class SessionInit:
    pass


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    text: str | None


@dataclass(frozen=True, slots=True)
class ToolUse:
    tool_id: str | None
    tool_name: str | None
    file_path: str | None


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_id: str | None
    output: str | None


@dataclass(frozen=True, slots=True)
class ErrorNotice:
    message: str | None


@dataclass(frozen=True, slots=True)
class RunResult:
    status: str | None


def normalize_message(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return ``payload["message"]`` or a message built from top-level role/content/delta."""

    nested = as_record(payload.get("message"))
    if nested is not None:
        return nested
    fields = {key: payload[key] for key in ("role", "content", "delta") if key in payload}
    return fields or None


def extract_tool_output(payload: dict[str, Any]) -> str | None:
    output = get_str(payload, "output")
    if output:
        return output
    result = as_record(payload.get("result"))
    return get_str(result, "output") or get_str(result, "content") or None


def decode_gemini_line(payload: dict[str, Any]) -> object:  # noqa: PLR0911
    tag = get_str(payload, "type")
    if tag == "init":
        return SessionInit()
    if tag == "message":
        message = normalize_message(payload)
        role = get_str(message, "role")
        if role in _ASSISTANT_ROLES:
            return AssistantMessage(text=extract_text(message))
        return Noise(category=role or "message")
    if tag == "tool_use":
        return ToolUse(
            tool_id=get_str(payload, "tool_id"),
            tool_name=get_str(payload, "tool_name"),
            file_path=get_str(as_record(payload.get("parameters")), "file_path"),
        )
    if tag == "tool_result":
        return ToolResult(tool_id=get_str(payload, "tool_id"), output=extract_tool_output(payload))
    if tag == "error":
        return ErrorNotice(message=get_str(payload, "message"))
    if tag == "result":
        return RunResult(status=get_str(payload, "status"))
    return Unknown(tag=tag)


class GeminiStreamMapper(JsonLineMapper):
    label = "gemini"

    def parse_error_message(self, line: str) -> str:
        return f"gemini stream-json parse error: {line}"

    def decode(self, payload: dict[str, Any]) -> object:
        return decode_gemini_line(payload)

    def translate(self, variant: object) -> Iterable[MappedEvent]:  # noqa: PLR0911
        if isinstance(variant, SessionInit):
            return [StreamInit()]
        if isinstance(variant, AssistantMessage):
            return self.text_line(variant.text)
        if isinstance(variant, ToolUse):
            if variant.tool_name not in _WRITE_TOOL_NAMES or not variant.file_path:
                return []
            self.registry.remember(variant.tool_id, variant.file_path)
            return [FileWrite(self.relative(variant.file_path))]
        if isinstance(variant, ToolResult):
            if not self.registry.knows(variant.tool_id) or not variant.output:
                return []
            return [LogLine(LogLevel.INFO, f"tool_result: {variant.output}")]
        if isinstance(variant, ErrorNotice):
            return [LogLine(LogLevel.ERROR, variant.message or "gemini error event received")]
        if isinstance(variant, RunResult):
            return [LogLine(LogLevel.INFO, f"result: status={variant.status or 'unknown'}")]
        return [LogLine(LogLevel.INFO, "event:unknown")]


class GeminiCliProvider(ProcessProvider):
    """Run ``gemini -p``; ``started`` waits for the stream's ``init`` line."""

    provider_id = GEMINI_CLI_PROVIDER_ID
    display_name = "Gemini CLI"
    short_name = "gemini"
    default_command = "gemini"
    stream_mapper = GeminiStreamMapper

    def announces_start(self, request: RunRequest) -> bool:
        return OutputFormat(request.output_format) is not OutputFormat.STREAM_JSON

    def build_args(self, request: RunRequest) -> list[str]:
        args = ["-p", request.prompt, "--output-format", OutputFormat(request.output_format).value]
        if request.model:
            args.extend(["--model", request.model])
        args.extend(["--approval-mode", "auto_edit" if request.allow_write else "default"])
        return args
