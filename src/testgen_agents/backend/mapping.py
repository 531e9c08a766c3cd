"""Shared pieces of the per-backend line mappers."""

from __future__ import annotations

import json
import math
import os
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from testgen_agents.events import LogLevel


@dataclass(frozen=True, slots=True)
class LogLine:
    level: LogLevel
    message: str


@dataclass(frozen=True, slots=True)
class FileWrite:
    path: str
    lines_created: int | None = None


@dataclass(frozen=True, slots=True)
class StreamInit:
    """The backend confirmed the session started."""


MappedEvent = LogLine | FileWrite | StreamInit


@dataclass(frozen=True, slots=True)
class Noise:
    """A high-frequency line that is counted but never shown."""

    category: str


@dataclass(frozen=True, slots=True)
class Unknown:
    tag: str | None


@dataclass(slots=True)
class StreamStats:
    """Raw protocol counters observed by the liveness monitor."""

    parsed_count: int = 0
    ignored: Counter[str] = field(default_factory=Counter)
    last_tag: str | None = None
    max_text_chars: int = 0

    @property
    def ignored_total(self) -> int:
        return sum(self.ignored.values())

    def record(self, tag: str | None, *, ignored_category: str | None = None) -> None:
        self.parsed_count += 1
        if tag:
            self.last_tag = tag
        if ignored_category:
            self.ignored[ignored_category] += 1

    def record_text(self, text: str) -> None:
        self.max_text_chars = max(self.max_text_chars, len(text))


class LineMapper(Protocol):
    def map_line(self, line: str) -> list[MappedEvent]: ...


class ToolCallRegistry:
    """Per-run map from a tool invocation id to the path it writes."""

    def __init__(self) -> None:
        self._paths: dict[str, str] = {}
        self._last_path: str | None = None

    def remember(self, call_id: str | None, path: str) -> None:
        if call_id:
            self._paths[call_id] = path
        self._last_path = path

    def resolve(self, call_id: str | None) -> str | None:
        """Look up the path of ``call_id``; without an id fall back to the latest write."""

        if call_id:
            return self._paths.get(call_id)
        return self._last_path

    def knows(self, call_id: str | None) -> bool:
        return bool(call_id) and call_id in self._paths

    def __len__(self) -> int:
        return len(self._paths)


class JsonLineMapper:
    """Parse one stream-json line and map it through ``decode`` and ``translate``.

    Subclasses turn the raw record into one variant of their closed tag set in
    ``decode`` and map every variant in ``translate``.
    """

    label = "agent"

    def __init__(self, *, workspace_root: Path | str, stats: StreamStats | None = None) -> None:
        self.workspace_root = Path(workspace_root)
        self.stats = stats if stats is not None else StreamStats()
        self.registry = ToolCallRegistry()

    def map_line(self, line: str) -> list[MappedEvent]:
        try:
            payload = json.loads(line)
        except ValueError:
            return [LogLine(LogLevel.WARN, self.parse_error_message(line))]
        if not isinstance(payload, dict):
            self.stats.record(None)
            return [LogLine(LogLevel.WARN, f"unrecognized event shape: {line}")]
        variant = self.decode(payload)
        self.stats.record(
            get_str(payload, "type"),
            ignored_category=variant.category if isinstance(variant, Noise) else None,
        )
        if isinstance(variant, Noise):
            return []
        if isinstance(variant, Unknown):
            return [LogLine(LogLevel.INFO, f"event:{variant.tag or 'unknown'}")]
        return list(self.translate(variant))

    def parse_error_message(self, line: str) -> str:
        return line

    def decode(self, payload: dict[str, Any]) -> object:
        raise NotImplementedError

    def translate(self, variant: object) -> Iterable[MappedEvent]:
        raise NotImplementedError

    def relative(self, path: str) -> str:
        return to_workspace_relative(path, self.workspace_root)

    def text_line(self, text: str | None) -> list[MappedEvent]:
        if not text:
            return []
        self.stats.record_text(text)
        return [LogLine(LogLevel.INFO, text)]


class PlainTextMapper:
    """Every non-blank stdout line becomes one info log."""

    def __init__(self, *, stats: StreamStats | None = None, strip: bool = True) -> None:
        self.stats = stats if stats is not None else StreamStats()
        self._strip = strip

    def map_line(self, line: str) -> list[MappedEvent]:
        message = line.strip() if self._strip else line
        if not message.strip():
            return []
        self.stats.record("text")
        self.stats.record_text(message)
        return [LogLine(LogLevel.INFO, message)]


def as_record(value: object) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def get_str(record: dict[str, Any] | None, key: str) -> str | None:
    if record is None:
        return None
    value = record.get(key)
    return value if isinstance(value, str) else None


def get_number(record: dict[str, Any] | None, key: str) -> int | float | None:
    """Return a finite numeric field; booleans are not numbers here."""

    if record is None:
        return None
    value = record.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def get_int(record: dict[str, Any] | None, key: str) -> int | None:
    value = get_number(record, key)
    return value if isinstance(value, int) else None


def extract_text(message: object) -> str | None:
    """Pull display text out of a message record.

    Prefers an incremental ``delta``, then a string ``content``, then the
    string-bearing elements of a ``content`` array joined together.
    """

    record = as_record(message)
    if record is None:
        return None
    delta = get_str(record, "delta")
    if delta:
        return delta
    content = record.get("content")
    if isinstance(content, str):
        return content or None
    if not isinstance(content, list):
        return None
    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
            continue
        text = get_str(as_record(item), "text")
        if text:
            parts.append(text)
    joined = "".join(parts)
    return joined or None


def to_workspace_relative(path: str, workspace_root: Path | str) -> str:
    """Make ``path`` workspace-relative when it lies inside ``workspace_root``."""

    if not path or not os.path.isabs(path):
        return path
    root = os.path.normpath(os.fspath(workspace_root))
    candidate = os.path.normpath(path)
    try:
        relative = os.path.relpath(candidate, root)
    except ValueError:
        return path
    if relative == os.curdir or relative == os.pardir or relative.startswith(os.pardir + os.sep):
        return path
    return Path(relative).as_posix()
