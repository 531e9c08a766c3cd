"""Run request, normalized event union and the task handle shared by every provider."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import ClassVar

logger = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    """Output format requested from the agent."""

    TEXT = "text"
    JSON = "json"
    STREAM_JSON = "stream-json"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class StartedEvent:
    """Backend identification and the effective invocation parameters."""

    task_id: str
    label: str
    detail: str | None
    timestamp_ms: int
    type: ClassVar[str] = "started"


@dataclass(frozen=True, slots=True)
class LogEvent:
    task_id: str
    level: LogLevel
    message: str
    timestamp_ms: int
    type: ClassVar[str] = "log"


@dataclass(frozen=True, slots=True)
class FileWriteEvent:
    """A write or edit detected in the agent stream.

    ``path`` is workspace-relative when it resolves inside the workspace root.
    ``lines_created`` is ``None`` when the backend did not report it.
    """

    task_id: str
    path: str
    lines_created: int | None
    timestamp_ms: int
    type: ClassVar[str] = "fileWrite"


@dataclass(frozen=True, slots=True)
class CompletedEvent:
    """Terminal event. ``exit_code`` is ``None`` for transport failure, timeout or signal."""

    task_id: str
    exit_code: int | None
    timestamp_ms: int
    type: ClassVar[str] = "completed"


TestGenEvent = StartedEvent | LogEvent | FileWriteEvent | CompletedEvent
EventSink = Callable[[TestGenEvent], None]


@dataclass(frozen=True, slots=True)
class RunRequest:
    """Input of one agent run; immutable for the run's lifetime."""

    task_id: str
    workspace_root: Path
    prompt: str
    on_event: EventSink
    output_format: OutputFormat = OutputFormat.STREAM_JSON
    allow_write: bool = False
    model: str | None = None
    agent_command: str | None = None


class RunningTask:
    """Handle of a started run; ``dispose`` is idempotent and never raises."""

    def __init__(self, task_id: str, dispose: Callable[[], None]) -> None:
        self.task_id = task_id
        self._dispose = dispose
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        try:
            self._dispose()
        except Exception:  # noqa: BLE001
            logger.debug("Dispose of task %s failed", self.task_id, exc_info=True)

    def __repr__(self) -> str:
        return f"RunningTask(task_id={self.task_id!r}, disposed={self._disposed})"
