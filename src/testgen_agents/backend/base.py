"""Provider contract, error types, single-flight state and the per-run event gate."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from testgen_agents.events import (
    CompletedEvent,
    FileWriteEvent,
    LogEvent,
    LogLevel,
    RunningTask,
    RunRequest,
    StartedEvent,
    TestGenEvent,
    now_ms,
)

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Provider execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class UnknownProviderError(ProviderError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown agent provider: {provider_id!r}", transient=False)
        self.provider_id = provider_id


class AgentProvider(Protocol):
    """Contract every backend facade implements."""

    provider_id: str
    display_name: str

    def run(self, request: RunRequest) -> RunningTask:
        """Start the run without blocking; progress arrives through ``request.on_event``."""


class RunHandle(Protocol):
    """Something a superseding run or ``dispose`` can ask to stop."""

    def cancel(self) -> None: ...


@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Running:
    handle: RunHandle
    task_id: str


ExecutionStatus = Idle | Running
IDLE = Idle()


class ExecutionState:
    """Per-provider ``Idle | Running`` record with atomic transitions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status: ExecutionStatus = IDLE

    @property
    def status(self) -> ExecutionStatus:
        with self._lock:
            return self._status

    def claim(self, handle: RunHandle, task_id: str) -> Running | None:
        """Install ``handle`` as the live run and return the run it superseded, if any."""

        with self._lock:
            previous = self._status
            self._status = Running(handle=handle, task_id=task_id)
        return previous if isinstance(previous, Running) else None

    def release(self, handle: RunHandle) -> bool:
        """Return to idle only if ``handle`` still owns the state."""

        with self._lock:
            status = self._status
            if isinstance(status, Running) and status.handle is handle:
                self._status = IDLE
                return True
            return False


class RunEmitter:
    """Stamps events for one run and enforces the completion contract.

    At most one ``started`` and exactly one ``completed`` are delivered and
    nothing is delivered after ``completed``. Exceptions raised by the sink
    are logged and swallowed.
    """

    def __init__(
        self,
        request: RunRequest,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._task_id = request.task_id
        self._sink = request.on_event
        self._clock = clock
        self._lock = threading.Lock()
        self._started = False
        self._completed = False
        self.on_visible_event: Callable[[], None] | None = None

    @property
    def task_id(self) -> str:
        return self._task_id

    @property
    def completed(self) -> bool:
        return self._completed

    def started(self, label: str, detail: str | None) -> None:
        with self._lock:
            if self._started or self._completed:
                return
            self._started = True
        self._deliver(
            StartedEvent(
                task_id=self._task_id,
                label=label,
                detail=detail,
                timestamp_ms=self._clock(),
            ),
        )

    def log(self, level: LogLevel, message: str, *, visible: bool = True) -> None:
        """Emit a log line; heartbeats pass ``visible=False`` so they do not count as progress."""

        self._deliver(
            LogEvent(
                task_id=self._task_id,
                level=level,
                message=message,
                timestamp_ms=self._clock(),
            ),
            visible=visible,
        )

    def file_write(self, path: str, lines_created: int | None = None) -> None:
        self._deliver(
            FileWriteEvent(
                task_id=self._task_id,
                path=path,
                lines_created=lines_created,
                timestamp_ms=self._clock(),
            ),
        )

    def complete(self, exit_code: int | None) -> bool:
        """Deliver the terminal event once; later calls return ``False``."""

        with self._lock:
            if self._completed:
                return False
            self._completed = True
        self._send(
            CompletedEvent(
                task_id=self._task_id,
                exit_code=exit_code,
                timestamp_ms=self._clock(),
            ),
        )
        return True

    def _deliver(self, event: TestGenEvent, *, visible: bool = True) -> None:
        if self._completed:
            logger.debug("Dropping %s event after completion of %s", event.type, self._task_id)
            return
        if visible and self.on_visible_event is not None:
            self.on_visible_event()
        self._send(event)

    def _send(self, event: TestGenEvent) -> None:
        try:
            self._sink(event)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Event sink raised on %s event for task %s",
                event.type,
                self._task_id,
                exc_info=True,
            )


class SingleFlightProvider:
    """Base for providers that allow one live run per instance."""

    provider_id: str = ""
    display_name: str = ""
    short_name: str = ""

    def __init__(self) -> None:
        self._execution = ExecutionState()

    @property
    def execution(self) -> ExecutionState:
        return self._execution

    def _supersede(self, handle: RunHandle, emitter: RunEmitter) -> None:
        previous = self._execution.claim(handle, emitter.task_id)
        if previous is None:
            return
        try:
            previous.handle.cancel()
        except Exception:  # noqa: BLE001
            logger.debug("Cancelling superseded task %s failed", previous.task_id, exc_info=True)
        emitter.log(
            LogLevel.WARN,
            f"Previous {self.short_name} task ({previous.task_id or 'unknown'}) "
            "was still running and has been stopped.",
        )

    def _dispose(self, handle: RunHandle) -> None:
        handle.cancel()
        self._execution.release(handle)


def call_in_loop(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
    """Run ``callback`` on ``loop``, directly when already on it."""

    try:
        current = asyncio.get_running_loop()
    except RuntimeError:
        current = None
    if current is loop:
        callback()
        return
    if loop.is_closed():
        return
    loop.call_soon_threadsafe(callback)


def describe_invocation(
    *,
    command: str,
    output_format: str | None,
    model: str | None,
    allow_write: bool,
) -> str:
    """Build the ``started`` detail shared by the process backends."""

    parts = [f"cmd={command}"]
    if output_format is not None:
        parts.append(f"format={output_format}")
    if model:
        parts.append(f"model={model}")
    parts.append(f"write={'on' if allow_write else 'off'}")
    return " ".join(parts)
