"""Generic subprocess adapter shared by the CLI agent backends."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import ClassVar

from testgen_agents.backend.base import (
    RunEmitter,
    SingleFlightProvider,
    call_in_loop,
    describe_invocation,
)
from testgen_agents.backend.mapping import (
    FileWrite,
    JsonLineMapper,
    LineMapper,
    LogLine,
    PlainTextMapper,
    StreamInit,
    StreamStats,
)
from testgen_agents.backend.monitor import LivenessMonitor
from testgen_agents.config import MonitorSettings
from testgen_agents.events import LogLevel, OutputFormat, RunningTask, RunRequest

logger = logging.getLogger(__name__)

SpawnProcess = Callable[..., Awaitable[asyncio.subprocess.Process]]

_READ_CHUNK_BYTES = 64 * 1024
_IDE_MARKERS = ("VSCODE_IPC_HOOK_CLI", "VSCODE_PID", "VSCODE_CWD")
_NON_INTERACTIVE_OVERRIDES = {
    "EDITOR": "true",
    "VISUAL": "true",
    "GIT_EDITOR": "true",
    "PAGER": "cat",
    "GIT_PAGER": "cat",
    "LESS": "FRX",
}


class LineBuffer:
    """Reassembles newline-terminated lines from arbitrary text chunks."""

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        """Return the complete, non-blank lines now available; keep the partial tail."""

        if not chunk:
            return []
        self._pending += chunk
        cut = self._pending.rfind("\n")
        if cut < 0:
            return []
        complete, self._pending = self._pending[:cut], self._pending[cut + 1 :]
        lines = (line.rstrip("\r") for line in complete.split("\n"))
        return [line for line in lines if line.strip()]

    def flush(self) -> str | None:
        tail = self._pending.replace("\r", "").strip()
        self._pending = ""
        return tail or None


@dataclass(frozen=True, slots=True)
class LaunchPlan:
    """Everything needed to spawn one backend process."""

    argv: tuple[str, ...]
    detail: str
    env: dict[str, str] = field(default_factory=dict)
    stdin_text: str | None = None


def is_ide_host(environ: Mapping[str, str]) -> bool:
    if any(environ.get(name) for name in _IDE_MARKERS):
        return True
    return environ.get("TERM_PROGRAM", "").lower() == "vscode"


def build_child_env(
    environ: Mapping[str, str],
    *,
    ide_overrides: bool,
    extra_path: Sequence[str] = (),
) -> dict[str, str]:
    """Copy ``environ`` for a child, forcing non-interactive editors inside an IDE host."""

    env = dict(environ)
    if ide_overrides and is_ide_host(environ):
        env.update(_NON_INTERACTIVE_OVERRIDES)
    if extra_path:
        current = [entry for entry in env.get("PATH", "").split(os.pathsep) if entry]
        prepended = [entry for entry in extra_path if entry and entry not in current]
        env["PATH"] = os.pathsep.join([*prepended, *current])
    return env


class ProcessHandle:
    """Termination requests for one spawned process.

    ``terminate`` sends SIGTERM and escalates to SIGKILL after a grace period.
    Requests made before the process exists are applied when it is attached.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, *, grace_seconds: float = 2.0) -> None:
        self._loop = loop
        self._grace_seconds = grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._terminate_requested = False
        self._finished = False
        self._kill_handle: asyncio.TimerHandle | None = None

    @property
    def terminate_requested(self) -> bool:
        return self._terminate_requested

    def attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        if self._terminate_requested:
            self._signal_terminate()

    def cancel(self) -> None:
        call_in_loop(self._loop, self.terminate)

    def terminate(self) -> None:
        if self._finished:
            return
        self._terminate_requested = True
        if self._process is not None:
            self._signal_terminate()

    def finish(self) -> None:
        self._finished = True
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None

    def _signal_terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        except OSError:
            logger.warning("Failed to terminate pid=%s", process.pid, exc_info=True)
            return
        if self._kill_handle is None:
            self._kill_handle = self._loop.call_later(self._grace_seconds, self._kill)

    def _kill(self) -> None:
        self._kill_handle = None
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        except OSError:
            logger.warning("Failed to kill pid=%s", process.pid, exc_info=True)


class ProcessProvider(SingleFlightProvider):
    """Spawn a CLI agent, stream its stdout through a line mapper and watch liveness.

    Subclasses describe the backend: ``default_command``, ``build_args``,
    ``prompt_input`` and the stream mapper used for ``stream-json``.
    """

    default_command: ClassVar[str] = ""
    stream_mapper: ClassVar[type[JsonLineMapper] | None] = None
    ide_overrides: ClassVar[bool] = True
    started_on_run: ClassVar[bool] = True
    strip_plain_lines: ClassVar[bool] = True

    def __init__(
        self,
        *,
        monitor: MonitorSettings | None = None,
        spawn: SpawnProcess | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._monitor_settings = monitor or MonitorSettings()
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._environ = environ
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    def build_args(self, request: RunRequest) -> list[str]:
        raise NotImplementedError

    def prompt_input(self, request: RunRequest, emitter: RunEmitter) -> str | None:
        """Text written to stdin, or ``None`` when the prompt travels in argv."""

        return None

    def extra_path(self) -> list[str]:
        return []

    def announces_start(self, request: RunRequest) -> bool:
        """Whether ``run`` emits ``started`` itself instead of waiting for the stream."""

        return self.started_on_run

    def describe(self, request: RunRequest, command: str) -> str:
        return describe_invocation(
            command=command,
            output_format=OutputFormat(request.output_format).value,
            model=request.model,
            allow_write=request.allow_write,
        )

    def build_launch(self, request: RunRequest, emitter: RunEmitter) -> LaunchPlan:
        command = request.agent_command or self.default_command
        env = build_child_env(
            os.environ if self._environ is None else self._environ,
            ide_overrides=self.ide_overrides,
            extra_path=self.extra_path(),
        )
        return LaunchPlan(
            argv=(command, *self.build_args(request)),
            detail=self.describe(request, command),
            env=env,
            stdin_text=self.prompt_input(request, emitter),
        )

    def create_mapper(self, request: RunRequest, stats: StreamStats) -> LineMapper:
        if (
            self.stream_mapper is None
            or OutputFormat(request.output_format) is not OutputFormat.STREAM_JSON
        ):
            return PlainTextMapper(stats=stats, strip=self.strip_plain_lines)
        return self.stream_mapper(workspace_root=request.workspace_root, stats=stats)

    def run(self, request: RunRequest) -> RunningTask:
        loop = asyncio.get_running_loop()
        emitter = RunEmitter(request)
        handle = ProcessHandle(loop, grace_seconds=self._monitor_settings.kill_grace_seconds)
        self._supersede(handle, emitter)
        try:
            plan = self.build_launch(request, emitter)
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Failed to prepare %s launch for %s",
                self.provider_id,
                request.task_id,
            )
            self._execution.release(handle)
            emitter.log(LogLevel.ERROR, f"{self.short_name} failed to start: {error}")
            emitter.complete(None)
            return RunningTask(request.task_id, handle.finish)
        if self.announces_start(request):
            emitter.started(self.provider_id, plan.detail)
        task = loop.create_task(
            self._drive(request, plan, handle, emitter),
            name=f"{self.provider_id}:{request.task_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return RunningTask(request.task_id, lambda: self._dispose(handle))

    async def _drive(
        self,
        request: RunRequest,
        plan: LaunchPlan,
        handle: ProcessHandle,
        emitter: RunEmitter,
    ) -> None:
        stats = StreamStats()
        mapper = self.create_mapper(request, stats)
        monitor = LivenessMonitor(
            label=self.short_name,
            stats=stats,
            settings=self._monitor_settings,
            emit_log=lambda level, message, visible: emitter.log(level, message, visible=visible),
            request_kill=handle.terminate,
            clock=self._clock,
        )
        emitter.on_visible_event = monitor.note_emit

        if handle.terminate_requested:
            self._finish(handle, monitor)
            emitter.complete(None)
            return

        executable = shutil.which(plan.argv[0], path=plan.env.get("PATH")) or plan.argv[0]
        try:
            process = await self._spawn(
                executable,
                *plan.argv[1:],
                cwd=str(request.workspace_root),
                env=plan.env,
                stdin=(
                    asyncio.subprocess.PIPE
                    if plan.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as error:
            # ValueError: NUL bytes or unencodable characters in argv or env
            self._finish(handle, monitor)
            emitter.log(LogLevel.ERROR, f"{self.short_name} failed to start: {error}")
            emitter.complete(None)
            return

        handle.attach(process)
        monitor.start(asyncio.get_running_loop())
        buffer = LineBuffer()
        try:
            await asyncio.gather(
                self._feed_stdin(process, plan.stdin_text),
                self._pump_stdout(process, buffer, mapper, monitor, emitter, plan),
                self._pump_stderr(process, monitor, emitter),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            handle.terminate()
            self._finish(handle, monitor)
            emitter.complete(None)
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "%s process error for %s",
                self.provider_id,
                request.task_id,
                exc_info=True,
            )
            handle.terminate()
            self._finish(handle, monitor)
            emitter.log(LogLevel.ERROR, f"{self.short_name} process error: {error}")
            emitter.complete(None)
            return

        self._finish(handle, monitor)
        tail = buffer.flush()
        if tail:
            emitter.log(LogLevel.INFO, tail)
        emitter.complete(returncode if returncode >= 0 else None)

    def _finish(self, handle: ProcessHandle, monitor: LivenessMonitor) -> None:
        monitor.stop()
        handle.finish()
        self._execution.release(handle)

    async def _feed_stdin(
        self,
        process: asyncio.subprocess.Process,
        stdin_text: str | None,
    ) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            if stdin_text:
                stdin.write(stdin_text.encode("utf-8"))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("%s closed stdin before the prompt was written", self.provider_id)
        finally:
            stdin.close()

    async def _pump_stdout(  # noqa: PLR0913
        self,
        process: asyncio.subprocess.Process,
        buffer: LineBuffer,
        mapper: LineMapper,
        monitor: LivenessMonitor,
        emitter: RunEmitter,
        plan: LaunchPlan,
    ) -> None:
        stream = process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            monitor.mark_output()
            for line in buffer.feed(decoder.decode(chunk)):
                self._dispatch(line, mapper, emitter, plan)
        for line in buffer.feed(decoder.decode(b"", final=True)):
            self._dispatch(line, mapper, emitter, plan)

    async def _pump_stderr(
        self,
        process: asyncio.subprocess.Process,
        monitor: LivenessMonitor,
        emitter: RunEmitter,
    ) -> None:
        stream = process.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            monitor.mark_output()
            text = decoder.decode(chunk).strip()
            if text:
                emitter.log(LogLevel.ERROR, text)

    def _dispatch(
        self,
        line: str,
        mapper: LineMapper,
        emitter: RunEmitter,
        plan: LaunchPlan,
    ) -> None:
        try:
            mapped = mapper.map_line(line)
        except Exception:  # noqa: BLE001
            logger.warning("%s mapper failed on line", self.provider_id, exc_info=True)
            emitter.log(LogLevel.WARN, f"{self.short_name} line could not be handled: {line}")
            return
        for item in mapped:
            if isinstance(item, LogLine):
                emitter.log(item.level, item.message)
            elif isinstance(item, FileWrite):
                emitter.file_write(item.path, item.lines_created)
            elif isinstance(item, StreamInit):
                emitter.started(self.provider_id, plan.detail)
