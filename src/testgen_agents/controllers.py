"""Controllers for testgen-agents CLI commands."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from testgen_agents.backend.base import AgentProvider, UnknownProviderError
from testgen_agents.backend.registry import (
    SUPPORTED_PROVIDERS,
    create_provider,
    default_command,
    resolve_provider_id,
)
from testgen_agents.completion import run_provider_to_completion
from testgen_agents.config import Settings
from testgen_agents.events import (
    CompletedEvent,
    FileWriteEvent,
    LogEvent,
    OutputFormat,
    RunRequest,
    StartedEvent,
    TestGenEvent,
)
from testgen_agents.preflight import PreflightSpec, run_preflight
from testgen_agents.sanitization import redact_secrets, sanitize_agent_log_message
from testgen_agents.task_manager import TaskManager, task_manager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunAgentCommand:
    """CLI input for a single agent run."""

    workspace: Path
    prompt: str
    provider: str | None = None
    model: str | None = None
    output_format: str | None = None
    allow_write: bool | None = None
    agent_command: str | None = None
    timeout_seconds: float | None = None
    sanitize: bool = True
    task_id: str | None = None


@dataclass(slots=True)
class RunAgentResult:
    exit_code: int | None
    lines: list[str] = field(default_factory=list)
    written_paths: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class PreflightCommand:
    """CLI input for provider preflight checks."""

    providers: tuple[str, ...]
    command: str | None
    timeout_seconds: int


@dataclass(slots=True)
class PreflightReport:
    lines: list[str]
    success: bool


class AgentCliController:
    """Runs agents and probes providers on behalf of the CLI."""

    def __init__(self, *, tasks: TaskManager | None = None) -> None:
        self._tasks = tasks or task_manager

    def run(
        self,
        command: RunAgentCommand,
        *,
        echo: Callable[[str], None] | None = None,
    ) -> RunAgentResult:
        """Run one agent task to completion, streaming rendered events to ``echo``."""

        try:
            settings = Settings.from_env()
            _apply_overrides(settings, command)
            settings.validate()
            provider_id = resolve_provider_id(settings.run.provider)
        except (ValueError, UnknownProviderError) as error:
            return RunAgentResult(exit_code=None, error=str(error))

        provider = create_provider(provider_id, settings=settings)
        result = RunAgentResult(exit_code=None)

        def on_event(event: TestGenEvent) -> None:
            if isinstance(event, FileWriteEvent):
                result.written_paths.append(event.path)
            line = render_event(event, sanitize=command.sanitize)
            if line is None:
                return
            result.lines.append(line)
            if echo is not None:
                echo(line)

        request = RunRequest(
            task_id=command.task_id or f"testgen-{uuid.uuid4().hex[:12]}",
            workspace_root=command.workspace.resolve(),
            prompt=command.prompt,
            on_event=on_event,
            output_format=OutputFormat(settings.run.output_format),
            allow_write=settings.run.allow_write,
            model=settings.run.model,
            agent_command=settings.run.agent_command,
        )
        result.exit_code = asyncio.run(
            self._run_tracked(
                provider,
                request,
                timeout_seconds=settings.run.timeout_seconds,
            ),
        )
        return result

    def providers(self) -> list[str]:
        lines = ["Supported providers:"]
        for provider_id in SUPPORTED_PROVIDERS:
            command = default_command(provider_id)
            suffix = f" (command: {command})" if command else " (HTTP API)"
            lines.append(f"- {provider_id}{suffix}")
        return lines

    def preflight(self, command: PreflightCommand) -> PreflightReport:
        try:
            settings = Settings.from_env()
            selected = [
                resolve_provider_id(provider)
                for provider in (command.providers or SUPPORTED_PROVIDERS)
            ]
        except (ValueError, UnknownProviderError) as error:
            return PreflightReport(lines=["Preflight check:", str(error)], success=False)

        results = run_preflight(
            [
                PreflightSpec(provider_id=provider_id, command=command.command)
                for provider_id in selected
            ],
            settings=settings,
            timeout_seconds=command.timeout_seconds,
        )
        lines = ["Preflight check:"]
        for item in results:
            status = "ok" if item.ok else "failed"
            lines.append(
                f"- {item.provider_id}: {status} "
                f"available={item.available} probe_ok={item.probe_ok} command={item.command}",
            )
            if item.version_preview:
                lines.append(f"  version: {item.version_preview}")
            if item.error:
                lines.append(f"  error: {item.error}")
        return PreflightReport(lines=lines, success=all(item.ok for item in results))

    async def _run_tracked(
        self,
        provider: AgentProvider,
        request: RunRequest,
        *,
        timeout_seconds: float,
    ) -> int | None:
        try:
            return await run_provider_to_completion(
                provider,
                request,
                timeout_seconds=timeout_seconds,
                on_running_task=lambda running: self._tasks.register(
                    request.task_id,
                    provider.display_name,
                    running,
                ),
            )
        except asyncio.CancelledError:
            logger.info("Run %s interrupted; stopping %s", request.task_id, provider.display_name)
            self._tasks.cancel(request.task_id)
            raise
        finally:
            self._tasks.unregister(request.task_id)


def render_event(event: TestGenEvent, *, sanitize: bool = True) -> str | None:
    """One transcript line per event; ``None`` when sanitization leaves nothing to show."""

    if isinstance(event, StartedEvent):
        detail = f" {event.detail}" if event.detail else ""
        return f"[started] {event.label}{detail}"
    if isinstance(event, LogEvent):
        message = (
            redact_secrets(sanitize_agent_log_message(event.message), max_chars=None)
            if sanitize
            else event.message
        )
        if not message.strip():
            return None
        return f"[{event.level.value}] {message}"
    if isinstance(event, FileWriteEvent):
        lines = f" (+{event.lines_created} lines)" if event.lines_created is not None else ""
        return f"[write] {event.path}{lines}"
    if isinstance(event, CompletedEvent):
        code = "none" if event.exit_code is None else str(event.exit_code)
        return f"[completed] exit_code={code}"
    return None


def _apply_overrides(settings: Settings, command: RunAgentCommand) -> None:
    run = settings.run
    if command.provider is not None:
        run.provider = command.provider
    if command.model is not None:
        run.model = command.model
    if command.output_format is not None:
        run.output_format = command.output_format
    if command.allow_write is not None:
        run.allow_write = command.allow_write
    if command.agent_command is not None:
        run.agent_command = command.agent_command
    if command.timeout_seconds is not None:
        run.timeout_seconds = command.timeout_seconds
