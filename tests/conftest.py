"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from testgen_agents.events import (
    CompletedEvent,
    FileWriteEvent,
    LogEvent,
    LogLevel,
    RunRequest,
    StartedEvent,
    TestGenEvent,
)


class EventRecorder:
    """Event sink that keeps everything it receives."""

    def __init__(self) -> None:
        self.events: list[TestGenEvent] = []

    def __call__(self, event: TestGenEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]

    @property
    def started(self) -> list[StartedEvent]:
        return [event for event in self.events if isinstance(event, StartedEvent)]

    @property
    def completed(self) -> list[CompletedEvent]:
        return [event for event in self.events if isinstance(event, CompletedEvent)]

    @property
    def writes(self) -> list[FileWriteEvent]:
        return [event for event in self.events if isinstance(event, FileWriteEvent)]

    def logs(self, level: LogLevel | None = None) -> list[str]:
        return [
            event.message
            for event in self.events
            if isinstance(event, LogEvent) and (level is None or event.level is level)
        ]

    def request(self, workspace: Path, prompt: str = "write tests", **kwargs) -> RunRequest:
        return RunRequest(
            task_id=kwargs.pop("task_id", "task-1"),
            workspace_root=workspace,
            prompt=prompt,
            on_event=self,
            **kwargs,
        )


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def make_recorder() -> Callable[[], EventRecorder]:
    return EventRecorder


@pytest.fixture()
def clean_env(monkeypatch):
    """Drop every environment variable the settings loader reads."""
    for name in list(os.environ):
        if name.startswith("TESTGEN_AGENTS_") or name == "DEVIN_API_KEY":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fake_agent(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable launcher that runs ``script`` with the current interpreter."""
    if os.name == "nt":
        pytest.skip("fake agent launchers are POSIX shell scripts")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, script: str) -> Path:
        implementation = bin_dir / f"{name}_impl.py"
        implementation.write_text(script.strip() + "\n", "utf-8")
        launcher = bin_dir / name
        launcher.write_text(
            f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
            "utf-8",
        )
        launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR)
        return launcher

    return _write


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root
