"""Codex CLI backend: ``codex exec -`` with the prompt on stdin and plain-text output."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from testgen_agents.backend.base import RunEmitter
from testgen_agents.backend.process import ProcessProvider
from testgen_agents.config import CodexSettings
from testgen_agents.events import LogLevel, RunRequest

logger = logging.getLogger(__name__)

CODEX_CLI_PROVIDER_ID = "codex-cli"


@dataclass(frozen=True, slots=True)
class CommandPrompt:
    """A saved Codex prompt command from ``~/.codex/prompts``."""

    name: str
    path: Path
    text: str


def read_command_prompt(name: str, *, home: Path) -> CommandPrompt | None:
    filename = name if name.endswith(".md") else f"{name}.md"
    path = home / ".codex" / "prompts" / filename
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Codex prompt command %s not readable at %s", name, path, exc_info=True)
        return None
    if not text.strip():
        return None
    return CommandPrompt(name=name, path=path, text=text)


def inject_command_prompt(prompt: str, command_prompt: CommandPrompt) -> str:
    return f"{command_prompt.text.strip()}\n\n{prompt}"


class CodexCliProvider(ProcessProvider):
    """Run ``codex exec`` reading the prompt from stdin."""

    provider_id = CODEX_CLI_PROVIDER_ID
    display_name = "Codex CLI"
    short_name = "codex"
    default_command = "codex"

    def __init__(
        self,
        *,
        codex: CodexSettings | None = None,
        home: Callable[[], Path] = Path.home,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._codex = codex or CodexSettings()
        self._home = home

    def build_args(self, request: RunRequest) -> list[str]:
        args = ["exec"]
        if request.model:
            args.extend(["--model", request.model])
        effort = self._codex.reasoning_effort.strip()
        if effort:
            args.extend(["-c", f'model_reasoning_effort="{effort}"'])
        args.append("-")
        return args

    def prompt_input(self, request: RunRequest, emitter: RunEmitter) -> str | None:
        prompt = request.prompt
        command_name = self._codex.prompt_command.strip()
        if command_name:
            command_prompt = read_command_prompt(command_name, home=self._home())
            if command_prompt is None:
                emitter.log(
                    LogLevel.WARN,
                    f"Codex prompt command not found, skipped: {command_name}",
                )
            else:
                prompt = inject_command_prompt(prompt, command_prompt)
                emitter.log(LogLevel.INFO, f"Injected codex prompt command: {command_prompt.path}")
        return f"{prompt}\n"
