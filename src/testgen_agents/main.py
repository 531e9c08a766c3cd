"""CLI entrypoint for testgen-agents."""

import logging
import sys
from pathlib import Path

import rich_click as click

from testgen_agents import __version__
from testgen_agents.backend.registry import SUPPORTED_PROVIDERS
from testgen_agents.controllers import (
    AgentCliController,
    PreflightCommand,
    RunAgentCommand,
)

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="testgen-agents")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Level for internal diagnostics written to stderr.",
)
def testgen_agents(log_level: str) -> None:
    """Run test-generation agents and stream their normalized events."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@testgen_agents.command("run")
@click.option(
    "--provider",
    default=None,
    help="Provider id or alias (cursor-agent, claude-code, gemini-cli, codex-cli, "
    "copilot-cli, devin-api). Defaults to TESTGEN_AGENTS_PROVIDER.",
)
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path(),
    show_default=True,
    help="Workspace root the agent runs in.",
)
@click.option("--prompt", default=None, help="Prompt text.")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Read the prompt from a file.",
)
@click.option("--model", default=None, help="Optional model id passed to the agent.")
@click.option(
    "--output-format",
    type=click.Choice(["text", "json", "stream-json"]),
    default=None,
    help="Agent output format. Defaults to TESTGEN_AGENTS_OUTPUT_FORMAT (stream-json).",
)
@click.option(
    "--allow-write/--no-allow-write",
    default=None,
    help="Let the agent edit files without confirmation.",
)
@click.option("--command", "agent_command", default=None, help="Agent executable override.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Overall run timeout; 0 disables it.",
)
@click.option(
    "--sanitize/--raw",
    default=True,
    show_default=True,
    help="Strip agent noise and redact secrets in the transcript.",
)
def run_agent(  # noqa: PLR0913
    provider: str | None,
    workspace: Path,
    prompt: str | None,
    prompt_file: Path | None,
    model: str | None,
    output_format: str | None,
    allow_write: bool | None,
    agent_command: str | None,
    timeout_seconds: float | None,
    sanitize: bool,
) -> None:
    """Run one agent task and exit with its exit code (1 when it has none)."""

    if (prompt is None) == (prompt_file is None):
        raise click.UsageError("Pass exactly one of --prompt or --prompt-file.")
    prompt_text = prompt if prompt is not None else prompt_file.read_text(encoding="utf-8")

    result = AGENT_CONTROLLER.run(
        RunAgentCommand(
            workspace=workspace,
            prompt=prompt_text,
            provider=provider,
            model=model,
            output_format=output_format,
            allow_write=allow_write,
            agent_command=agent_command,
            timeout_seconds=timeout_seconds,
            sanitize=sanitize,
        ),
        echo=click.echo,
    )
    if result.error is not None:
        raise click.ClickException(result.error)
    sys.exit(1 if result.exit_code is None else result.exit_code)


@testgen_agents.command("providers")
def list_providers() -> None:
    """List supported provider ids."""

    _emit_lines(AGENT_CONTROLLER.providers())


@testgen_agents.command("preflight")
@click.option(
    "--provider",
    "providers",
    multiple=True,
    help=f"Provider to check. Repeat to check several; defaults to all of "
    f"{', '.join(SUPPORTED_PROVIDERS)}.",
)
@click.option("--command", default=None, help="Executable override for process providers.")
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1, max=300),
    default=10,
    show_default=True,
    help="Timeout for each probe command.",
)
def preflight(providers: tuple[str, ...], command: str | None, timeout_seconds: int) -> None:
    """Check that the selected agents are installed and configured."""

    report = AGENT_CONTROLLER.preflight(
        PreflightCommand(
            providers=providers,
            command=command,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Preflight check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    testgen_agents()
