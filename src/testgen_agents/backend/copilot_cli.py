"""GitHub Copilot CLI backend: prompt as an argument, plain-text output."""

from __future__ import annotations

from testgen_agents.backend.base import describe_invocation
from testgen_agents.backend.process import ProcessProvider
from testgen_agents.events import RunRequest

COPILOT_CLI_PROVIDER_ID = "copilot-cli"


class CopilotCliProvider(ProcessProvider):
    """Run ``copilot -p`` non-interactively with explicit tool permissions."""

    provider_id = COPILOT_CLI_PROVIDER_ID
    display_name = "Copilot CLI"
    short_name = "copilot"
    default_command = "copilot"
    strip_plain_lines = False

    def build_args(self, request: RunRequest) -> list[str]:
        args = [
            "-p",
            request.prompt,
            "--silent",
            "--stream",
            "off",
            "--no-color",
            "--no-auto-update",
            "--no-custom-instructions",
            "--add-dir",
            str(request.workspace_root),
        ]
        if request.model:
            args.extend(["--model", request.model])
        args.extend(["--allow-tool", "shell(command:*)"])
        if request.allow_write:
            args.extend(["--allow-tool", "write"])
        else:
            args.extend(["--deny-tool", "write"])
        return args

    def describe(self, request: RunRequest, command: str) -> str:
        return describe_invocation(
            command=command,
            output_format=None,
            model=request.model,
            allow_write=request.allow_write,
        )
