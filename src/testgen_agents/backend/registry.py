"""Provider ids, configured-id normalization and the provider factory."""

from __future__ import annotations

from testgen_agents.backend.base import AgentProvider, UnknownProviderError
from testgen_agents.backend.claude_code import CLAUDE_CODE_PROVIDER_ID, ClaudeCodeProvider
from testgen_agents.backend.codex_cli import CODEX_CLI_PROVIDER_ID, CodexCliProvider
from testgen_agents.backend.copilot_cli import COPILOT_CLI_PROVIDER_ID, CopilotCliProvider
from testgen_agents.backend.cursor_agent import CURSOR_AGENT_PROVIDER_ID, CursorAgentProvider
from testgen_agents.backend.devin_api import DEVIN_API_PROVIDER_ID, DevinApiProvider
from testgen_agents.backend.gemini_cli import GEMINI_CLI_PROVIDER_ID, GeminiCliProvider
from testgen_agents.config import Settings

SUPPORTED_PROVIDERS = (
    CURSOR_AGENT_PROVIDER_ID,
    CLAUDE_CODE_PROVIDER_ID,
    GEMINI_CLI_PROVIDER_ID,
    CODEX_CLI_PROVIDER_ID,
    COPILOT_CLI_PROVIDER_ID,
    DEVIN_API_PROVIDER_ID,
)
PROCESS_PROVIDERS = SUPPORTED_PROVIDERS[:-1]
DEFAULT_PROVIDER = CURSOR_AGENT_PROVIDER_ID

_ALIASES = {
    "cursoragent": CURSOR_AGENT_PROVIDER_ID,
    "cursor": CURSOR_AGENT_PROVIDER_ID,
    "claudecode": CLAUDE_CODE_PROVIDER_ID,
    "claude": CLAUDE_CODE_PROVIDER_ID,
    "geminicli": GEMINI_CLI_PROVIDER_ID,
    "gemini": GEMINI_CLI_PROVIDER_ID,
    "codexcli": CODEX_CLI_PROVIDER_ID,
    "codex": CODEX_CLI_PROVIDER_ID,
    "copilotcli": COPILOT_CLI_PROVIDER_ID,
    "copilot": COPILOT_CLI_PROVIDER_ID,
    "devinapi": DEVIN_API_PROVIDER_ID,
    "devin": DEVIN_API_PROVIDER_ID,
}


def resolve_provider_id(value: str) -> str:
    """Map a configured id (``claudeCode``, ``claude-code``, ``claude``) to its canonical form."""

    normalized = value.strip()
    if normalized in SUPPORTED_PROVIDERS:
        return normalized
    key = normalized.lower().replace("-", "").replace("_", "")
    if key in _ALIASES:
        return _ALIASES[key]
    raise UnknownProviderError(value)


def configured_provider_id(value: object) -> str:
    """Lenient variant used for stored settings: anything unknown falls back to cursor-agent."""

    if not isinstance(value, str) or not value.strip():
        return DEFAULT_PROVIDER
    try:
        return resolve_provider_id(value)
    except UnknownProviderError:
        return DEFAULT_PROVIDER


def create_provider(provider_id: str, *, settings: Settings | None = None) -> AgentProvider:
    """Build a fresh provider instance for ``provider_id``."""

    settings = settings or Settings()
    canonical = resolve_provider_id(provider_id)
    if canonical == DEVIN_API_PROVIDER_ID:
        return DevinApiProvider(settings.devin)
    if canonical == CODEX_CLI_PROVIDER_ID:
        return CodexCliProvider(codex=settings.codex, monitor=settings.monitor)
    provider_classes = {
        CURSOR_AGENT_PROVIDER_ID: CursorAgentProvider,
        CLAUDE_CODE_PROVIDER_ID: ClaudeCodeProvider,
        GEMINI_CLI_PROVIDER_ID: GeminiCliProvider,
        COPILOT_CLI_PROVIDER_ID: CopilotCliProvider,
    }
    return provider_classes[canonical](monitor=settings.monitor)


def default_command(provider_id: str) -> str | None:
    """Executable a process provider launches when no override is given."""

    canonical = resolve_provider_id(provider_id)
    commands = {
        CURSOR_AGENT_PROVIDER_ID: CursorAgentProvider.default_command,
        CLAUDE_CODE_PROVIDER_ID: ClaudeCodeProvider.default_command,
        GEMINI_CLI_PROVIDER_ID: GeminiCliProvider.default_command,
        CODEX_CLI_PROVIDER_ID: CodexCliProvider.default_command,
        COPILOT_CLI_PROVIDER_ID: CopilotCliProvider.default_command,
    }
    return commands.get(canonical)
