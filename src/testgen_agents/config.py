"""Runtime configuration for agent runs, liveness monitoring and the Devin backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

DEFAULT_DEVIN_BASE_URL = "https://api.devin.ai/v1"
DEVIN_API_KEY_ENV = "DEVIN_API_KEY"
DEFAULT_COMPLETION_MARKERS = (
    "<!-- END DONTFORGETEST PATCH -->",
    "<!-- END TEST PERSPECTIVES JSON -->",
)
_OUTPUT_FORMATS = {"text", "json", "stream-json"}


@dataclass(slots=True)
class MonitorSettings:
    """Liveness watchdog thresholds for process-based agents (seconds)."""

    heartbeat_initial_delay_seconds: float = 10.0
    heartbeat_interval_seconds: float = 30.0
    silence_warn_after_seconds: float = 10.0
    silence_log_interval_seconds: float = 30.0
    check_interval_seconds: float = 5.0
    ignored_summary_quiet_seconds: float = 30.0
    max_silence_before_kill_seconds: float = 600.0
    kill_grace_seconds: float = 2.0
    high_output_text_chars: int = 50_000
    high_output_event_count: int = 5_000


@dataclass(slots=True)
class DevinSettings:
    """Devin sessions API settings."""

    api_key: str | None = None
    base_url: str = DEFAULT_DEVIN_BASE_URL
    idempotent: bool = True
    max_acu_limit: int | None = 10
    tags: tuple[str, ...] = ("testgen-agents", "testing")
    poll_initial_delay_seconds: float = 5.0
    poll_max_delay_seconds: float = 30.0
    poll_timeout_seconds: float = 3_600.0
    heartbeat_interval_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    create_attempts: int = 3
    max_unblock_attempts: int = 2
    attachment_threshold_chars: int = 30_000
    truncated_prompt_chars: int = 25_000
    completion_markers: tuple[str, ...] = DEFAULT_COMPLETION_MARKERS


@dataclass(slots=True)
class CodexSettings:
    """Codex CLI extras."""

    reasoning_effort: str = ""
    prompt_command: str = ""


@dataclass(slots=True)
class RunSettings:
    """Defaults for a single CLI-initiated run."""

    provider: str = "cursor-agent"
    agent_command: str | None = None
    model: str | None = None
    output_format: str = "stream-json"
    allow_write: bool = False
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    run: RunSettings = field(default_factory=RunSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    devin: DevinSettings = field(default_factory=DevinSettings)
    codex: CodexSettings = field(default_factory=CodexSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suited to interactive use."""

        return cls(
            run=RunSettings(
                provider=os.getenv("TESTGEN_AGENTS_PROVIDER", "cursor-agent").strip()
                or "cursor-agent",
                agent_command=_env_optional("TESTGEN_AGENTS_COMMAND"),
                model=_env_optional("TESTGEN_AGENTS_MODEL"),
                output_format=os.getenv("TESTGEN_AGENTS_OUTPUT_FORMAT", "stream-json").strip(),
                allow_write=_env_bool("TESTGEN_AGENTS_ALLOW_WRITE", default=False),
                timeout_seconds=float(os.getenv("TESTGEN_AGENTS_TIMEOUT_SECONDS", "0")),
            ),
            monitor=MonitorSettings(
                heartbeat_initial_delay_seconds=float(
                    os.getenv("TESTGEN_AGENTS_HEARTBEAT_INITIAL_DELAY_SECONDS", "10"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("TESTGEN_AGENTS_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
                silence_warn_after_seconds=float(
                    os.getenv("TESTGEN_AGENTS_SILENCE_WARN_AFTER_SECONDS", "10"),
                ),
                silence_log_interval_seconds=float(
                    os.getenv("TESTGEN_AGENTS_SILENCE_LOG_INTERVAL_SECONDS", "30"),
                ),
                check_interval_seconds=float(
                    os.getenv("TESTGEN_AGENTS_CHECK_INTERVAL_SECONDS", "5"),
                ),
                ignored_summary_quiet_seconds=float(
                    os.getenv("TESTGEN_AGENTS_IGNORED_SUMMARY_QUIET_SECONDS", "30"),
                ),
                max_silence_before_kill_seconds=float(
                    os.getenv("TESTGEN_AGENTS_MAX_SILENCE_BEFORE_KILL_SECONDS", "600"),
                ),
            ),
            devin=DevinSettings(
                api_key=_env_optional(DEVIN_API_KEY_ENV),
                base_url=normalize_base_url(os.getenv("TESTGEN_AGENTS_DEVIN_BASE_URL", "")),
                idempotent=_env_bool("TESTGEN_AGENTS_DEVIN_IDEMPOTENT", default=True),
                max_acu_limit=_env_optional_int("TESTGEN_AGENTS_DEVIN_MAX_ACU_LIMIT", default=10),
                poll_initial_delay_seconds=float(
                    os.getenv("TESTGEN_AGENTS_DEVIN_POLL_INITIAL_DELAY_SECONDS", "5"),
                ),
                poll_max_delay_seconds=float(
                    os.getenv("TESTGEN_AGENTS_DEVIN_POLL_MAX_DELAY_SECONDS", "30"),
                ),
                poll_timeout_seconds=float(
                    os.getenv("TESTGEN_AGENTS_DEVIN_POLL_TIMEOUT_SECONDS", "3600"),
                ),
                max_unblock_attempts=int(
                    os.getenv("TESTGEN_AGENTS_DEVIN_MAX_UNBLOCK_ATTEMPTS", "2"),
                ),
            ),
            codex=CodexSettings(
                reasoning_effort=os.getenv("TESTGEN_AGENTS_CODEX_REASONING_EFFORT", "").strip(),
                prompt_command=os.getenv("TESTGEN_AGENTS_CODEX_PROMPT_COMMAND", "").strip(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values no run could honour."""

        if self.run.output_format not in _OUTPUT_FORMATS:
            raise ValueError(
                "TESTGEN_AGENTS_OUTPUT_FORMAT must be one of "
                f"{sorted(_OUTPUT_FORMATS)}: {self.run.output_format!r}",
            )
        if self.run.timeout_seconds < 0:
            raise ValueError("TESTGEN_AGENTS_TIMEOUT_SECONDS must be >= 0.")
        if self.monitor.heartbeat_interval_seconds <= 0:
            raise ValueError("TESTGEN_AGENTS_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.monitor.check_interval_seconds <= 0:
            raise ValueError("TESTGEN_AGENTS_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.monitor.max_silence_before_kill_seconds <= 0:
            raise ValueError("TESTGEN_AGENTS_MAX_SILENCE_BEFORE_KILL_SECONDS must be > 0.")
        if self.devin.poll_max_delay_seconds <= 0:
            raise ValueError("TESTGEN_AGENTS_DEVIN_POLL_MAX_DELAY_SECONDS must be > 0.")
        if self.devin.poll_timeout_seconds <= 0:
            raise ValueError("TESTGEN_AGENTS_DEVIN_POLL_TIMEOUT_SECONDS must be > 0.")
        if self.devin.max_unblock_attempts < 0:
            raise ValueError("TESTGEN_AGENTS_DEVIN_MAX_UNBLOCK_ATTEMPTS must be >= 0.")
        _validate_base_url(self.devin.base_url)


def normalize_base_url(value: str | None) -> str:
    """Return the Devin API base URL without a trailing slash."""

    normalized = (value or "").strip()
    if not normalized:
        return DEFAULT_DEVIN_BASE_URL
    return normalized.rstrip("/")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid TESTGEN_AGENTS_DEVIN_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_optional_int(name: str, *, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "none", "off"}:
        return None
    try:
        return int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
