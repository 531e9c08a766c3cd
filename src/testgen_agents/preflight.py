"""Preflight checks: is the selected agent usable before a run is started?"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from testgen_agents.backend.devin_api import DevinApiProvider
from testgen_agents.backend.registry import (
    DEVIN_API_PROVIDER_ID,
    default_command,
    resolve_provider_id,
)
from testgen_agents.config import DEVIN_API_KEY_ENV, Settings

Which = Callable[..., str | None]


@dataclass(slots=True)
class PreflightSpec:
    """One provider to check, with an optional command override."""

    provider_id: str
    command: str | None = None


@dataclass(slots=True)
class PreflightResult:
    provider_id: str
    command: str
    available: bool
    probe_ok: bool
    error: str | None
    version_preview: str

    @property
    def ok(self) -> bool:
        return self.available and self.probe_ok


def run_preflight(
    specs: list[PreflightSpec],
    *,
    settings: Settings | None = None,
    timeout_seconds: int = 10,
    which: Which = shutil.which,
    environ: Mapping[str, str] | None = None,
) -> list[PreflightResult]:
    """Probe each provider: executable on PATH plus ``--version``, or the Devin API key."""

    settings = settings or Settings()
    results: list[PreflightResult] = []
    for spec in specs:
        provider_id = resolve_provider_id(spec.provider_id)
        if provider_id == DEVIN_API_PROVIDER_ID:
            results.append(_check_devin(settings, environ))
            continue

        command = spec.command or default_command(provider_id) or provider_id
        resolved_executable = which(command)
        if resolved_executable is None:
            results.append(
                PreflightResult(
                    provider_id=provider_id,
                    command=command,
                    available=False,
                    probe_ok=False,
                    error=f"Executable not found in PATH: {command}",
                    version_preview="",
                ),
            )
            continue

        probe_ok, probe_error, preview = _run_probe(
            executable=resolved_executable,
            timeout_seconds=timeout_seconds,
        )
        results.append(
            PreflightResult(
                provider_id=provider_id,
                command=command,
                available=True,
                probe_ok=probe_ok,
                error=(
                    f"{probe_error} (resolved executable: {resolved_executable})"
                    if probe_error is not None
                    else None
                ),
                version_preview=preview,
            ),
        )
    return results


def _check_devin(settings: Settings, environ: Mapping[str, str] | None) -> PreflightResult:
    provider = DevinApiProvider(settings.devin, environ=environ)
    has_key = provider.resolve_api_key() is not None
    return PreflightResult(
        provider_id=DEVIN_API_PROVIDER_ID,
        command=provider.base_url,
        available=has_key,
        probe_ok=has_key,
        error=None if has_key else f"Devin API key is not configured ({DEVIN_API_KEY_ENV}).",
        version_preview="",
    )


def _run_probe(*, executable: str, timeout_seconds: int) -> tuple[bool, str | None, str]:
    preview = ""
    for probe_args in ([executable, "--version"], [executable, "--help"]):
        try:
            completed = subprocess.run(  # noqa: S603
                probe_args,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return False, "Probe timed out.", ""
        except OSError as error:
            return False, f"Probe failed to start: {error}", ""

        preview = _truncate(completed.stdout or completed.stderr)
        if completed.returncode == 0:
            return True, None, preview

    return False, "Probe command failed.", preview


def _truncate(value: str, *, limit: int = 240) -> str:
    compact = value.strip().replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
