"""Sanitization helpers for agent transcripts and HTTP error bodies."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b((?:sk|apk|apk_user)[-_][a-z0-9_\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(devin|testgen_agents|openai|anthropic|gemini|cursor)"
            r"[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)

_SYSTEM_REMINDER_RE = re.compile(r"<system_reminder>.*?</system_reminder>", re.DOTALL)
_NOISE_LINES = frozenset({"event:tool_call", "system:init"})


def redact_secrets(text: str, *, max_chars: int | None = _MAX_PREVIEW_CHARS) -> str:
    """Redact obvious secrets and clamp size; ``max_chars=None`` keeps the full text."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if max_chars is None or len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def sanitize_agent_log_message(message: str) -> str:
    """Drop agent noise from a log message before it is shown or saved.

    Removes ``<system_reminder>`` blocks and bare ``event:tool_call`` /
    ``system:init`` lines, strips trailing whitespace and collapses runs of
    blank lines into one.
    """

    text = _SYSTEM_REMINDER_RE.sub("", message.replace("\r\n", "\n"))
    collapsed: list[str] = []
    previous_blank = False
    for raw_line in text.split("\n"):
        line = raw_line.rstrip()
        if line.strip() in _NOISE_LINES:
            continue
        if not line.strip():
            if previous_blank:
                continue
            previous_blank = True
            collapsed.append("")
            continue
        previous_blank = False
        collapsed.append(line)
    return "\n".join(collapsed).strip()
