"""Split oversized prompts into attachment files for the Devin sessions API."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

PERSPECTIVES_BEGIN = "<!-- BEGIN TEST PERSPECTIVES JSON -->"
PERSPECTIVES_END = "<!-- END TEST PERSPECTIVES JSON -->"
PATCH_BEGIN = "<!-- BEGIN DONTFORGETEST PATCH -->"
PATCH_END = "<!-- END DONTFORGETEST PATCH -->"

_DIFF_BLOCK_RE = re.compile(r"```(?:diff|patch)\s*\n(.*?)```", re.DOTALL)
_UNIFIED_DIFF_START = "diff --git "


@dataclass(frozen=True, slots=True)
class PromptAttachment:
    filename: str
    content: str


@dataclass(frozen=True, slots=True)
class UploadedAttachment:
    filename: str
    url: str


def _placeholder(filename: str) -> str:
    return f"\n[See attached: {filename}]\n"


def split_prompt_for_attachments(prompt: str) -> list[PromptAttachment]:
    """Split ``prompt`` into diff, perspectives and instructions files.

    Fenced ```diff/```patch blocks win over a bare ``diff --git`` section,
    which is taken to run to the end of the prompt. A prompt with nothing
    to split is returned whole as ``context.txt``.
    """

    files: list[PromptAttachment] = []
    remaining = prompt

    diffs = _DIFF_BLOCK_RE.findall(prompt)
    if diffs:
        files.append(PromptAttachment("diff.patch", "\n\n".join(diffs)))
        remaining = _DIFF_BLOCK_RE.sub(lambda _: _placeholder("diff.patch"), remaining)
    else:
        diff_start = remaining.find(_UNIFIED_DIFF_START)
        if diff_start != -1:
            files.append(PromptAttachment("diff.patch", remaining[diff_start:]))
            remaining = remaining[:diff_start] + _placeholder("diff.patch")

    begin = remaining.find(PERSPECTIVES_BEGIN)
    end = remaining.find(PERSPECTIVES_END)
    if begin != -1 and end > begin:
        stop = end + len(PERSPECTIVES_END)
        files.append(PromptAttachment("test-perspectives.json", remaining[begin:stop]))
        remaining = remaining[:begin] + _placeholder("test-perspectives.json") + remaining[stop:]

    instructions = remaining.strip()
    if instructions:
        files.append(PromptAttachment("instructions.txt", instructions))

    if not files:
        return [PromptAttachment("context.txt", prompt)]
    return files


def build_short_prompt(uploaded: list[UploadedAttachment]) -> str:
    lines = [
        "Read the attached files carefully and complete the task.",
        "",
        "## Attached Files",
        "",
    ]
    for attachment in uploaded:
        lines.append(f'ATTACHMENT:"{attachment.url}"')
        lines.append(f"({attachment.filename})")
        lines.append("")
    lines.extend(
        [
            "## Instructions",
            "",
            "1. Analyze the attached context (instructions, diff, perspectives if any).",
            "2. Generate the required output based on the instructions.",
            "3. Output ONLY between the required markers:",
            f"   - For perspectives: `{PERSPECTIVES_BEGIN}` ... `{PERSPECTIVES_END}`",
            f"   - For patch: `{PATCH_BEGIN}` ... `{PATCH_END}`",
            "4. Do NOT include anything else outside the markers.",
            "5. Do NOT ask questions or request repository setup.",
        ],
    )
    return "\n".join(lines)


def truncate_prompt(prompt: str, max_chars: int) -> str:
    """Cut ``prompt`` to ``max_chars`` and say how much was dropped."""

    if len(prompt) <= max_chars:
        return prompt
    omitted = len(prompt) - max_chars
    return f"{prompt[:max_chars]}\n\n[... truncated {omitted} characters ...]"


def parse_upload_response(text: str) -> str | None:
    """Extract the attachment URL from a bare URL, a JSON string or ``{"url": ...}``."""

    body = text.strip()
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return body if body.startswith(("http://", "https://")) else None
    if isinstance(parsed, str):
        return parsed.strip() or None
    if isinstance(parsed, dict):
        url = parsed.get("url")
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None
