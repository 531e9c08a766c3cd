from __future__ import annotations

import allure
import pytest

from testgen_agents.backend.attachments import (
    PERSPECTIVES_BEGIN,
    PERSPECTIVES_END,
    UploadedAttachment,
    build_short_prompt,
    parse_upload_response,
    split_prompt_for_attachments,
    truncate_prompt,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Devin Prompt Attachments"),
]


def test_split_fenced_diff_perspectives_and_instructions() -> None:
    prompt = (
        "Write tests for the change.\n"
        "```diff\n--- a/x.py\n+++ b/x.py\n+print(1)\n```\n"
        f"{PERSPECTIVES_BEGIN}\n[{{\"id\": 1}}]\n{PERSPECTIVES_END}\n"
        "Use pytest."
    )

    files = {item.filename: item.content for item in split_prompt_for_attachments(prompt)}

    assert list(files) == ["diff.patch", "test-perspectives.json", "instructions.txt"]
    assert files["diff.patch"] == "--- a/x.py\n+++ b/x.py\n+print(1)\n"
    assert files["test-perspectives.json"].startswith(PERSPECTIVES_BEGIN)
    assert files["test-perspectives.json"].endswith(PERSPECTIVES_END)
    assert "[See attached: diff.patch]" in files["instructions.txt"]
    assert "[See attached: test-perspectives.json]" in files["instructions.txt"]
    assert files["instructions.txt"].endswith("Use pytest.")


def test_split_bare_unified_diff_runs_to_the_end() -> None:
    prompt = "Cover this:\ndiff --git a/y.ts b/y.ts\n+export const y = 1;\n"

    files = split_prompt_for_attachments(prompt)

    assert [item.filename for item in files] == ["diff.patch", "instructions.txt"]
    assert files[0].content.startswith("diff --git a/y.ts")
    assert files[1].content == "Cover this:\n\n[See attached: diff.patch]"


def test_blank_prompt_becomes_context_file() -> None:
    files = split_prompt_for_attachments("   ")

    assert [(item.filename, item.content) for item in files] == [("context.txt", "   ")]


def test_short_prompt_lists_attachment_urls() -> None:
    prompt = build_short_prompt(
        [
            UploadedAttachment("diff.patch", "https://files/1"),
            UploadedAttachment("instructions.txt", "https://files/2"),
        ],
    )

    lines = prompt.splitlines()
    assert lines[0] == "Read the attached files carefully and complete the task."
    assert 'ATTACHMENT:"https://files/1"' in lines
    assert "(instructions.txt)" in lines
    assert lines[-1] == "5. Do NOT ask questions or request repository setup."


def test_truncate_prompt_marks_the_cut() -> None:
    assert truncate_prompt("short", 10) == "short"
    assert truncate_prompt("abcdefghij", 4) == "abcd\n\n[... truncated 6 characters ...]"


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ("https://files/a", "https://files/a"),
        ('"https://files/b"', "https://files/b"),
        ('{"url": " https://files/c "}', "https://files/c"),
        ('{"id": 1}', None),
        ("not a url", None),
        ("", None),
    ],
)
def test_parse_upload_response(body: str, expected: str | None) -> None:
    assert parse_upload_response(body) == expected
