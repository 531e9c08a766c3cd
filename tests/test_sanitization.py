from __future__ import annotations

import allure

from testgen_agents.sanitization import redact_secrets, sanitize_agent_log_message

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Transcript Sanitization"),
]


def test_redacts_bearer_tokens_and_api_keys() -> None:
    text = (
        "Authorization: Bearer abcdef1234567890 "
        "DEVIN_API_KEY=apk_user_secretvalue123 "
        "https://host/path?token=xyz&page=2 "
        "key sk-proj-abcdefgh12345"
    )

    redacted = redact_secrets(text)

    assert "abcdef1234567890" not in redacted
    assert "apk_user_secretvalue123" not in redacted
    assert "token=xyz" not in redacted
    assert "sk-proj-abcdefgh12345" not in redacted
    assert "Bearer [redacted-token]" in redacted
    assert "?token=[redacted]&page=2" in redacted


def test_redact_secrets_clamps_unless_disabled() -> None:
    text = "x" * 3000

    assert len(redact_secrets(text)) == 2000
    assert len(redact_secrets(text, max_chars=None)) == 3000
    assert redact_secrets("   ") == ""


def test_sanitize_drops_system_reminders_and_noise_lines() -> None:
    message = (
        "Writing tests\r\n"
        "<system_reminder>internal\nstuff</system_reminder>\n"
        "event:tool_call\n"
        "system:init\n"
        "\n\n\n"
        "Done   \n"
    )

    assert sanitize_agent_log_message(message) == "Writing tests\n\nDone"


def test_sanitize_keeps_plain_messages() -> None:
    assert sanitize_agent_log_message("result: duration_ms=12") == "result: duration_ms=12"
    assert sanitize_agent_log_message("event:tool_call") == ""
