from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import httpx
import pytest

from testgen_agents.backend.base import IDLE
from testgen_agents.backend.devin_api import DevinApiError, DevinApiProvider, PollBackoff
from testgen_agents.completion import run_provider_to_completion
from testgen_agents.config import DevinSettings
from testgen_agents.events import LogLevel

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Devin Sessions Backend"),
]

SESSION = {"session_id": "devin-1", "url": "https://app.devin.ai/sessions/devin-1"}
PATCH_MARKER = "<!-- END DONTFORGETEST PATCH -->"


class _FakeTime:
    """Clock and sleep pair: sleeping advances the clock instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class _DevinServer:
    """Scripted Devin API: queued poll responses, recorded requests."""

    def __init__(
        self,
        polls: list[httpx.Response],
        *,
        create: list[httpx.Response] | None = None,
    ) -> None:
        self.polls = polls
        self.create = create or [httpx.Response(200, json=SESSION)]
        self.requests: list[httpx.Request] = []
        self.messages: list[str] = []
        self.upload = httpx.Response(200, text='"https://files.devin.ai/attachment"')

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/v1/sessions":
            return self.create.pop(0) if len(self.create) > 1 else self.create[0]
        if request.method == "GET" and path == "/v1/sessions/devin-1":
            return self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if request.method == "POST" and path == "/v1/sessions/devin-1/message":
            self.messages.append(json.loads(request.content)["message"])
            return httpx.Response(200, json={})
        if request.method == "POST" and path == "/v1/attachments":
            return self.upload
        return httpx.Response(404, text="not found")

    def created_body(self) -> dict:
        creates = [
            request
            for request in self.requests
            if request.method == "POST" and request.url.path == "/v1/sessions"
        ]
        return json.loads(creates[-1].content)


def _status(status: str, *messages: dict) -> httpx.Response:
    return httpx.Response(200, json={"status_enum": status, "messages": list(messages)})


def _message(text: str, kind: str = "devin_message") -> dict:
    return {"type": kind, "message": text}


def _run(server, recorder, *, settings: DevinSettings | None = None, prompt: str = "write tests"):
    fake_time = _FakeTime()
    provider = DevinApiProvider(
        settings or DevinSettings(api_key="secret-key"),
        transport=httpx.MockTransport(server),
        sleep=fake_time.sleep,
        clock=fake_time,
        environ={},
    )
    request = recorder.request(Path("/ws"), prompt)
    exit_code = asyncio.run(run_provider_to_completion(provider, request))
    return exit_code, fake_time, provider


def test_finished_session_forwards_messages(recorder) -> None:
    initial = _message("write tests", kind="initial_user_message")
    server = _DevinServer(
        [
            _status("running", initial),
            _status("running", initial, _message("Working on it")),
            _status("finished", initial, _message("Working on it"), _message("Done")),
        ],
    )

    exit_code, fake_time, provider = _run(server, recorder)

    assert exit_code == 0
    assert recorder.started[0].label == "devin-api"
    assert recorder.started[0].detail == "baseUrl=https://api.devin.ai/v1"
    assert recorder.logs() == [
        "Devin session: https://app.devin.ai/sessions/devin-1",
        "Working on it",
        "Done",
    ]
    assert server.requests[0].headers["Authorization"] == "Bearer secret-key"
    assert server.created_body() == {
        "prompt": "write tests",
        "idempotent": True,
        "tags": ["testgen-agents", "testing"],
        "max_acu_limit": 10,
    }
    assert fake_time.sleeps == pytest.approx([5.0, 6.0])
    assert provider.execution.status is IDLE


def test_rate_limits_back_off_then_succeed(recorder) -> None:
    settings = DevinSettings(
        api_key="k",
        poll_initial_delay_seconds=1.0,
        poll_max_delay_seconds=2.0,
        max_acu_limit=None,
    )
    server = _DevinServer(
        [
            httpx.Response(429, text="slow down"),
            httpx.Response(429, text="slow down"),
            httpx.Response(429, text="slow down"),
            _status("finished"),
        ],
    )

    exit_code, fake_time, _ = _run(server, recorder, settings=settings)

    assert exit_code == 0
    assert fake_time.sleeps == pytest.approx([1.0, 1.5, 2.0])
    assert fake_time.sleeps == sorted(fake_time.sleeps)
    warnings = recorder.logs(LogLevel.WARN)
    assert len(warnings) == 3
    assert warnings[0] == "Devin API rate limited (429). Retrying in 1s..."
    assert "max_acu_limit" not in server.created_body()


def test_server_errors_and_invalid_json_are_retried(recorder) -> None:
    server = _DevinServer(
        [
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, text="{not json"),
            _status("finished"),
        ],
    )

    exit_code, _, _ = _run(server, recorder)

    assert exit_code == 0
    warnings = recorder.logs(LogLevel.WARN)
    assert warnings[0] == "Devin API poll returned 502 (retry)"
    assert warnings[1].startswith("Devin API returned invalid JSON (retry):")


def test_blocked_with_completion_markers_counts_as_success(recorder) -> None:
    server = _DevinServer([_status("blocked", _message(f"patch...\n{PATCH_MARKER}"))])

    exit_code, _, _ = _run(server, recorder)

    assert exit_code == 0
    assert server.messages == []


def test_blocked_without_markers_sends_bounded_follow_ups(recorder) -> None:
    server = _DevinServer([_status("blocked", _message("Which framework should I use?"))])

    exit_code, _, _ = _run(server, recorder)

    assert exit_code == 1
    assert len(server.messages) == 2
    assert recorder.logs(LogLevel.WARN)[-1].startswith("Devin session ended blocked")


def test_expired_session_fails(recorder) -> None:
    exit_code, _, _ = _run(_DevinServer([_status("expired")]), recorder)

    assert exit_code == 1
    assert recorder.logs(LogLevel.WARN) == ["Devin session expired after 0s."]


def test_missing_api_key_completes_with_none(recorder) -> None:
    server = _DevinServer([_status("finished")])

    exit_code, _, _ = _run(server, recorder, settings=DevinSettings())

    assert exit_code is None
    assert server.requests == []
    assert recorder.logs(LogLevel.ERROR) == [
        "Devin API key is not configured. Set DEVIN_API_KEY to use the Devin provider.",
    ]
    assert recorder.types == ["started", "log", "completed"]


def test_api_key_falls_back_to_environment() -> None:
    provider = DevinApiProvider(DevinSettings(), environ={"DEVIN_API_KEY": " env-key "})

    assert provider.resolve_api_key() == "env-key"


def test_unauthorized_poll_is_fatal(recorder) -> None:
    server = _DevinServer([httpx.Response(401, text="invalid token")])

    exit_code, fake_time, _ = _run(server, recorder)

    assert exit_code is None
    assert fake_time.sleeps == []
    errors = recorder.logs(LogLevel.ERROR)
    assert errors[0].startswith(
        "Devin API execution error: Devin API GET /sessions/{id} failed: 401",
    )


def test_poll_ceiling_and_heartbeat(recorder) -> None:
    settings = DevinSettings(
        api_key="k",
        poll_initial_delay_seconds=1.0,
        poll_timeout_seconds=5.0,
        heartbeat_interval_seconds=2.0,
    )

    exit_code, _, _ = _run(_DevinServer([_status("running")]), recorder, settings=settings)

    assert exit_code is None
    assert any(message.startswith("Devin API running...") for message in recorder.logs())
    assert recorder.logs(LogLevel.ERROR) == [
        "Devin session devin-1 did not finish within 5s (last status=running).",
    ]


def test_session_create_retries_transient_failures(recorder) -> None:
    server = _DevinServer(
        [_status("finished")],
        create=[httpx.Response(503, text="unavailable"), httpx.Response(200, json=SESSION)],
    )

    exit_code, _, _ = _run(server, recorder)

    assert exit_code == 0
    assert recorder.logs(LogLevel.WARN)[0].startswith(
        "Devin API session create failed (retry 1/3): Devin API POST /sessions failed: 503",
    )


def test_session_create_client_error_is_not_retried(recorder) -> None:
    server = _DevinServer(
        [_status("finished")],
        create=[httpx.Response(400, text="bad request")],
    )

    exit_code, fake_time, _ = _run(server, recorder)

    assert exit_code is None
    assert fake_time.sleeps == []
    assert "400" in recorder.logs(LogLevel.ERROR)[0]


def test_oversized_prompt_is_sent_as_attachments(recorder) -> None:
    settings = DevinSettings(api_key="k", attachment_threshold_chars=50)
    prompt = "Generate tests for this change.\n```diff\n+ added line\n```\n" + "x" * 60
    server = _DevinServer([_status("finished")])

    exit_code, _, _ = _run(server, recorder, settings=settings, prompt=prompt)

    assert exit_code == 0
    body = server.created_body()["prompt"]
    assert 'ATTACHMENT:"https://files.devin.ai/attachment"' in body
    assert "(diff.patch)" in body
    assert "(instructions.txt)" in body
    assert recorder.logs()[0].startswith("Prompt is ")


def test_failed_upload_truncates_the_prompt(recorder) -> None:
    settings = DevinSettings(
        api_key="k",
        attachment_threshold_chars=50,
        truncated_prompt_chars=40,
    )
    server = _DevinServer([_status("finished")])
    server.upload = httpx.Response(500, text="upload broken")

    exit_code, _, _ = _run(server, recorder, settings=settings, prompt="y" * 100)

    assert exit_code == 0
    assert server.created_body()["prompt"] == "y" * 40 + "\n\n[... truncated 60 characters ...]"
    assert recorder.logs(LogLevel.WARN)[0].startswith("Devin attachment upload failed")


def test_dispose_cancels_polling(recorder) -> None:
    server = _DevinServer([_status("running")])

    async def never_wake(_delay: float) -> None:
        await asyncio.Event().wait()

    provider = DevinApiProvider(
        DevinSettings(api_key="k"),
        transport=httpx.MockTransport(server),
        sleep=never_wake,
        environ={},
    )
    handles = []

    async def scenario() -> int | None:
        run = asyncio.create_task(
            run_provider_to_completion(
                provider,
                recorder.request(Path("/ws")),
                on_running_task=handles.append,
            ),
        )
        while not any(request.method == "GET" for request in server.requests):
            await asyncio.sleep(0.01)
        handles[0].dispose()
        return await asyncio.wait_for(run, 5)

    assert asyncio.run(scenario()) is None
    assert recorder.completed[0].exit_code is None
    assert provider.execution.status is IDLE


def test_poll_backoff_clamps_initial_delay() -> None:
    assert PollBackoff(initial=0.1, maximum=30).delay == 1.0
    assert PollBackoff(initial=60, maximum=30).delay == 30

    backoff = PollBackoff(initial=20, maximum=30)
    backoff.grow(1.5)
    assert backoff.delay == 30


def test_devin_api_error_carries_status() -> None:
    error = DevinApiError("boom", status_code=429, transient=True)

    assert error.status_code == 429
    assert error.transient is True
