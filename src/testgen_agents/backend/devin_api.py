"""Devin sessions API backend: create a remote session and poll it to a terminal status."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

from testgen_agents.backend.attachments import (
    PromptAttachment,
    UploadedAttachment,
    build_short_prompt,
    parse_upload_response,
    split_prompt_for_attachments,
    truncate_prompt,
)
from testgen_agents.backend.base import (
    ProviderError,
    RunEmitter,
    SingleFlightProvider,
    call_in_loop,
)
from testgen_agents.backend.mapping import as_record, get_str
from testgen_agents.config import DEVIN_API_KEY_ENV, DevinSettings, normalize_base_url
from testgen_agents.events import LogLevel, RunningTask, RunRequest
from testgen_agents.sanitization import redact_secrets

logger = logging.getLogger(__name__)

DEVIN_API_PROVIDER_ID = "devin-api"
_TRANSIENT_BACKOFF = 1.5
_POLL_BACKOFF = 1.2
_MIN_POLL_DELAY_SECONDS = 1.0
_ERROR_BODY_PREVIEW_CHARS = 500
_UNBLOCK_MESSAGE = (
    "Please continue and complete the task without asking for further input. "
    "Output the result only between the required markers."
)

Sleep = Callable[[float], Awaitable[None]]


class SessionStatus(str, Enum):
    """Terminal ``status_enum`` values of a Devin session."""

    FINISHED = "finished"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class DevinApiError(ProviderError):
    """Devin API failure carrying the HTTP status when there was one."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, transient=transient)
        self.status_code = status_code


@dataclass(slots=True)
class RemoteSession:
    session_id: str
    url: str | None = None
    forwarded_count: int = 0
    last_status: str | None = None
    markers_seen: bool = False
    unblock_attempts: int = 0


class PollBackoff:
    """Multiplicative delay capped at ``maximum``; starts within ``[1s, maximum]``."""

    def __init__(self, *, initial: float, maximum: float) -> None:
        self._maximum = maximum
        self.delay = min(maximum, max(_MIN_POLL_DELAY_SECONDS, initial))

    def grow(self, factor: float) -> None:
        self.delay = min(self._maximum, self.delay * factor)


class DevinSessionsClient:
    """Sessions, messages and attachments endpoints over one ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def create_session(self, body: dict[str, Any]) -> RemoteSession:
        response = await self._client.post("/sessions", json=body)
        _raise_for_status(response, "POST /sessions")
        try:
            payload = _json_record(response)
        except ValueError as error:
            raise DevinApiError(f"Devin API /sessions returned invalid JSON: {error}") from error
        session_id = get_str(payload, "session_id")
        if not session_id:
            raise DevinApiError("Devin API /sessions returned no session_id")
        return RemoteSession(session_id=session_id, url=get_str(payload, "url") or None)

    async def get_session(self, session_id: str) -> httpx.Response:
        return await self._client.get(f"/sessions/{quote(session_id, safe='')}")

    async def send_message(self, session_id: str, message: str) -> None:
        response = await self._client.post(
            f"/sessions/{quote(session_id, safe='')}/message",
            json={"message": message},
        )
        _raise_for_status(response, "POST /sessions/{id}/message")

    async def upload_attachment(self, attachment: PromptAttachment) -> str:
        response = await self._client.post(
            "/attachments",
            files={
                "file": (
                    attachment.filename,
                    attachment.content.encode("utf-8"),
                    "text/plain",
                ),
            },
        )
        _raise_for_status(response, "POST /attachments")
        url = parse_upload_response(response.text)
        if not url:
            raise DevinApiError(
                f"Devin API /attachments returned no URL for {attachment.filename}",
            )
        return url


class PollingHandle:
    """Cancellation token for the asyncio task that owns one Devin run."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._task: asyncio.Task[None] | None = None
        self._cancel_requested = False

    def attach(self, task: asyncio.Task[None]) -> None:
        self._task = task
        if self._cancel_requested:
            task.cancel()

    def cancel(self) -> None:
        call_in_loop(self._loop, self._cancel)

    def _cancel(self) -> None:
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class DevinApiProvider(SingleFlightProvider):
    """Run the prompt as a Devin session; session messages become info logs."""

    provider_id = DEVIN_API_PROVIDER_ID
    display_name = "Devin API"
    short_name = "Devin API"

    def __init__(
        self,
        settings: DevinSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings or DevinSettings()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._environ = environ
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def base_url(self) -> str:
        return normalize_base_url(self._settings.base_url)

    def resolve_api_key(self) -> str | None:
        configured = (self._settings.api_key or "").strip()
        if configured:
            return configured
        environ = os.environ if self._environ is None else self._environ
        return environ.get(DEVIN_API_KEY_ENV, "").strip() or None

    def run(self, request: RunRequest) -> RunningTask:
        loop = asyncio.get_running_loop()
        emitter = RunEmitter(request)
        handle = PollingHandle(loop)
        self._supersede(handle, emitter)
        emitter.started(self.provider_id, f"baseUrl={self.base_url}")
        task = loop.create_task(
            self._drive(request, handle, emitter),
            name=f"{self.provider_id}:{request.task_id}",
        )
        handle.attach(task)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return RunningTask(request.task_id, lambda: self._dispose(handle))

    async def _drive(
        self,
        request: RunRequest,
        handle: PollingHandle,
        emitter: RunEmitter,
    ) -> None:
        try:
            exit_code = await self._execute(request, emitter)
        except asyncio.CancelledError:
            emitter.complete(None)
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Devin run %s failed", request.task_id, exc_info=True)
            emitter.log(LogLevel.ERROR, f"Devin API execution error: {error}")
            emitter.complete(None)
        else:
            emitter.complete(exit_code)
        finally:
            self._execution.release(handle)

    async def _execute(self, request: RunRequest, emitter: RunEmitter) -> int | None:
        api_key = self.resolve_api_key()
        if not api_key:
            emitter.log(
                LogLevel.ERROR,
                "Devin API key is not configured. "
                f"Set {DEVIN_API_KEY_ENV} to use the Devin provider.",
            )
            return None

        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(self._settings.request_timeout_seconds, connect=10.0),
            transport=self._transport,
        ) as http_client:
            client = DevinSessionsClient(http_client)
            prompt = await self._prepare_prompt(client, request.prompt, emitter)
            session = await self._create_session(client, prompt, emitter)
            emitter.log(
                LogLevel.INFO,
                f"Devin session: {session.url}"
                if session.url
                else f"Devin session_id: {session.session_id}",
            )
            return await self._poll_until_done(client, session, emitter)

    def _create_body(self, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "prompt": prompt,
            "idempotent": self._settings.idempotent,
            "tags": list(self._settings.tags),
        }
        if self._settings.max_acu_limit is not None and self._settings.max_acu_limit > 0:
            body["max_acu_limit"] = self._settings.max_acu_limit
        return body

    async def _create_session(
        self,
        client: DevinSessionsClient,
        prompt: str,
        emitter: RunEmitter,
    ) -> RemoteSession:
        body = self._create_body(prompt)
        attempts = max(1, self._settings.create_attempts)
        backoff = PollBackoff(
            initial=self._settings.poll_initial_delay_seconds,
            maximum=self._settings.poll_max_delay_seconds,
        )
        for attempt in range(1, attempts + 1):
            try:
                return await client.create_session(body)
            except httpx.TransportError as error:
                reason = str(error) or type(error).__name__
            except DevinApiError as error:
                if not error.transient:
                    raise
                reason = str(error)
            if attempt == attempts:
                raise DevinApiError(
                    f"Devin API /sessions failed after {attempts} attempts: {reason}",
                    transient=True,
                )
            emitter.log(
                LogLevel.WARN,
                f"Devin API session create failed (retry {attempt}/{attempts}): {reason}",
            )
            await self._sleep(backoff.delay)
            backoff.grow(_TRANSIENT_BACKOFF)
        raise DevinApiError("Devin API /sessions was never attempted")

    async def _prepare_prompt(
        self,
        client: DevinSessionsClient,
        prompt: str,
        emitter: RunEmitter,
    ) -> str:
        if len(prompt) <= self._settings.attachment_threshold_chars:
            return prompt
        uploaded: list[UploadedAttachment] = []
        try:
            for attachment in split_prompt_for_attachments(prompt):
                url = await client.upload_attachment(attachment)
                uploaded.append(UploadedAttachment(filename=attachment.filename, url=url))
        except (DevinApiError, httpx.HTTPError) as error:
            emitter.log(
                LogLevel.WARN,
                f"Devin attachment upload failed ({error}); truncating the prompt to "
                f"{self._settings.truncated_prompt_chars} characters.",
            )
            return truncate_prompt(prompt, self._settings.truncated_prompt_chars)
        names = ", ".join(attachment.filename for attachment in uploaded)
        emitter.log(
            LogLevel.INFO,
            f"Prompt is {len(prompt)} characters; uploaded as attachments: {names}",
        )
        return build_short_prompt(uploaded)

    async def _poll_until_done(  # noqa: C901, PLR0911, PLR0912
        self,
        client: DevinSessionsClient,
        session: RemoteSession,
        emitter: RunEmitter,
    ) -> int | None:
        settings = self._settings
        started_at = self._clock()
        last_heartbeat_at = started_at
        backoff = PollBackoff(
            initial=settings.poll_initial_delay_seconds,
            maximum=settings.poll_max_delay_seconds,
        )

        while True:
            elapsed = self._clock() - started_at
            if elapsed >= settings.poll_timeout_seconds:
                emitter.log(
                    LogLevel.ERROR,
                    f"Devin session {session.session_id} did not finish within "
                    f"{int(settings.poll_timeout_seconds)}s "
                    f"(last status={session.last_status or 'unknown'}).",
                )
                return None

            retry_reason: str | None = None
            payload: dict[str, Any] = {}
            try:
                response = await client.get_session(session.session_id)
            except httpx.TransportError as error:
                retry_reason = f"Devin API poll failed (retry): {error or type(error).__name__}"
            else:
                if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
                    retry_reason = (
                        f"Devin API rate limited (429). Retrying in {int(backoff.delay)}s..."
                    )
                elif response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR:
                    retry_reason = f"Devin API poll returned {response.status_code} (retry)"
                else:
                    _raise_for_status(response, "GET /sessions/{id}")
                    try:
                        payload = _json_record(response)
                    except ValueError as error:
                        retry_reason = f"Devin API returned invalid JSON (retry): {error}"

            if retry_reason is not None:
                emitter.log(LogLevel.WARN, retry_reason)
                await self._sleep(backoff.delay)
                backoff.grow(_TRANSIENT_BACKOFF)
                continue

            status = get_str(payload, "status_enum")
            if status:
                session.last_status = status
            self._forward_messages(payload.get("messages"), session, emitter)

            elapsed_seconds = int(self._clock() - started_at)
            if status == SessionStatus.FINISHED.value:
                return 0
            if status == SessionStatus.EXPIRED.value:
                emitter.log(
                    LogLevel.WARN,
                    f"Devin session expired after {elapsed_seconds}s.",
                )
                return 1
            if status == SessionStatus.BLOCKED.value:
                if session.markers_seen:
                    emitter.log(
                        LogLevel.INFO,
                        "Devin session is blocked but already produced the completion markers; "
                        "treating it as finished.",
                    )
                    return 0
                if session.unblock_attempts >= settings.max_unblock_attempts:
                    emitter.log(
                        LogLevel.WARN,
                        "Devin session ended blocked (waiting for input) "
                        f"after {elapsed_seconds}s.",
                    )
                    return 1
                await self._send_unblock(client, session, emitter)

            now = self._clock()
            if now - last_heartbeat_at >= settings.heartbeat_interval_seconds:
                last_heartbeat_at = now
                emitter.log(
                    LogLevel.INFO,
                    f"Devin API running... (elapsed {int(now - started_at)}s, "
                    f"status={session.last_status or 'unknown'})",
                )
            await self._sleep(backoff.delay)
            backoff.grow(_POLL_BACKOFF)

    async def _send_unblock(
        self,
        client: DevinSessionsClient,
        session: RemoteSession,
        emitter: RunEmitter,
    ) -> None:
        session.unblock_attempts += 1
        attempt = f"{session.unblock_attempts}/{self._settings.max_unblock_attempts}"
        try:
            await client.send_message(session.session_id, _UNBLOCK_MESSAGE)
        except (DevinApiError, httpx.HTTPError) as error:
            emitter.log(LogLevel.WARN, f"Devin follow-up message failed ({attempt}): {error}")
            return
        emitter.log(
            LogLevel.WARN,
            f"Devin session is blocked; asked it to continue without input ({attempt}).",
        )

    def _forward_messages(
        self,
        messages: object,
        session: RemoteSession,
        emitter: RunEmitter,
    ) -> None:
        if not isinstance(messages, list) or len(messages) <= session.forwarded_count:
            return
        fresh = messages[session.forwarded_count :]
        session.forwarded_count = len(messages)
        for item in fresh:
            record = as_record(item)
            text = (get_str(record, "message") or "").strip()
            if not text:
                continue
            if (get_str(record, "type") or "").strip() == "initial_user_message":
                continue
            if any(marker in text for marker in self._settings.completion_markers):
                session.markers_seen = True
            emitter.log(LogLevel.INFO, text)


def _json_record(response: httpx.Response) -> dict[str, Any]:
    text = response.text
    if not text.strip():
        return {}
    parsed = json.loads(text)
    return parsed if isinstance(parsed, dict) else {}


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    body = redact_secrets(response.text, max_chars=_ERROR_BODY_PREVIEW_CHARS)
    raise DevinApiError(
        f"Devin API {operation} failed: {status} {response.reason_phrase} {body}".strip(),
        status_code=status,
        transient=status == httpx.codes.TOO_MANY_REQUESTS
        or status >= httpx.codes.INTERNAL_SERVER_ERROR,
    )
