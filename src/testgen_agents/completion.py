"""Await a provider run until its ``completed`` event, with an optional overall timeout."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable

from testgen_agents.backend.base import AgentProvider
from testgen_agents.events import (
    CompletedEvent,
    LogEvent,
    LogLevel,
    RunningTask,
    RunRequest,
    TestGenEvent,
    now_ms,
)

logger = logging.getLogger(__name__)


async def run_provider_to_completion(
    provider: AgentProvider,
    request: RunRequest,
    *,
    timeout_seconds: float | None = None,
    on_running_task: Callable[[RunningTask], None] | None = None,
) -> int | None:
    """Run ``request`` on ``provider`` and return the exit code of its ``completed`` event.

    Never raises for run failures: a timeout logs an error through the request
    sink, disposes the run and returns ``None``; a provider whose ``run`` raises
    gets an error log and ``completed(None)``. Exceptions from the sink and
    from ``on_running_task`` are logged and swallowed. A ``timeout_seconds`` of
    ``None`` or ``<= 0`` disables the timeout.
    """

    loop = asyncio.get_running_loop()
    outcome: asyncio.Future[int | None] = loop.create_future()
    caller_sink = request.on_event

    def deliver(event: TestGenEvent) -> None:
        try:
            caller_sink(event)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Event sink raised on %s event for task %s",
                event.type,
                request.task_id,
                exc_info=True,
            )

    def forward(event: TestGenEvent) -> None:
        deliver(event)
        if isinstance(event, CompletedEvent) and not outcome.done():
            outcome.set_result(event.exit_code)

    try:
        running = provider.run(dataclasses.replace(request, on_event=forward))
    except Exception as error:  # noqa: BLE001
        logger.exception("%s failed to start task %s", provider.display_name, request.task_id)
        deliver(
            LogEvent(
                task_id=request.task_id,
                level=LogLevel.ERROR,
                message=f"{provider.display_name} failed to start: {error}",
                timestamp_ms=now_ms(),
            ),
        )
        deliver(CompletedEvent(task_id=request.task_id, exit_code=None, timestamp_ms=now_ms()))
        return None
    if on_running_task is not None:
        try:
            on_running_task(running)
        except Exception:  # noqa: BLE001
            logger.warning("on_running_task hook failed for %s", request.task_id, exc_info=True)

    if timeout_seconds is None or timeout_seconds <= 0:
        return await outcome

    try:
        return await asyncio.wait_for(asyncio.shield(outcome), timeout_seconds)
    except TimeoutError:
        if outcome.done():
            return outcome.result()
        deliver(
            LogEvent(
                task_id=request.task_id,
                level=LogLevel.ERROR,
                message=(
                    f"Timeout: {provider.display_name} exceeded {timeout_seconds:g}s; "
                    "stopping the run."
                ),
                timestamp_ms=now_ms(),
            ),
        )
        outcome.set_result(None)
        try:
            running.dispose()
        except Exception:  # noqa: BLE001
            logger.warning("Dispose after timeout failed for %s", request.task_id, exc_info=True)
        return None
