"""Time-driven liveness watchdog for process-based agents.

The decision logic takes the current time explicitly, so it can be driven by
a fake clock. ``start`` binds it to an event loop with ``call_later`` timers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from testgen_agents.backend.mapping import StreamStats
from testgen_agents.config import MonitorSettings
from testgen_agents.events import LogLevel

logger = logging.getLogger(__name__)

EmitLog = Callable[[LogLevel, str, bool], None]


class LivenessMonitor:
    """Heartbeat, silence watchdog, ignored-event summary and auto-kill for one run.

    The monitor only reads ``stats``; it never emits ``completed``. Auto-kill
    asks ``request_kill`` to stop the process and leaves the exit code to the
    process close path.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        label: str,
        stats: StreamStats,
        settings: MonitorSettings,
        emit_log: EmitLog,
        request_kill: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._label = label
        self._stats = stats
        self._settings = settings
        self._emit_log = emit_log
        self._request_kill = request_kill
        self._clock = clock

        started_at = clock()
        self._started_at = started_at
        self._has_output = False
        self._last_output_at = started_at
        self._last_emit_at = started_at
        self._last_silence_log_at = started_at
        self._last_summary_at = started_at
        self._ignored_at_last_summary = 0
        self._kill_requested = False
        self._high_output_reported = False
        self._stopped = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._heartbeat_handle: asyncio.TimerHandle | None = None
        self._check_handle: asyncio.TimerHandle | None = None

    @property
    def has_output(self) -> bool:
        return self._has_output

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested

    @property
    def stopped(self) -> bool:
        return self._stopped

    def mark_output(self, now: float | None = None) -> None:
        """Record raw output; the first call disarms the heartbeat for good."""

        self._last_output_at = self._now(now)
        if not self._has_output:
            self._has_output = True
            self._cancel_heartbeat()

    def note_emit(self, now: float | None = None) -> None:
        self._last_emit_at = self._now(now)

    def heartbeat(self, now: float | None = None) -> bool:
        if self._stopped or self._has_output:
            return False
        elapsed = self._now(now) - self._started_at
        self._emit_log(
            LogLevel.INFO,
            f"{self._label} running (elapsed {_seconds(elapsed)}s). No output yet.",
            False,
        )
        return True

    def check(self, now: float | None = None) -> None:
        """Run one watchdog tick."""

        if self._stopped:
            return
        current = self._now(now)
        self._check_silence(current)
        self._check_ignored_summary(current)
        self._check_high_output()
        self._check_kill(current)

    def stop(self) -> None:
        self._stopped = True
        self._cancel_heartbeat()
        if self._check_handle is not None:
            self._check_handle.cancel()
            self._check_handle = None

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Arm the heartbeat and the periodic check on ``loop``."""

        self._loop = loop
        if not self._has_output:
            self._heartbeat_handle = loop.call_later(
                self._settings.heartbeat_initial_delay_seconds,
                self._on_heartbeat_timer,
            )
        self._check_handle = loop.call_later(
            self._settings.check_interval_seconds,
            self._on_check_timer,
        )

    def _on_heartbeat_timer(self) -> None:
        self._heartbeat_handle = None
        if not self.heartbeat() or self._loop is None:
            return
        self._heartbeat_handle = self._loop.call_later(
            self._settings.heartbeat_interval_seconds,
            self._on_heartbeat_timer,
        )

    def _on_check_timer(self) -> None:
        self._check_handle = None
        if self._stopped or self._loop is None:
            return
        try:
            self.check()
        finally:
            if not self._stopped:
                self._check_handle = self._loop.call_later(
                    self._settings.check_interval_seconds,
                    self._on_check_timer,
                )

    def _check_silence(self, now: float) -> None:
        if not self._has_output:
            return
        silence = now - self._last_output_at
        if silence < self._settings.silence_warn_after_seconds:
            return
        if now - self._last_silence_log_at < self._settings.silence_log_interval_seconds:
            return
        self._last_silence_log_at = now
        elapsed = now - self._started_at
        self._emit_log(
            LogLevel.INFO,
            f"{self._label} running (elapsed {_seconds(elapsed)}s). "
            f"Quiet for {_seconds(silence)}s since last output.",
            True,
        )

    def _check_ignored_summary(self, now: float) -> None:
        quiet_window = self._settings.ignored_summary_quiet_seconds
        ignored_total = self._stats.ignored_total
        if now - self._last_emit_at < quiet_window:
            return
        if ignored_total <= self._ignored_at_last_summary:
            return
        if now - self._last_summary_at < quiet_window:
            return
        self._last_summary_at = now
        self._ignored_at_last_summary = ignored_total
        counts = " ".join(
            f"ignored({category})={count}"
            for category, count in sorted(self._stats.ignored.items())
        )
        self._emit_log(
            LogLevel.INFO,
            f"{self._label} is receiving events that are not displayed. "
            f"parsed={self._stats.parsed_count} {counts} "
            f"last={self._stats.last_tag or 'unknown'}",
            True,
        )

    def _check_high_output(self) -> None:
        if self._high_output_reported:
            return
        stats = self._stats
        if (
            stats.max_text_chars < self._settings.high_output_text_chars
            and stats.parsed_count < self._settings.high_output_event_count
        ):
            return
        self._high_output_reported = True
        self._emit_log(
            LogLevel.INFO,
            f"{self._label} high output volume: max text length={stats.max_text_chars} "
            f"parsed events={stats.parsed_count}",
            True,
        )

    def _check_kill(self, now: float) -> None:
        if self._kill_requested:
            return
        silence = now - self._last_output_at
        ceiling = self._settings.max_silence_before_kill_seconds
        if silence < ceiling:
            return
        self._kill_requested = True
        self._emit_log(
            LogLevel.ERROR,
            f"{self._label} produced no output for {_seconds(silence)}s "
            f"(limit {_seconds(ceiling)}s); stopping the process.",
            True,
        )
        try:
            self._request_kill()
        except Exception:  # noqa: BLE001
            logger.warning("Auto-kill of %s failed", self._label, exc_info=True)

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now


def _seconds(value: float) -> int:
    return max(0, round(value))
