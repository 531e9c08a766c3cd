"""Process-wide registry of running agent tasks with out-of-band cancellation."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from testgen_agents.events import RunningTask

logger = logging.getLogger(__name__)

TaskStateListener = Callable[[bool, int, str | None], None]


@dataclass(slots=True)
class ManagedTask:
    task_id: str
    label: str
    running_task: RunningTask
    started_at: float = field(default_factory=time.time)
    cancelled: bool = False
    phase_label: str | None = None


class TaskManager:
    """Tracks running tasks and notifies listeners on every state change.

    Listeners receive ``(is_running, task_count, phase_label)``; their
    exceptions are logged and swallowed.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, ManagedTask] = {}
        self._listeners: list[TaskStateListener] = []

    def register(self, task_id: str, label: str, running_task: RunningTask) -> None:
        with self._lock:
            self._tasks[task_id] = ManagedTask(
                task_id=task_id,
                label=label,
                running_task=running_task,
            )
        self._notify()

    def unregister(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
        self._notify()

    def cancel(self, task_id: str) -> bool:
        """Dispose the task and drop it; ``False`` when it is not registered."""

        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False
            task.cancelled = True
        try:
            task.running_task.dispose()
        except Exception:  # noqa: BLE001
            logger.warning("Dispose of cancelled task %s failed", task_id, exc_info=True)
        self._notify()
        return True

    def cancel_all(self) -> int:
        return sum(1 for task_id in self.running_task_ids() if self.cancel(task_id))

    def is_cancelled(self, task_id: str) -> bool:
        """Unknown tasks count as cancelled: they were cancelled or already finished."""

        with self._lock:
            task = self._tasks.get(task_id)
            return True if task is None else task.cancelled

    def update_running_task(self, task_id: str, running_task: RunningTask) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None:
                task.running_task = running_task

    def update_phase(self, task_id: str, phase_label: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            task.phase_label = phase_label
        self._notify()

    def current_phase_label(self) -> str | None:
        with self._lock:
            for task in self._tasks.values():
                if task.phase_label:
                    return task.phase_label
        return None

    def running_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def is_running(self) -> bool:
        return self.running_count() > 0

    def running_task_ids(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def add_listener(self, listener: TaskStateListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: TaskStateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            count = len(self._tasks)
        phase_label = self.current_phase_label()
        for listener in listeners:
            try:
                listener(count > 0, count, phase_label)
            except Exception:  # noqa: BLE001
                logger.warning("Task state listener failed", exc_info=True)


task_manager = TaskManager()
