"""Priority/dependency-aware queue that hands ready tasks back to the orchestrator."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from agentmesh.core.errors import OrchestrationError
from agentmesh.core.models import Task, TaskPriority, TaskStatus

logger = structlog.get_logger(__name__)

ReadyCallback = Callable[[Task], Awaitable[object]]


@dataclass(slots=True)
class QueueStats:
    queued: int
    queued_by_priority: Dict[str, int]
    active: int
    active_by_priority: Dict[str, int]
    completed: int
    average_wait: float


def _by_priority(tasks: List[Task]) -> Dict[str, int]:
    counts = {priority.value: 0 for priority in TaskPriority}
    for task in tasks:
        counts[task.priority.value] += 1
    return counts


class TaskScheduler:
    """Keeps pending tasks ordered and signals the ones whose dependencies are met.

    The scheduler never changes a task's status; it only tracks which ids are
    queued, active and finished, and calls ``ready_callback`` with each ready
    ``Task`` on every tick (the orchestrator assigns it by id). A task whose
    callback raises stays queued for the next tick and the remaining ready
    tasks are still offered.
    """

    def __init__(
        self,
        ready_callback: Optional[ReadyCallback] = None,
        *,
        interval: float = 1.0,
        max_active: int = 10,
    ) -> None:
        self._ready_callback = ready_callback
        self._interval = interval
        self._max_active = max_active
        self._queue: List[Task] = []
        self._active: Dict[str, Task] = {}
        self._finished: Dict[str, Task] = {}
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._runner is not None

    def set_ready_callback(self, callback: ReadyCallback) -> None:
        self._ready_callback = callback

    def schedule_task(self, task: Task) -> None:
        if not task.id or not task.title:
            raise ValueError("Task must have id and title")
        if self.knows(task.id):
            raise ValueError(f"Task with id {task.id} already exists")
        self._queue.append(task)
        self._sort_queue()

    def knows(self, task_id: str) -> bool:
        return (
            any(task.id == task_id for task in self._queue)
            or task_id in self._active
            or task_id in self._finished
        )

    def cancel_task(self, task_id: str) -> bool:
        """Drop a task from the queue (status changes are the orchestrator's job)."""
        before = len(self._queue)
        self._queue = [task for task in self._queue if task.id != task_id]
        return len(self._queue) != before

    def reschedule_task(self, task_id: str, priority: Optional[TaskPriority] = None) -> bool:
        for task in self._queue:
            if task.id == task_id:
                if priority is not None:
                    task.priority = TaskPriority(priority)
                self._sort_queue()
                return True
        return False

    def mark_started(self, task: Task) -> None:
        self.cancel_task(task.id)
        self._active[task.id] = task

    def on_task_finished(self, task: Task) -> List[Task]:
        """Record a terminal task; returns queued dependents that can never run now."""
        self._active.pop(task.id, None)
        self.cancel_task(task.id)
        self._finished[task.id] = task
        if task.status == TaskStatus.COMPLETED:
            return []
        blocked = [queued for queued in self._queue if task.id in queued.dependencies]
        for queued in blocked:
            self.cancel_task(queued.id)
        return blocked

    def ready_tasks(self) -> List[Task]:
        return [
            task
            for task in self._queue
            if all(
                dep in self._finished and self._finished[dep].status == TaskStatus.COMPLETED
                for dep in task.dependencies
            )
        ]

    def get_queued_tasks(self) -> List[Task]:
        return list(self._queue)

    def get_active_tasks(self) -> List[Task]:
        return list(self._active.values())

    def stats(self) -> QueueStats:
        waits = [
            (task.started_at - task.created_at).total_seconds()
            for task in self._finished.values()
            if task.started_at is not None
        ]
        return QueueStats(
            queued=len(self._queue),
            queued_by_priority=_by_priority(self._queue),
            active=len(self._active),
            active_by_priority=_by_priority(list(self._active.values())),
            completed=sum(1 for task in self._finished.values() if task.status == TaskStatus.COMPLETED),
            average_wait=sum(waits) / len(waits) if waits else 0.0,
        )

    async def tick(self) -> int:
        """Offer ready tasks to the callback; returns how many were accepted."""
        if self._ready_callback is None:
            return 0
        accepted = 0
        for task in self.ready_tasks():
            if len(self._active) >= self._max_active:
                break
            try:
                await self._ready_callback(task)
            except OrchestrationError as exc:
                logger.debug("task_not_assignable", task_id=task.id, reason=str(exc))
                continue
            except Exception:  # noqa: BLE001
                logger.exception("ready_callback_failed", task_id=task.id)
                continue
            accepted += 1
        return accepted

    async def start(self) -> None:
        """Start the periodic scheduling loop."""
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._stop_event.set()
        await self._runner
        self._runner = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("scheduler_tick_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def _sort_queue(self) -> None:
        # Fewer dependencies first, then higher priority, then FIFO.
        self._queue.sort(key=lambda task: (len(task.dependencies), -task.priority.weight, task.created_at))
