"""Tests for the dependency-aware task scheduler."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from agentmesh.core.errors import NoSuitableAgentError
from agentmesh.core.models import Task, TaskPriority, TaskStatus
from agentmesh.orchestration.scheduler import TaskScheduler


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def finish(task: Task, status: TaskStatus = TaskStatus.COMPLETED) -> Task:
    task.transition(TaskStatus.IN_PROGRESS)
    task.transition(status)
    return task


def test_queue_orders_by_dependencies_priority_then_age() -> None:
    scheduler = TaskScheduler()
    parent = Task(title="parent")
    old_low = Task(title="old-low", priority=TaskPriority.LOW)
    new_low = Task(title="new-low", priority=TaskPriority.LOW, created_at=old_low.created_at + timedelta(seconds=1))
    urgent = Task(title="urgent", priority=TaskPriority.URGENT)
    dependent = Task(title="dependent", priority=TaskPriority.URGENT, dependencies=[parent.id])
    for task in (dependent, new_low, old_low, urgent, parent):
        scheduler.schedule_task(task)

    titles = [task.title for task in scheduler.get_queued_tasks()]

    assert titles == ["urgent", "parent", "old-low", "new-low", "dependent"]


def test_duplicate_task_is_rejected() -> None:
    scheduler = TaskScheduler()
    task = Task(title="once")
    scheduler.schedule_task(task)

    with pytest.raises(ValueError):
        scheduler.schedule_task(task)


def test_ready_tasks_wait_for_completed_dependencies() -> None:
    scheduler = TaskScheduler()
    parent = Task(title="parent")
    child = Task(title="child", dependencies=[parent.id])
    scheduler.schedule_task(parent)
    scheduler.schedule_task(child)

    assert scheduler.ready_tasks() == [parent]

    scheduler.mark_started(parent)
    assert scheduler.ready_tasks() == []
    assert scheduler.on_task_finished(finish(parent)) == []
    assert scheduler.ready_tasks() == [child]


def test_failed_dependency_blocks_dependents() -> None:
    scheduler = TaskScheduler()
    parent = Task(title="parent")
    child = Task(title="child", dependencies=[parent.id])
    bystander = Task(title="bystander")
    for task in (parent, child, bystander):
        scheduler.schedule_task(task)
    scheduler.mark_started(parent)

    blocked = scheduler.on_task_finished(finish(parent, TaskStatus.FAILED))

    assert blocked == [child]
    assert scheduler.get_queued_tasks() == [bystander]
    # The scheduler never changes task status itself.
    assert child.status == TaskStatus.PENDING


def test_reschedule_changes_priority_order() -> None:
    scheduler = TaskScheduler()
    first = Task(title="first")
    second = Task(title="second")
    scheduler.schedule_task(first)
    scheduler.schedule_task(second)

    assert scheduler.reschedule_task(second.id, TaskPriority.URGENT)
    assert [task.title for task in scheduler.get_queued_tasks()] == ["second", "first"]
    assert not scheduler.reschedule_task("missing")


def test_stats_count_queued_active_and_completed() -> None:
    scheduler = TaskScheduler()
    done = Task(title="done", priority=TaskPriority.HIGH)
    running = Task(title="running", priority=TaskPriority.URGENT)
    waiting = Task(title="waiting")
    for task in (done, running, waiting):
        scheduler.schedule_task(task)
    scheduler.mark_started(done)
    done.started_at = done.created_at + timedelta(seconds=2)
    scheduler.on_task_finished(finish(done))
    scheduler.mark_started(running)

    stats = scheduler.stats()

    assert stats.queued == 1
    assert stats.queued_by_priority["medium"] == 1
    assert stats.active == 1
    assert stats.active_by_priority["urgent"] == 1
    assert stats.completed == 1
    assert stats.average_wait == pytest.approx(2.0)


@pytest.mark.anyio
async def test_tick_keeps_unassignable_tasks_queued() -> None:
    accepted = []

    async def assign(task: Task) -> None:
        if task.title == "nobody":
            raise NoSuitableAgentError(task.id)
        accepted.append(task.title)
        scheduler.mark_started(task)

    scheduler = TaskScheduler(assign)
    scheduler.schedule_task(Task(title="nobody", priority=TaskPriority.HIGH))
    scheduler.schedule_task(Task(title="somebody"))

    assert await scheduler.tick() == 1
    assert accepted == ["somebody"]
    assert [task.title for task in scheduler.get_queued_tasks()] == ["nobody"]


@pytest.mark.anyio
async def test_tick_survives_unexpected_callback_errors() -> None:
    accepted = []

    async def assign(task: Task) -> None:
        if task.title == "broken":
            raise TypeError("bad task")
        accepted.append(task.title)
        scheduler.mark_started(task)

    scheduler = TaskScheduler(assign)
    scheduler.schedule_task(Task(title="broken", priority=TaskPriority.URGENT))
    scheduler.schedule_task(Task(title="fine"))

    assert await scheduler.tick() == 1
    assert accepted == ["fine"]
    assert [task.title for task in scheduler.get_queued_tasks()] == ["broken"]


@pytest.mark.anyio
async def test_tick_respects_max_active() -> None:
    scheduler = TaskScheduler(max_active=1)

    async def assign(task: Task) -> None:
        scheduler.mark_started(task)

    scheduler.set_ready_callback(assign)
    scheduler.schedule_task(Task(title="a"))
    scheduler.schedule_task(Task(title="b"))

    assert await scheduler.tick() == 1
    assert len(scheduler.get_active_tasks()) == 1
    assert len(scheduler.get_queued_tasks()) == 1


@pytest.mark.anyio
async def test_polling_loop_hands_ready_tasks_over() -> None:
    handed = asyncio.Event()

    async def assign(task: Task) -> None:
        scheduler.mark_started(task)
        handed.set()

    scheduler = TaskScheduler(assign, interval=0.01)
    await scheduler.start()
    try:
        scheduler.schedule_task(Task(title="later"))
        await asyncio.wait_for(handed.wait(), timeout=1)
    finally:
        await scheduler.stop()

    assert not scheduler.running
    assert scheduler.get_queued_tasks() == []
