"""Tests for orchestrator registration, assignment and event flow."""
from __future__ import annotations

import asyncio

import pytest

from agentmesh.agents.echo import EchoAgent
from agentmesh.agents.factory import function_agent
from agentmesh.core.errors import (
    CapabilityMismatchError,
    DuplicateAgentError,
    NoSuitableAgentError,
    NotFoundError,
    TaskStateError,
)
from agentmesh.core.events import EventKind
from agentmesh.core.models import AgentConfig, AgentStatus, Message, Task, TaskStatus
from agentmesh.orchestration.orchestrator import Orchestrator, score_agent
from agentmesh.orchestration.scheduler import TaskScheduler


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def config(name: str, *capabilities: str, max_tasks: int = 1, delay: float = 0.0) -> AgentConfig:
    return AgentConfig(
        name=name,
        capabilities=frozenset(capabilities),
        max_concurrent_tasks=max_tasks,
        metadata={"delay": delay},
    )


def gated_agent(name: str, gate: asyncio.Event, *capabilities: str, max_tasks: int = 3):
    async def wait_for_gate(agent, task):
        await gate.wait()
        return name

    return function_agent(config(name, *capabilities, max_tasks=max_tasks), wait_for_gate)


async def next_event(inbox: asyncio.Queue, timeout: float = 2.0):
    return await asyncio.wait_for(inbox.get(), timeout=timeout)


@pytest.mark.anyio
async def test_trade_scenario_assigns_then_rejects_when_busy() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        agent = EchoAgent(config("A", "trade", delay=0.05))
        await orchestrator.register_agent(agent)

        first = await orchestrator.create_task("T1", required_capabilities=["trade"])
        assigned = await orchestrator.assign_task(first.id)
        assert assigned.assigned_to == agent.agent_id
        assert first.status == TaskStatus.IN_PROGRESS

        second = await orchestrator.create_task("T2", required_capabilities=["trade"])
        with pytest.raises(NoSuitableAgentError):
            await orchestrator.assign_task(second.id)
        assert second.status == TaskStatus.PENDING

        await orchestrator.wait_for_task(first.id, timeout=2)
        assert first.status == TaskStatus.COMPLETED
        assert first.progress == 100
        assert orchestrator.get_metrics()["tasks"]["completed"] == 1


@pytest.mark.anyio
async def test_assignment_returns_before_execution_finishes() -> None:
    gate = asyncio.Event()
    async with Orchestrator(auto_assign=False) as orchestrator:
        agent = gated_agent("slow", gate, "trade")
        await orchestrator.register_agent(agent)
        task = await orchestrator.create_task("wait", required_capabilities=["trade"])

        await orchestrator.assign_task(task.id)
        assert task.status == TaskStatus.IN_PROGRESS
        assert agent.status == AgentStatus.EXECUTING

        gate.set()
        await orchestrator.wait_for_task(task.id, timeout=2)
        assert task.status == TaskStatus.COMPLETED
        assert task.output == "slow"


@pytest.mark.anyio
async def test_best_agent_prefers_lower_load_then_registration_order() -> None:
    gate = asyncio.Event()
    async with Orchestrator(auto_assign=False) as orchestrator:
        first = gated_agent("first", gate, "trade", "analyze")
        second = gated_agent("second", gate, "trade")
        outsider = gated_agent("outsider", gate, "paint")
        for agent in (first, second, outsider):
            await orchestrator.register_agent(agent)

        lookup = Task(title="lookup", required_capabilities=frozenset({"trade"}))
        assert orchestrator.find_best_agent_for_task(lookup) is first

        busy = await orchestrator.create_task("busy", required_capabilities=["trade"])
        await orchestrator.assign_task(busy.id, first.agent_id)
        assert score_agent(first, lookup) == pytest.approx(0.9)
        assert orchestrator.find_best_agent_for_task(lookup) is second

        painting = Task(title="paint", required_capabilities=frozenset({"paint"}))
        assert orchestrator.find_best_agent_for_task(painting) is outsider
        flying = Task(title="fly", required_capabilities=frozenset({"fly"}))
        assert orchestrator.find_best_agent_for_task(flying) is None
        gate.set()


@pytest.mark.anyio
async def test_explicit_agent_must_be_able_to_run_task() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        painter = EchoAgent(config("painter", "paint"))
        await orchestrator.register_agent(painter)
        task = await orchestrator.create_task("trade", required_capabilities=["trade"])

        with pytest.raises(CapabilityMismatchError):
            await orchestrator.assign_task(task.id, painter.agent_id)
        with pytest.raises(NotFoundError):
            await orchestrator.assign_task(task.id, "ghost")
        with pytest.raises(NotFoundError):
            await orchestrator.assign_task("missing")
        assert task.status == TaskStatus.PENDING


@pytest.mark.anyio
async def test_task_cannot_be_assigned_twice() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        await orchestrator.register_agent(EchoAgent(config("a", max_tasks=2)))
        task = await orchestrator.create_task("once")
        await orchestrator.assign_task(task.id)

        with pytest.raises(TaskStateError):
            await orchestrator.assign_task(task.id)
        await orchestrator.wait_for_task(task.id, timeout=2)


@pytest.mark.anyio
async def test_events_reach_subscribers_in_order() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        async with orchestrator.subscribe(
            [EventKind.AGENT_REGISTERED, EventKind.TASK_CREATED, EventKind.TASK_ASSIGNED, EventKind.TASK_COMPLETED]
        ) as inbox:
            agent = EchoAgent(config("a", "trade"))
            await orchestrator.register_agent(agent)
            task = await orchestrator.create_task("T", required_capabilities=["trade"])
            await orchestrator.assign_task(task.id)

            received = [await next_event(inbox) for _ in range(4)]

    assert [event.kind for event in received] == [
        EventKind.AGENT_REGISTERED,
        EventKind.TASK_CREATED,
        EventKind.TASK_ASSIGNED,
        EventKind.TASK_COMPLETED,
    ]
    assert received[2].payload["agent_id"] == agent.agent_id
    assert received[3].source_id == agent.agent_id


@pytest.mark.anyio
async def test_background_failure_is_reported_as_event() -> None:
    async def explode(agent, task):
        raise RuntimeError("exchange down")

    async with Orchestrator(auto_assign=False) as orchestrator:
        agent = function_agent(config("fragile", "trade"), explode)
        await orchestrator.register_agent(agent)
        async with orchestrator.subscribe([EventKind.TASK_FAILED]) as inbox:
            task = await orchestrator.create_task("T", required_capabilities=["trade"])
            await orchestrator.assign_task(task.id)

            event = await next_event(inbox)

        assert event.payload["task_id"] == task.id
        assert task.status == TaskStatus.FAILED
        assert task.error == "exchange down"
        assert agent.status == AgentStatus.IDLE


@pytest.mark.anyio
async def test_duplicate_registration_is_rejected() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        agent = EchoAgent(config("a"))
        await orchestrator.register_agent(agent)

        with pytest.raises(DuplicateAgentError):
            await orchestrator.register_agent(agent)
        assert len(orchestrator.list_agents()) == 1


@pytest.mark.anyio
async def test_unregister_shuts_agent_down_and_cancels_tasks() -> None:
    gate = asyncio.Event()
    async with Orchestrator(auto_assign=False) as orchestrator:
        agent = gated_agent("worker", gate, "trade")
        await orchestrator.register_agent(agent)
        task = await orchestrator.create_task("long", required_capabilities=["trade"])
        await orchestrator.assign_task(task.id)

        await orchestrator.unregister_agent(agent.agent_id)

        assert task.status == TaskStatus.CANCELLED
        assert agent.status == AgentStatus.SHUTDOWN
        with pytest.raises(NotFoundError):
            orchestrator.get_agent(agent.agent_id)
        with pytest.raises(NotFoundError):
            await orchestrator.unregister_agent(agent.agent_id)
        gate.set()
        await orchestrator.wait_for_task(task.id, timeout=2)
        assert task.status == TaskStatus.CANCELLED


@pytest.mark.anyio
async def test_scheduler_assigns_dependencies_in_order() -> None:
    scheduler = TaskScheduler(interval=0.01)
    async with Orchestrator(scheduler=scheduler, auto_assign=True) as orchestrator:
        await orchestrator.register_agent(EchoAgent(config("a", "trade")))
        async with orchestrator.subscribe([EventKind.TASK_COMPLETED]) as inbox:
            parent = await orchestrator.create_task("parent", required_capabilities=["trade"])
            child = await orchestrator.create_task(
                "child", required_capabilities=["trade"], dependencies=[parent.id]
            )

            completed = [(await next_event(inbox)).payload["task_id"] for _ in range(2)]

        assert completed == [parent.id, child.id]
        assert child.started_at >= parent.completed_at


@pytest.mark.anyio
async def test_scheduler_tick_assigns_ready_task() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        agent = EchoAgent(config("a"))
        await orchestrator.register_agent(agent)
        task = await orchestrator.create_task("t")

        assert await orchestrator.scheduler.tick() == 1

        assert task.assigned_to == agent.agent_id
        assert orchestrator.scheduler.get_queued_tasks() == []
        finished = await orchestrator.wait_for_task(task.id, timeout=1)
        assert finished.status == TaskStatus.COMPLETED


@pytest.mark.anyio
async def test_failed_dependency_cancels_dependents() -> None:
    async def explode(agent, task):
        raise RuntimeError("boom")

    async with Orchestrator(auto_assign=False) as orchestrator:
        await orchestrator.register_agent(function_agent(config("a"), explode))
        parent = await orchestrator.create_task("parent")
        child = await orchestrator.create_task("child", dependencies=[parent.id])
        grandchild = await orchestrator.create_task("grandchild", dependencies=[child.id])

        async with orchestrator.subscribe([EventKind.TASK_CANCELLED]) as inbox:
            await orchestrator.assign_task(parent.id)
            cancelled = [(await next_event(inbox)).payload["task_id"] for _ in range(2)]

        assert cancelled == [child.id, grandchild.id]
        assert child.status == TaskStatus.CANCELLED
        assert parent.id in child.error
        late = await orchestrator.create_task("late", dependencies=[parent.id])
        assert late.status == TaskStatus.CANCELLED


@pytest.mark.anyio
async def test_create_task_rejects_unknown_dependency() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        with pytest.raises(NotFoundError):
            await orchestrator.create_task("orphan", dependencies=["missing"])
        assert orchestrator.get_tasks() == []


@pytest.mark.anyio
async def test_cancel_pending_task() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        task = await orchestrator.create_task("maybe")

        assert await orchestrator.cancel_task(task.id)
        assert task.status == TaskStatus.CANCELLED
        assert not await orchestrator.cancel_task(task.id)
        assert orchestrator.get_tasks(TaskStatus.CANCELLED) == [task]
        assert orchestrator.scheduler.get_queued_tasks() == []


@pytest.mark.anyio
async def test_dispatch_routes_direct_and_broadcast_messages() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        alice = EchoAgent(config("alice"))
        bob = EchoAgent(config("bob"))
        await orchestrator.register_agent(alice)
        await orchestrator.register_agent(bob)

        await orchestrator.dispatch("client", alice.agent_id, {"text": "hi alice"})
        await orchestrator.dispatch(alice.agent_id, None, {"text": "hi all"})

        assert await alice.recall("message_client") == {"text": "hi alice"}
        assert await bob.recall(f"message_{alice.agent_id}") == {"text": "hi all"}
        assert await alice.recall(f"message_{alice.agent_id}") is None
        with pytest.raises(NotFoundError):
            await orchestrator.dispatch("client", "ghost", {})


@pytest.mark.anyio
async def test_agent_messages_are_routed_by_event_loop() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        alice = EchoAgent(config("alice"))
        bob = EchoAgent(config("bob"))
        await orchestrator.register_agent(alice)
        await orchestrator.register_agent(bob)

        async with orchestrator.subscribe([EventKind.MESSAGE_RECEIVED]) as inbox:
            await alice.send_message(Message(sender_id=alice.agent_id, recipient_id=bob.agent_id, payload={"q": 1}))
            event = await next_event(inbox)

        assert event.source_id == bob.agent_id
        assert await bob.recall(f"message_{alice.agent_id}") == {"q": 1}
        assert orchestrator.metrics.get("messages_routed") == 1


@pytest.mark.anyio
async def test_get_agents_by_capability_and_metrics() -> None:
    async with Orchestrator(auto_assign=False) as orchestrator:
        trader = EchoAgent(config("trader", "trade"))
        painter = EchoAgent(config("painter", "paint"))
        await orchestrator.register_agent(trader)
        await orchestrator.register_agent(painter)

        assert orchestrator.get_agents_by_capability("trade") == [trader]
        metrics = orchestrator.get_metrics()
        assert metrics["agents"]["total"] == 2
        assert metrics["tasks"]["total"] == 0
        assert metrics["uptime"] >= 0


@pytest.mark.anyio
async def test_stop_shuts_down_every_agent() -> None:
    orchestrator = Orchestrator(auto_assign=False)
    await orchestrator.start()
    agent = EchoAgent(config("a"))
    await orchestrator.register_agent(agent)

    await orchestrator.stop()

    assert agent.status == AgentStatus.SHUTDOWN
    assert orchestrator.list_agents() == []
    assert not orchestrator.running
