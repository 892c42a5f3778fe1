"""Orchestrator responsible for registering agents and assigning their tasks."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import structlog

from agentmesh.agents.base import Agent
from agentmesh.config import config as settings
from agentmesh.core.errors import (
    CapabilityMismatchError,
    DuplicateAgentError,
    ExecutionError,
    NoSuitableAgentError,
    NotFoundError,
    TaskStateError,
)
from agentmesh.core.events import AgentChannel, Event, EventBus, EventKind
from agentmesh.core.models import (
    AgentDescriptor,
    AgentStatus,
    Message,
    Task,
    TaskPriority,
    TaskStatus,
)
from agentmesh.observability.metrics import MetricsCollector
from agentmesh.orchestration.scheduler import TaskScheduler

logger = structlog.get_logger(__name__)

ORCHESTRATOR_ID = "orchestrator"

_FINISHED = {
    EventKind.TASK_COMPLETED: "tasks_completed",
    EventKind.TASK_FAILED: "tasks_failed",
    EventKind.TASK_CANCELLED: "tasks_cancelled",
}


def capability_match(agent: Agent, task: Task) -> float:
    """Fraction of the task's required capabilities the agent declares."""
    if not task.required_capabilities:
        return 1.0
    matched = task.required_capabilities & agent.capabilities
    return len(matched) / len(task.required_capabilities)


def score_agent(agent: Agent, task: Task) -> float:
    return capability_match(agent, task) * (1 - 0.1 * agent.current_load)


class Orchestrator:
    """Own the agent and task registries and drive asynchronous execution.

    Every registered agent reports through a channel bound to the
    orchestrator's inbox. A single loop consumes that inbox, keeps the
    scheduler and metrics up to date, routes inter-agent messages and then
    republishes each event on ``bus`` for external subscribers.
    """

    def __init__(
        self,
        *,
        bus: Optional[EventBus] = None,
        scheduler: Optional[TaskScheduler] = None,
        metrics: Optional[MetricsCollector] = None,
        auto_assign: Optional[bool] = None,
    ) -> None:
        self.bus = bus or EventBus()
        self.scheduler = scheduler or TaskScheduler(
            interval=settings.orchestrator.scheduling_interval,
            max_active=settings.orchestrator.max_scheduled_tasks,
        )
        self.scheduler.set_ready_callback(self._assign_ready)
        self.metrics = metrics or MetricsCollector()
        self._auto_assign = settings.orchestrator.auto_assign if auto_assign is None else auto_assign
        self._agents: Dict[str, Agent] = {}
        self._tasks: Dict[str, Task] = {}
        self._executions: Dict[str, asyncio.Task[None]] = {}
        self._inbox: asyncio.Queue[Event] = asyncio.Queue()
        self._channel = AgentChannel(ORCHESTRATOR_ID, self._inbox)
        self._lock = asyncio.Lock()
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._started_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._runner is not None

    # Lifecycle

    async def start(self) -> None:
        """Start the event loop and, when enabled, the scheduler."""
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._started_event.clear()
        self._runner = asyncio.create_task(self._run_safe())
        await self._started_event.wait()
        if self._auto_assign:
            await self.scheduler.start()
        logger.info("orchestrator_started", auto_assign=self._auto_assign)

    async def stop(self) -> None:
        """Shut every agent down, then flush and stop the event loop."""
        await self.scheduler.stop()
        await self.terminate_all()

        pending = list(self._executions.values())
        for execution in pending:
            execution.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self._runner is not None:
            self._stop_event.set()
            await self._runner
            self._runner = None
        await self._drain_inbox()
        logger.info("orchestrator_stopped")

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # Agents

    async def register_agent(self, agent: Agent) -> AgentDescriptor:
        """Initialise (if needed) and register an agent under its id."""
        async with self._lock:
            if agent.agent_id in self._agents:
                raise DuplicateAgentError(agent.agent_id)
            agent.bind_channel(AgentChannel(agent.agent_id, self._inbox))
            if not agent.initialized:
                await agent.initialize()
            self._agents[agent.agent_id] = agent
        self._emit(
            EventKind.AGENT_REGISTERED,
            agent_id=agent.agent_id,
            name=agent.config.name,
            capabilities=sorted(agent.capabilities),
        )
        logger.info("agent_registered", agent_id=agent.agent_id, name=agent.config.name)
        return agent.describe()

    async def unregister_agent(self, agent_id: str) -> None:
        """Remove an agent and shut it down (its current tasks are cancelled)."""
        async with self._lock:
            agent = self._agents.pop(agent_id, None)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        await agent.shutdown()
        self._emit(EventKind.AGENT_UNREGISTERED, agent_id=agent_id)
        logger.info("agent_unregistered", agent_id=agent_id)

    async def terminate_all(self) -> None:
        """Unregister every agent currently managed by the orchestrator."""
        async with self._lock:
            agents = list(self._agents.values())
            self._agents.clear()
        results = await asyncio.gather(*(agent.shutdown() for agent in agents), return_exceptions=True)
        for agent, result in zip(agents, results):
            if isinstance(result, Exception):
                logger.error("agent_shutdown_failed", agent_id=agent.agent_id, error=str(result))
            self._emit(EventKind.AGENT_UNREGISTERED, agent_id=agent.agent_id)

    def get_agent(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def list_agents(self) -> List[AgentDescriptor]:
        return [agent.describe() for agent in self._agents.values()]

    def get_agents_by_capability(self, capability: str) -> List[Agent]:
        return [agent for agent in self._agents.values() if capability in agent.capabilities]

    # Tasks

    async def create_task(
        self,
        title: str,
        description: str = "",
        *,
        priority: TaskPriority = TaskPriority.MEDIUM,
        required_capabilities: Iterable[str] = (),
        dependencies: Iterable[str] = (),
        input: Any = None,
        estimated_duration: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """Store a new pending task and queue it with the scheduler."""
        dependencies = list(dependencies)
        for dependency in dependencies:
            if dependency not in self._tasks:
                raise NotFoundError("Task", dependency)
        task = Task(
            title=title,
            description=description,
            priority=TaskPriority(priority),
            dependencies=dependencies,
            required_capabilities=frozenset(required_capabilities),
            input=input,
            estimated_duration=estimated_duration,
            metadata=dict(metadata or {}),
        )
        self._tasks[task.id] = task
        self.scheduler.schedule_task(task)
        self.metrics.increment_counter("tasks_created")
        self._emit(EventKind.TASK_CREATED, task_id=task.id, task=task)
        logger.info("task_created", task_id=task.id, title=title, priority=task.priority.value)

        for dependency in dependencies:
            parent = self._tasks[dependency]
            if parent.is_terminal and parent.status != TaskStatus.COMPLETED:
                self._cancel_blocked(task, parent)
                break
        return task

    async def assign_task(self, task_id: str, agent_id: Optional[str] = None) -> Task:
        """Hand a pending task to an agent and start it in the background.

        Only assignment-time problems raise here; the outcome of the run is
        reported later through ``taskCompleted``/``taskFailed`` events.
        """
        task = self.get_task(task_id)
        if task.status != TaskStatus.PENDING:
            raise TaskStateError(task.id, task.status, TaskStatus.IN_PROGRESS)

        if agent_id is None:
            agent = self.find_best_agent_for_task(task)
            if agent is None:
                raise NoSuitableAgentError(task.id)
        else:
            agent = self.get_agent(agent_id)
            reason = agent.rejection_reason(task)
            if reason is not None:
                raise CapabilityMismatchError(agent.agent_id, task.id, reason)

        self._emit(EventKind.TASK_ASSIGNED, task_id=task.id, agent_id=agent.agent_id)
        agent.accept_task(task)
        self.scheduler.mark_started(task)
        self._executions[task.id] = asyncio.create_task(self._execute(agent, task))
        logger.info("task_assigned", task_id=task.id, agent_id=agent.agent_id)
        return task

    async def _assign_ready(self, task: Task) -> Task:
        return await self.assign_task(task.id)

    def find_best_agent_for_task(self, task: Task) -> Optional[Agent]:
        """Highest-scoring eligible agent; ties go to the earliest registered."""
        best: Optional[Agent] = None
        best_score = 0.0
        for agent in self._agents.values():
            if not agent.can_execute_task(task):
                continue
            score = score_agent(agent, task)
            if best is None or score > best_score:
                best, best_score = agent, score
        return best

    def get_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def get_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        if status is None:
            return list(self._tasks.values())
        return [task for task in self._tasks.values() if task.status == status]

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a pending or running task; returns False if it already finished."""
        task = self.get_task(task_id)
        if task.is_terminal:
            return False
        if task.status == TaskStatus.PENDING:
            self.scheduler.cancel_task(task.id)
            task.transition(TaskStatus.CANCELLED)
            self._emit(EventKind.TASK_CANCELLED, task_id=task.id, task=task)
            logger.info("task_cancelled", task_id=task.id)
            return True
        agent = self._agents.get(task.assigned_to or "")
        if agent is None:
            raise NotFoundError("Agent", task.assigned_to or "")
        return agent.cancel_task(task.id)

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> Task:
        """Wait until a task's background run has finished and return its record."""
        task = self.get_task(task_id)
        execution = self._executions.get(task_id)
        if execution is not None:
            await asyncio.wait_for(asyncio.shield(execution), timeout)
        return task

    # Messaging

    async def dispatch(self, sender_id: str, recipient_id: Optional[str], payload: Dict[str, Any]) -> Message:
        """Deliver a message on behalf of a caller (``None`` broadcasts)."""
        message = Message(sender_id=sender_id, recipient_id=recipient_id, payload=payload)
        await self._route(message)
        return message

    def subscribe(self, kinds: Optional[Iterable[EventKind]] = None):
        return self.bus.subscribe(kinds)

    # Metrics

    def get_metrics(self) -> Dict[str, Any]:
        agents = list(self._agents.values())
        tasks_by_status = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            tasks_by_status[task.status.value] += 1
        queue = self.scheduler.stats()
        return {
            "agents": {
                "total": len(agents),
                "active": sum(1 for agent in agents if agent.status == AgentStatus.EXECUTING),
                "errored": sum(1 for agent in agents if agent.status == AgentStatus.ERROR),
            },
            "tasks": {"total": len(self._tasks), **tasks_by_status},
            "queue": {
                "queued": queue.queued,
                "active": queue.active,
                "completed": queue.completed,
                "average_wait": queue.average_wait,
            },
            "messages_routed": self.metrics.get("messages_routed"),
            "errors": self.metrics.get("errors"),
            "uptime": self.metrics.uptime,
            "latency": self.metrics.get_metrics_summary().get("latency.task_execution", {}),
        }

    # Internals

    async def _execute(self, agent: Agent, task: Task) -> None:
        try:
            await agent.run_task(task)
        except ExecutionError as exc:
            logger.warning("background_task_failed", task_id=task.id, agent_id=agent.agent_id, error=str(exc.cause))
        except asyncio.CancelledError:
            logger.info("background_task_interrupted", task_id=task.id, agent_id=agent.agent_id)
            raise
        finally:
            self._executions.pop(task.id, None)

    async def _run_safe(self) -> None:
        """Consume the inbox until asked to stop."""
        self._started_event.set()
        while not self._stop_event.is_set():
            try:
                event = await asyncio.wait_for(self._inbox.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await self._process(event)

    async def _drain_inbox(self) -> None:
        while not self._inbox.empty():
            await self._process(self._inbox.get_nowait())

    async def _process(self, event: Event) -> None:
        try:
            await self._handle_event(event)
        except Exception as exc:  # noqa: BLE001
            logger.error("event_handling_failed", kind=event.kind.value, source=event.source_id, error=str(exc))
        await self.bus.publish(event)

    async def _handle_event(self, event: Event) -> None:
        if event.kind in _FINISHED:
            task = self._tasks.get(event.payload.get("task_id", ""))
            if task is None:
                return
            self.metrics.increment_counter(_FINISHED[event.kind])
            if event.kind == EventKind.TASK_COMPLETED and task.actual_duration is not None:
                self.metrics.record_latency("task_execution", task.actual_duration)
            for blocked in self.scheduler.on_task_finished(task):
                self._cancel_blocked(blocked, task)
        elif event.kind == EventKind.MESSAGE_SENT:
            message: Message = event.payload["message"]
            try:
                await self._route(message)
            except NotFoundError as exc:
                logger.warning("message_undeliverable", message_id=message.id, error=str(exc))
                self._emit(EventKind.ERROR, error=str(exc), stage="routing", message_id=message.id)
        elif event.kind == EventKind.ERROR:
            self.metrics.increment_counter("errors")

    async def _route(self, message: Message) -> None:
        if message.recipient_id is None:
            recipients = [agent for agent in self._agents.values() if agent.agent_id != message.sender_id]
        else:
            recipients = [self.get_agent(message.recipient_id)]
        for agent in recipients:
            await agent.receive_message(message)
        self.metrics.increment_counter("messages_routed")

    def _cancel_blocked(self, task: Task, dependency: Task) -> None:
        if task.is_terminal:
            return
        self.scheduler.cancel_task(task.id)
        task.error = f"Dependency {dependency.id} {dependency.status.value}"
        task.transition(TaskStatus.CANCELLED)
        self._emit(EventKind.TASK_CANCELLED, task_id=task.id, task=task, reason=task.error)
        logger.info("blocked_task_cancelled", task_id=task.id, dependency=dependency.id)

    def _emit(self, kind: EventKind, **payload: Any) -> None:
        self._channel.emit(kind, **payload)
