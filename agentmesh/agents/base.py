"""Base agent definition used by the orchestrator."""
from __future__ import annotations

import abc
import asyncio
import dataclasses
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from agentmesh.config import config as settings
from agentmesh.core.errors import (
    CapabilityMismatchError,
    DecisionError,
    ExecutionError,
    InitializationError,
)
from agentmesh.core.events import AgentChannel, EventKind
from agentmesh.core.models import (
    AgentConfig,
    AgentDescriptor,
    AgentMetrics,
    AgentStatus,
    DecisionContext,
    MemoryEntry,
    MemoryType,
    Message,
    ResourceMetrics,
    Task,
    TaskStatus,
    new_id,
    utcnow,
)
from agentmesh.decision.base import DecisionEngine, score_outcome
from agentmesh.decision.rules import RuleBasedDecisionEngine
from agentmesh.memory.store import MemoryStore

logger = structlog.get_logger(__name__)

DECISION_IMPORTANCE = 0.5
LEARNING_IMPORTANCE = 0.8
SKILL_IMPORTANCE = 0.9


class Agent(abc.ABC):
    """Abstract agent encapsulating lifecycle hooks and task execution.

    Subclasses implement ``perform_task`` and may override the collaborator
    factories (``create_decision_engine``/``create_memory_store``) and the
    ``on_initialize``/``on_shutdown``/``process_message`` hooks.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        agent_id: Optional[str] = None,
        channel: Optional[AgentChannel] = None,
    ) -> None:
        self.config = config
        self._agent_id = agent_id or new_id()
        self._channel = channel or AgentChannel(self._agent_id)
        self._status = AgentStatus.IDLE
        self._current_tasks: Dict[str, Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._metrics = AgentMetrics(learning_rate=config.learning_rate)
        self._decision_engine: Optional[DecisionEngine] = None
        self._memory: Optional[MemoryStore] = None
        self._init_started = False
        self._initialized = False
        self._shutdown_requested = False
        self.last_error: Optional[str] = None
        self._log = logger.bind(agent_id=self._agent_id, agent_name=config.name)

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def capabilities(self) -> frozenset:
        return self.config.capabilities

    @property
    def current_load(self) -> int:
        return len(self._current_tasks)

    @property
    def channel(self) -> AgentChannel:
        return self._channel

    @property
    def metrics(self) -> AgentMetrics:
        return self._metrics

    @property
    def decision_engine(self) -> DecisionEngine:
        if self._decision_engine is None:
            raise InitializationError(f"Agent {self.agent_id} is not initialized")
        return self._decision_engine

    @property
    def memory(self) -> MemoryStore:
        if self._memory is None:
            raise InitializationError(f"Agent {self.agent_id} is not initialized")
        return self._memory

    def bind_channel(self, channel: AgentChannel) -> None:
        """Route this agent's events somewhere else (the orchestrator's inbox)."""
        self._channel = channel

    def get_current_tasks(self) -> List[Task]:
        return list(self._current_tasks.values())

    # Lifecycle

    async def initialize(self) -> None:
        """Wire the decision engine and memory store, then run ``on_initialize``."""
        if self._init_started or self._shutdown_requested:
            raise InitializationError(f"Agent {self.agent_id} is already initialized")
        self._init_started = True
        self._set_status(AgentStatus.THINKING)
        try:
            engine = await self.create_decision_engine()
            await engine.initialize()
            memory = await self.create_memory_store()
            await memory.initialize()
            self._decision_engine = engine
            self._memory = memory
            await self.on_initialize()
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            self._set_status(AgentStatus.ERROR)
            self._log.error("agent_initialize_failed", error=str(exc))
            raise InitializationError(f"Failed to initialize agent {self.agent_id}: {exc}") from exc

        self._initialized = True
        self._set_status(AgentStatus.IDLE)
        self._emit(EventKind.INITIALIZED)
        self._log.info("agent_initialized", capabilities=sorted(self.capabilities))

    async def shutdown(self) -> None:
        """Cancel current tasks, run teardown hooks and release collaborators.

        A second call is a no-op.
        """
        if self._shutdown_requested:
            return
        self._shutdown_requested = True

        for task_id in list(self._current_tasks):
            self.cancel_task(task_id)

        try:
            if self._initialized:
                await self.on_shutdown()
            if self._memory is not None:
                await self._memory.shutdown()
            if self._decision_engine is not None:
                await self._decision_engine.shutdown()
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            self._emit(EventKind.ERROR, error=str(exc), stage="shutdown")
            self._log.error("agent_shutdown_failed", error=str(exc))

        self._set_status(AgentStatus.SHUTDOWN)
        self._emit(EventKind.SHUTDOWN)
        self._log.info("agent_shutdown")

    # Task execution

    def can_execute_task(self, task: Task) -> bool:
        return self.rejection_reason(task) is None

    def accept_task(self, task: Task) -> None:
        """Claim a concurrency slot for ``task`` and mark it in progress.

        Raises ``CapabilityMismatchError`` without touching the task when the
        agent cannot take it.
        """
        reason = self.rejection_reason(task)
        if reason is not None:
            raise CapabilityMismatchError(self.agent_id, task.id, reason)
        task.transition(TaskStatus.IN_PROGRESS)
        task.started_at = utcnow()
        task.assigned_to = self.agent_id
        self._current_tasks[task.id] = task
        self._cancel_events[task.id] = asyncio.Event()
        self._set_status(AgentStatus.EXECUTING)
        self._emit(EventKind.TASK_STARTED, task_id=task.id, task=task)
        self._log.info("task_started", task_id=task.id, title=task.title)

    async def run_task(self, task: Task) -> Any:
        """Run the execution hook for a task previously claimed by ``accept_task``.

        Log records emitted while the hook runs carry the task id.
        """
        with structlog.contextvars.bound_contextvars(task_id=task.id):
            return await self._run_task(task)

    async def _run_task(self, task: Task) -> Any:
        started = time.monotonic()
        try:
            result = await self.perform_task(task)
        except asyncio.CancelledError:
            if not task.is_terminal:
                self._mark_cancelled(task)
            raise
        except Exception as exc:  # noqa: BLE001
            duration = time.monotonic() - started
            if task.is_terminal:
                self._log.info("cancelled_task_failed", task_id=task.id, error=str(exc))
                raise ExecutionError(task.id, exc) from exc
            task.error = str(exc) or exc.__class__.__name__
            task.actual_duration = duration
            task.transition(TaskStatus.FAILED)
            self._metrics.record_failure()
            self._release(task)
            self._emit(EventKind.TASK_FAILED, task_id=task.id, task=task, error=task.error, duration=duration)
            self._log.warning("task_failed", task_id=task.id, error=task.error, duration=duration)
            await self._record_experience(task, None, success=False)
            raise ExecutionError(task.id, exc) from exc
        finally:
            self._cancel_events.pop(task.id, None)

        duration = time.monotonic() - started
        if task.is_terminal:
            # Cancelled while the hook was running; the terminal record stays as is.
            self._log.info("cancelled_task_result_discarded", task_id=task.id)
            return result
        task.output = result
        task.progress = 100
        task.actual_duration = duration
        task.transition(TaskStatus.COMPLETED)
        self._metrics.record_success(duration)
        self._release(task)
        self._emit(EventKind.TASK_COMPLETED, task_id=task.id, task=task, result=result, duration=duration)
        self._log.info("task_completed", task_id=task.id, duration=duration)
        await self._record_experience(task, result, success=True)
        return result

    async def execute_task(self, task: Task) -> Any:
        self.accept_task(task)
        return await self.run_task(task)

    def cancel_task(self, task_id: str) -> bool:
        """Mark a current task cancelled and free its slot."""
        task = self._current_tasks.get(task_id)
        if task is None:
            return False
        self._mark_cancelled(task)
        return True

    def is_cancelled(self, task_id: str) -> bool:
        """Execution hooks poll this to stop early once their task is cancelled."""
        event = self._cancel_events.get(task_id)
        return event is None or event.is_set()

    # Decisions, memory and learning

    def build_context(
        self,
        available_tasks: Iterable[Task] = (),
        constraints: Optional[Dict[str, Any]] = None,
    ) -> DecisionContext:
        current = next(iter(self._current_tasks.values()), None)
        merged = {"max_concurrent_tasks": self.config.max_concurrent_tasks}
        merged.update(constraints or {})
        return DecisionContext(
            agent_status=self._status,
            current_task=current,
            available_tasks=list(available_tasks),
            resources=self.get_resource_metrics(),
            constraints=merged,
        )

    async def make_decision(self, context: DecisionContext) -> str:
        try:
            decision = await self.decision_engine.make_decision(context)
        except InitializationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise DecisionError(f"Decision making failed for agent {self.agent_id}: {exc}") from exc
        self._metrics.decisions_made += 1
        await self.remember(
            f"decision_{new_id()}",
            {"context": context.summary(), "decision": decision, "timestamp": utcnow().isoformat()},
            DECISION_IMPORTANCE,
            memory_type=MemoryType.DECISION,
        )
        return decision

    async def record_outcome(self, decision: str, context: DecisionContext, outcome: Any) -> float:
        """Feed the outcome of an earlier decision back into the decision engine."""
        await self.decision_engine.learn(decision, context, outcome)
        score = score_outcome(outcome)
        if score >= 0.5:
            self._metrics.decisions_correct += 1
        else:
            self._metrics.decisions_incorrect += 1
        return score

    async def remember(
        self,
        key: str,
        value: Any,
        importance: float = 0.5,
        *,
        memory_type: MemoryType = MemoryType.EXPERIENCE,
        embedding: Optional[Sequence[float]] = None,
        ttl: Optional[float] = None,
    ) -> str:
        """Store a new entry tagged with ``key``; returns its id."""
        entry = MemoryEntry(
            agent_id=self.agent_id,
            content=value,
            type=memory_type,
            importance=importance,
            tags=[key],
            embedding=list(embedding) if embedding is not None else None,
            metadata={"source": "agent_memory"},
        )
        return await self.memory.store(entry, ttl=ttl)

    async def recall(self, key: str) -> Any:
        """Content of the most recent entry tagged ``key``, or ``None``."""
        entries = await self.memory.get_by_tag(key)
        return entries[0].content if entries else None

    async def recall_similar(
        self, vector: Sequence[float], k: int = 5, filter: Optional[Dict[str, Any]] = None
    ) -> List[Tuple[MemoryEntry, float]]:
        scoped = dict(filter or {})
        scoped["agent_id"] = self.agent_id
        return await self.memory.search_similar(vector, k, scoped)

    async def forget(self, key: str) -> int:
        entries = await self.memory.get_by_tag(key)
        for entry in entries:
            await self.memory.delete(entry.id)
        return len(entries)

    async def learn(self, experience: Any) -> None:
        await self.remember(f"learning_{new_id()}", experience, LEARNING_IMPORTANCE)
        self._metrics.adaptation_score = min(1.0, self._metrics.adaptation_score + 0.01)
        self._emit(EventKind.LEARNED, experience=experience)

    async def update_skills(self, skills: Dict[str, Any]) -> None:
        previous = dict(self.config.skills)
        self.config.skills.update(skills)
        await self.remember(
            f"skill_update_{new_id()}",
            {"old_skills": previous, "new_skills": dict(skills), "timestamp": utcnow().isoformat()},
            SKILL_IMPORTANCE,
            memory_type=MemoryType.SKILL,
        )
        self._emit(EventKind.SKILLS_UPDATED, skills=dict(skills))

    # Messaging

    async def send_message(self, message: Message) -> None:
        """Hand a message to the orchestrator for routing."""
        self._emit(EventKind.MESSAGE_SENT, message=message)

    async def receive_message(self, message: Message) -> None:
        self._metrics.messages_processed += 1
        try:
            await self.process_message(message)
        except Exception as exc:  # noqa: BLE001
            self._emit(EventKind.ERROR, error=str(exc), stage="message", message_id=message.id)
            self._log.warning("message_processing_failed", message_id=message.id, error=str(exc))
            return
        self._emit(EventKind.MESSAGE_RECEIVED, message=message)

    # Introspection

    def get_resource_metrics(self) -> ResourceMetrics:
        return ResourceMetrics(
            cpu=self.current_load / self.config.max_concurrent_tasks,
            tokens=self._metrics.token_usage,
        )

    def get_performance_metrics(self) -> AgentMetrics:
        return dataclasses.replace(self._metrics)

    def describe(self) -> AgentDescriptor:
        return AgentDescriptor(
            agent_id=self.agent_id,
            config=self.config,
            status=self._status,
            current_task_ids=list(self._current_tasks),
            metrics=self.get_performance_metrics(),
            last_error=self.last_error,
        )

    # Collaborator factories and hooks

    async def create_decision_engine(self) -> DecisionEngine:
        return RuleBasedDecisionEngine(
            history_limit=settings.decision.history_limit,
            recent_window=settings.decision.recent_window,
            recalibrate_every=settings.decision.recalibrate_every,
        )

    async def create_memory_store(self) -> MemoryStore:
        return MemoryStore(
            settings.memory.dimension,
            max_entries=settings.memory.max_entries,
            default_ttl=settings.memory.default_ttl,
        )

    @abc.abstractmethod
    async def perform_task(self, task: Task) -> Any:
        """Do the actual work for ``task`` and return its output."""

    async def on_initialize(self) -> None:
        """Hook executed once collaborators are wired."""
        return None

    async def on_shutdown(self) -> None:
        """Hook executed before collaborators are released."""
        return None

    async def process_message(self, message: Message) -> None:
        """Hook handling an inbound message; by default it is remembered."""
        await self.remember(
            f"message_{message.sender_id}",
            message.payload,
            memory_type=MemoryType.MESSAGE,
        )

    # Internals

    def rejection_reason(self, task: Task) -> Optional[str]:
        missing = task.required_capabilities - self.capabilities
        if missing:
            return f"missing capabilities {sorted(missing)}"
        if self.current_load >= self.config.max_concurrent_tasks:
            return "at concurrency limit"
        if self._status == AgentStatus.ERROR:
            return "agent is in error state"
        if self._shutdown_requested:
            return "agent is shutting down"
        if not self._initialized:
            return "agent is not initialized"
        return None

    def _mark_cancelled(self, task: Task) -> None:
        task.transition(TaskStatus.CANCELLED)
        event = self._cancel_events.get(task.id)
        if event is not None:
            event.set()
        self._metrics.tasks_cancelled += 1
        self._release(task)
        self._emit(EventKind.TASK_CANCELLED, task_id=task.id, task=task)
        self._log.info("task_cancelled", task_id=task.id)

    def _release(self, task: Task) -> None:
        self._current_tasks.pop(task.id, None)
        if self._status in (AgentStatus.ERROR, AgentStatus.SHUTDOWN) or self._shutdown_requested:
            return
        self._set_status(AgentStatus.EXECUTING if self._current_tasks else AgentStatus.IDLE)

    async def _record_experience(self, task: Task, result: Any, *, success: bool) -> None:
        experience = {
            "task_id": task.id,
            "task_type": task.title,
            "success": success,
            "result": result,
            "error": task.error,
            "duration": task.actual_duration,
            "timestamp": utcnow().isoformat(),
        }
        try:
            await self.learn(experience)
        except Exception as exc:  # noqa: BLE001
            # Memory is a collaborator; its faults are agent-wide.
            self.last_error = str(exc)
            self._set_status(AgentStatus.ERROR)
            self._log.error("experience_write_failed", task_id=task.id, error=str(exc))

    def _set_status(self, status: AgentStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        self._emit(EventKind.STATUS_CHANGED, old_status=previous.value, new_status=status.value)
        if status == AgentStatus.ERROR:
            self._emit(EventKind.ERROR, error=self.last_error or f"Agent {self.agent_id} entered error state")

    def _emit(self, kind: EventKind, **payload: Any) -> None:
        self._channel.emit(kind, **payload)
