"""Core data models shared across orchestrator components."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import TaskStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AgentStatus(str, Enum):
    """Lifecycle states for an agent managed by the orchestrator."""

    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    ERROR = "error"
    SHUTDOWN = "shutdown"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# Allowed forward moves; terminal statuses have no outgoing edges.
_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: _TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    TaskPriority.LOW: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.URGENT: 4,
}


class MemoryType(str, Enum):
    """Kinds of entries an agent keeps in its memory store."""

    EXPERIENCE = "experience"
    DECISION = "decision"
    FACT = "fact"
    SKILL = "skill"
    MESSAGE = "message"


@dataclass(slots=True)
class Task:
    """Unit of work tracked by the orchestrator and executed by one agent."""

    title: str
    description: str = ""
    id: str = field(default_factory=new_id)
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    dependencies: List[str] = field(default_factory=list)
    required_capabilities: FrozenSet[str] = field(default_factory=frozenset)
    input: Any = None
    progress: int = 0
    estimated_duration: Optional[float] = None
    actual_duration: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assigned_to: Optional[str] = None
    output: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.priority = TaskPriority(self.priority)
        self.required_capabilities = frozenset(self.required_capabilities)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: TaskStatus) -> None:
        """Move the task forward, rejecting backward moves and edits to terminal tasks."""
        status = TaskStatus(status)
        if status not in _TRANSITIONS[self.status]:
            raise TaskStateError(self.id, self.status, status)
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()

    def to_record(self) -> Dict[str, Any]:
        """Read-API view of the task."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "progress": self.progress,
            "assigned_to": self.assigned_to,
            "dependencies": list(self.dependencies),
            "required_capabilities": sorted(self.required_capabilities),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "output": self.output,
            "error": self.error,
        }


@dataclass(slots=True)
class AgentConfig:
    """Configuration payload used by the orchestrator when instantiating an agent."""

    name: str
    capabilities: FrozenSet[str] = field(default_factory=frozenset)
    role: str = "generic"
    max_concurrent_tasks: int = 1
    learning_rate: float = 0.1
    skills: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.capabilities = frozenset(self.capabilities)
        if self.max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")


@dataclass(slots=True)
class AgentMetrics:
    """Rolling performance counters kept by each agent."""

    learning_rate: float = 0.1
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_cancelled: int = 0
    total_execution_time: float = 0.0
    average_task_time: float = 0.0
    error_rate: float = 0.0
    messages_processed: int = 0
    decisions_made: int = 0
    decisions_correct: int = 0
    decisions_incorrect: int = 0
    adaptation_score: float = 0.0
    token_usage: int = 0
    last_active: Optional[datetime] = None

    def record_success(self, duration: float) -> None:
        self.tasks_completed += 1
        self.total_execution_time += duration
        self.average_task_time = self.total_execution_time / self.tasks_completed
        self.last_active = utcnow()

    def record_failure(self) -> None:
        self.tasks_failed += 1
        self.error_rate = self.tasks_failed / (self.tasks_completed + self.tasks_failed)
        self.last_active = utcnow()


@dataclass(slots=True)
class ResourceMetrics:
    """Resource usage as fractions of capacity (0-1) plus token/cost counters."""

    cpu: float = 0.0
    memory: float = 0.0
    tokens: int = 0
    cost: float = 0.0


@dataclass(slots=True)
class DecisionContext:
    """Snapshot handed to a decision engine."""

    agent_status: AgentStatus
    current_task: Optional[Task] = None
    available_tasks: List[Task] = field(default_factory=list)
    resources: ResourceMetrics = field(default_factory=ResourceMetrics)
    constraints: Dict[str, Any] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        """Compact, serialisable view stored alongside decisions."""
        return {
            "agent_status": self.agent_status.value,
            "current_task": self.current_task.id if self.current_task else None,
            "available_tasks": [task.id for task in self.available_tasks],
            "resources": {"cpu": self.resources.cpu, "memory": self.resources.memory},
            "constraints": dict(self.constraints),
        }


@dataclass(slots=True)
class MemoryEntry:
    """A stored experience or fact owned by one agent."""

    agent_id: str
    content: Any
    type: MemoryType = MemoryType.EXPERIENCE
    id: str = field(default_factory=new_id)
    importance: float = 0.5
    confidence: float = 1.0
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 1

    def touch(self) -> None:
        self.access_count += 1
        self.last_accessed = utcnow()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


@dataclass(slots=True)
class MemoryQuery:
    """Filter, sort and pagination options for ``MemoryStore.search``."""

    text: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    agent_id: Optional[str] = None
    type: Optional[MemoryType] = None
    min_importance: Optional[float] = None
    max_importance: Optional[float] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    include_expired: bool = False
    sort_by: str = "timestamp"
    descending: bool = True
    offset: int = 0
    limit: Optional[int] = None


@dataclass(slots=True)
class Message:
    """Canonical message exchanged between agents through the orchestrator."""

    sender_id: str
    recipient_id: Optional[str]
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AgentDescriptor:
    """Read-only snapshot of an agent, used by the HTTP layer and metrics."""

    agent_id: str
    config: AgentConfig
    status: AgentStatus
    current_task_ids: List[str]
    metrics: AgentMetrics
    last_error: Optional[str] = None
