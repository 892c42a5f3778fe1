"""Exception hierarchy raised by the orchestration core."""
from __future__ import annotations

from typing import Any, Optional


class OrchestrationError(Exception):
    """Base class for every error raised by agentmesh."""


class InitializationError(OrchestrationError):
    """An agent or collaborator could not be initialised (or was initialised twice)."""


class CapabilityMismatchError(OrchestrationError):
    """The agent cannot run the task right now."""

    def __init__(self, agent_id: str, task_id: str, reason: str = "") -> None:
        self.agent_id = agent_id
        self.task_id = task_id
        self.reason = reason
        message = f"Agent {agent_id} cannot execute task {task_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NotFoundError(OrchestrationError, LookupError):
    """Unknown agent, task or memory id."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} with id {identifier} not found")


class NoSuitableAgentError(OrchestrationError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"No suitable agent found for task {task_id}")


class DuplicateAgentError(OrchestrationError):
    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent with id {agent_id} is already registered")


class ExecutionError(OrchestrationError):
    """An agent's execution hook raised while running a task."""

    def __init__(self, task_id: str, cause: Optional[BaseException] = None) -> None:
        self.task_id = task_id
        self.cause = cause
        super().__init__(f"Task {task_id} failed: {cause}")


class DecisionError(OrchestrationError):
    """A decision engine could not produce a decision."""


class TaskStateError(OrchestrationError):
    """Illegal task status transition."""

    def __init__(self, task_id: str, current: Any, requested: Any) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Task {task_id} cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(requested, 'value', requested)}"
        )


class DimensionMismatchError(OrchestrationError, TypeError):
    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension mismatch. Expected {expected}, got {actual}")
