"""Typed events, per-agent channels and the subscriber bus fed by the orchestrator loop."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import new_id, utcnow


class EventKind(str, Enum):
    AGENT_REGISTERED = "agentRegistered"
    AGENT_UNREGISTERED = "agentUnregistered"
    TASK_CREATED = "taskCreated"
    TASK_ASSIGNED = "taskAssigned"
    TASK_STARTED = "taskStarted"
    TASK_COMPLETED = "taskCompleted"
    TASK_FAILED = "taskFailed"
    TASK_CANCELLED = "taskCancelled"
    STATUS_CHANGED = "statusChanged"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"
    LEARNED = "learned"
    SKILLS_UPDATED = "skillsUpdated"
    MESSAGE_SENT = "messageSent"
    MESSAGE_RECEIVED = "messageReceived"
    ERROR = "error"


STANDALONE_BUFFER_SIZE = 1000


@dataclass(slots=True)
class Event:
    """Something that happened to an agent, a task or the orchestrator."""

    kind: EventKind
    source_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


class AgentChannel:
    """Typed sender an agent uses to report to whoever consumes its events.

    A standalone agent gets a private queue holding at most ``buffer_size``
    events; nothing drains it except ``drain()``, so once full the oldest event
    is dropped for each new one. The orchestrator rebinds the channel to its
    own inbox so a single loop sees every agent's events.
    """

    def __init__(
        self,
        agent_id: str,
        queue: Optional[asyncio.Queue[Event]] = None,
        *,
        buffer_size: int = STANDALONE_BUFFER_SIZE,
    ) -> None:
        self.agent_id = agent_id
        self._queue: asyncio.Queue[Event] = queue if queue is not None else asyncio.Queue(maxsize=buffer_size)

    @property
    def queue(self) -> asyncio.Queue[Event]:
        return self._queue

    def emit(self, kind: EventKind, **payload: Any) -> Event:
        event = Event(kind=kind, source_id=self.agent_id, payload=payload)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(event)
        return event

    def drain(self) -> List[Event]:
        """Pop every event currently buffered (mostly useful for standalone agents)."""
        events: List[Event] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events


class EventBus:
    """Fan-out hub delivering orchestrator events to external subscribers."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Tuple[asyncio.Queue[Event], Optional[FrozenSet[EventKind]]]] = {}
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def register(
        self, subscriber_id: str, kinds: Optional[Iterable[EventKind]] = None
    ) -> asyncio.Queue[Event]:
        """Ensure a mailbox exists for the subscriber."""
        async with self._lock:
            if subscriber_id not in self._subscribers:
                wanted = frozenset(EventKind(kind) for kind in kinds) if kinds else None
                self._subscribers[subscriber_id] = (asyncio.Queue(), wanted)
            return self._subscribers[subscriber_id][0]

    async def unregister(self, subscriber_id: str) -> None:
        """Remove the mailbox to stop further deliveries."""
        async with self._lock:
            self._subscribers.pop(subscriber_id, None)

    async def publish(self, event: Event) -> None:
        for queue, wanted in list(self._subscribers.values()):
            if wanted is not None and event.kind not in wanted:
                continue
            await queue.put(event)

    @asynccontextmanager
    async def subscribe(
        self, kinds: Optional[Iterable[EventKind]] = None
    ) -> AsyncIterator[asyncio.Queue[Event]]:
        """Context manager yielding a queue that receives matching events."""
        subscriber_id = new_id()
        queue = await self.register(subscriber_id, kinds)
        try:
            yield queue
        finally:
            await self.unregister(subscriber_id)
