"""Simple agent implementation used in the proof-of-concept."""
from __future__ import annotations

import asyncio
import random
from typing import Any, Dict

from agentmesh.agents.base import Agent
from agentmesh.core.models import Task


class EchoAgent(Agent):
    """Agent that echoes a task's input back as its output."""

    async def perform_task(self, task: Task) -> Dict[str, Any]:
        delay = float(self.config.metadata.get("delay", random.uniform(0.05, 0.2)))
        await asyncio.sleep(delay)  # Simulate work
        if self.is_cancelled(task.id):
            return {"echo": None, "cancelled": True}
        return {"echo": task.input, "agent": self.config.name}
