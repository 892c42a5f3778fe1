"""LLM-powered agent that completes tasks and makes decisions with a language model."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

from agentmesh.agents.base import Agent
from agentmesh.decision.llm import LLMDecisionEngine

if TYPE_CHECKING:
    from agentmesh.core.events import AgentChannel
    from agentmesh.core.models import AgentConfig, Task
    from agentmesh.decision.base import DecisionEngine
    from agentmesh.services.llm import LLMProvider


class LLMAgent(Agent):
    """Agent that uses an LLM provider both to run tasks and to decide what to do."""

    def __init__(
        self,
        config: AgentConfig,
        provider: LLMProvider,
        *,
        agent_id: Optional[str] = None,
        channel: Optional[AgentChannel] = None,
    ) -> None:
        super().__init__(config, agent_id=agent_id, channel=channel)
        self._provider = provider
        self.system_prompt = config.metadata.get(
            "system_prompt",
            "You are a helpful AI assistant agent in a multi-agent system.",
        )
        self.temperature = float(config.metadata.get("temperature", 0.7))
        self.max_tokens = int(config.metadata.get("max_tokens", 512))

    async def create_decision_engine(self) -> DecisionEngine:
        return LLMDecisionEngine(self._provider)

    async def on_initialize(self) -> None:
        await self._provider.initialize()

    async def on_shutdown(self) -> None:
        await self._provider.shutdown()

    async def perform_task(self, task: Task) -> str:
        response = await self._provider.generate_text(
            self._task_prompt(task),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        self.metrics.token_usage += response.token_usage
        return response.content

    def _task_prompt(self, task: Task) -> str:
        parts = [self.system_prompt, f"Task: {task.title}"]
        if task.description:
            parts.append(f"Description: {task.description}")
        if task.input is not None:
            parts.append(f"Input: {json.dumps(task.input, default=str)}")
        return "\n\n".join(parts)
