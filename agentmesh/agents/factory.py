"""Factory helpers building concrete agents from a role catalog or a plain coroutine."""
from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from agentmesh.agents.base import Agent
from agentmesh.agents.echo import EchoAgent
from agentmesh.agents.llm_agent import LLMAgent
from agentmesh.core.models import AgentConfig, Task
from agentmesh.services.llm import LLMProvider

TaskHandler = Callable[[Agent, Task], Awaitable[Any]]

AGENT_CATALOG: Dict[str, Type[Agent]] = {
    "echo": EchoAgent,
    "llm": LLMAgent,
}


class FunctionAgent(Agent):
    """Agent whose execution hook is a coroutine function supplied at construction."""

    def __init__(self, config: AgentConfig, handler: TaskHandler, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self._handler = handler

    async def perform_task(self, task: Task) -> Any:
        return await self._handler(self, task)


def function_agent(config: AgentConfig, handler: TaskHandler, *, agent_id: Optional[str] = None) -> Agent:
    return FunctionAgent(config, handler, agent_id=agent_id)


def create_agent(
    config: AgentConfig,
    *,
    agent_id: Optional[str] = None,
    provider: Optional[LLMProvider] = None,
    catalog: Optional[Dict[str, Type[Agent]]] = None,
) -> Agent:
    """Instantiate the catalog class registered for ``config.role``."""
    catalog = AGENT_CATALOG if catalog is None else catalog
    if config.role not in catalog:
        raise KeyError(f"No agent registered for role '{config.role}'")
    agent_cls = catalog[config.role]

    # Pass the LLM provider to agents that need it
    if "provider" in inspect.signature(agent_cls.__init__).parameters:
        if provider is None:
            raise ValueError(f"Role '{config.role}' requires an LLM provider")
        return agent_cls(config, provider, agent_id=agent_id)
    return agent_cls(config, agent_id=agent_id)
