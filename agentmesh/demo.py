"""CLI demonstration of orchestrator-managed agents and task assignment."""
from __future__ import annotations

import asyncio
from typing import NoReturn

from agentmesh.agents.echo import EchoAgent
from agentmesh.config import config
from agentmesh.core.errors import NoSuitableAgentError
from agentmesh.core.events import EventKind
from agentmesh.core.models import AgentConfig
from agentmesh.observability.logging import setup_logging
from agentmesh.orchestration.orchestrator import Orchestrator


async def main() -> None:
    setup_logging(config.log_level, "console", service_name="agentmesh-demo")

    async with Orchestrator(auto_assign=False) as orchestrator:
        trader = EchoAgent(
            AgentConfig(name="trader", capabilities=frozenset({"trade"}), metadata={"delay": 0.5})
        )
        descriptor = await orchestrator.register_agent(trader)
        print(f"Registered agent {descriptor.agent_id} in status {descriptor.status.value}")

        async with orchestrator.subscribe([EventKind.TASK_COMPLETED, EventKind.TASK_FAILED]) as inbox:
            first = await orchestrator.create_task(
                "Buy ETH", required_capabilities=["trade"], input={"pair": "ETH/USDC", "amount": 1}
            )
            await orchestrator.assign_task(first.id)
            print(f"Task {first.id} assigned to {first.assigned_to}")

            second = await orchestrator.create_task("Sell BTC", required_capabilities=["trade"])
            try:
                await orchestrator.assign_task(second.id)
            except NoSuitableAgentError as exc:
                print(f"Second assignment rejected: {exc}")

            event = await asyncio.wait_for(inbox.get(), timeout=5)
            print(f"{event.kind.value}: {event.payload['task_id']} -> {first.status.value} {first.output}")

        await orchestrator.assign_task(second.id)
        await orchestrator.wait_for_task(second.id, timeout=5)
        print(f"Task {second.id} finished as {second.status.value}")
        print(f"Metrics: {orchestrator.get_metrics()}")


def run() -> NoReturn:
    asyncio.run(main())


if __name__ == "__main__":
    run()
