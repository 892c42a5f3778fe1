"""FastAPI entry-point exposing orchestrator controls."""
from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from agentmesh.api.routes import agents_router, metrics_router, tasks_router
from agentmesh.config import config
from agentmesh.observability.logging import setup_logging
from agentmesh.runtime import get_llm_pool, get_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    setup_logging(config.log_level, config.log_format, environment=config.environment)
    orchestrator = get_orchestrator()
    await orchestrator.start()
    yield
    # Shutdown: stop agents, the scheduler and the event loop
    await orchestrator.stop()
    await get_llm_pool().close()


app = FastAPI(title="Agent Mesh Orchestrator", lifespan=lifespan)
app.include_router(agents_router)
app.include_router(tasks_router)
app.include_router(metrics_router)


@app.get("/health")
async def health() -> dict:
    orchestrator = get_orchestrator()
    return {"status": "ok", "running": orchestrator.running}


def run() -> None:
    uvicorn.run("agentmesh.main:app", host="0.0.0.0", port=8000)
