"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from agentmesh.config import config
from agentmesh.orchestration.orchestrator import Orchestrator
from agentmesh.services.llm import LLMPool, LLMProvider, PooledLLMProvider, ScriptedLLMProvider

DEFAULT_MODEL = "default"


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Register the configured OpenAI / Azure OpenAI model
    if config.llm:
        pool.register(DEFAULT_MODEL, config.llm)

    return pool


@lru_cache
def get_llm_provider() -> LLMProvider:
    """Pooled provider when a model is configured, otherwise an offline scripted one."""
    pool = get_llm_pool()
    if config.llm and DEFAULT_MODEL in pool:
        return PooledLLMProvider(pool, DEFAULT_MODEL, model=config.llm.model)
    return ScriptedLLMProvider()


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator()
