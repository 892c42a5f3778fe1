"""Language-model providers and a shared client pool with concurrency control."""
from __future__ import annotations

import abc
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import structlog
from openai import AsyncAzureOpenAI, AsyncOpenAI

from agentmesh.config import LLMConfig

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class LLMResponse:
    content: str
    token_usage: int = 0
    model: Optional[str] = None


class LLMProvider(abc.ABC):
    """Text generation contract consumed by LLM-backed agents and decision engines."""

    async def initialize(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    @abc.abstractmethod
    async def generate_text(
        self, prompt: str, *, max_tokens: int = 256, temperature: float = 0.7
    ) -> LLMResponse:
        """Complete ``prompt``."""


class LLMPool:
    """Manages shared LLM clients with concurrency limiting."""

    def __init__(self) -> None:
        self._configs: Dict[str, LLMConfig] = {}
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def register(self, name: str, config: LLMConfig) -> None:
        """Register a model configuration under ``name``."""
        self._configs[name] = config
        self._semaphores[name] = asyncio.Semaphore(config.max_concurrent)

    def __contains__(self, name: str) -> bool:
        return name in self._configs

    @asynccontextmanager
    async def acquire(self, name: str) -> AsyncIterator[Any]:
        """Acquire access to a model client with concurrency control."""
        if name not in self._configs:
            raise KeyError(f"Model '{name}' not registered in LLM pool")

        semaphore = self._semaphores[name]
        async with semaphore:
            # Lazy initialization on first use
            if name not in self._clients:
                self._clients[name] = self._build_client(self._configs[name])
                logger.info("llm_client_created", model=name, provider=self._configs[name].provider)
            yield self._clients[name]

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        await asyncio.gather(*(client.close() for client in clients), return_exceptions=True)

    @staticmethod
    def _build_client(config: LLMConfig) -> Any:
        if config.provider == "azure":
            return AsyncAzureOpenAI(
                api_key=config.api_key,
                api_version=config.api_version,
                azure_endpoint=config.endpoint,
            )
        return AsyncOpenAI(api_key=config.api_key, base_url=config.endpoint)


class PooledLLMProvider(LLMProvider):
    """Provider backed by a named model in an ``LLMPool``."""

    def __init__(self, pool: LLMPool, name: str, model: Optional[str] = None) -> None:
        self._pool = pool
        self._name = name
        self._model = model or name

    async def generate_text(
        self, prompt: str, *, max_tokens: int = 256, temperature: float = 0.7
    ) -> LLMResponse:
        async with self._pool.acquire(self._name) as client:
            response = await client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=response.choices[0].message.content or "",
            token_usage=getattr(usage, "total_tokens", 0) or 0,
            model=self._model,
        )


class ScriptedLLMProvider(LLMProvider):
    """Offline provider replaying canned completions in order, then echoing the prompt."""

    def __init__(self, responses: Optional[Iterable[str]] = None, *, model: str = "scripted") -> None:
        self._responses: List[str] = list(responses or [])
        self._model = model
        self.prompts: List[str] = []

    async def generate_text(
        self, prompt: str, *, max_tokens: int = 256, temperature: float = 0.7
    ) -> LLMResponse:
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        content = self._responses.pop(0) if self._responses else f"Received: {prompt[:max_tokens]}"
        return LLMResponse(content=content, token_usage=len(prompt.split()) + len(content.split()), model=self._model)
