"""Configuration management for the orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    return float(raw) if raw else None


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class LLMConfig:
    """Language-model provider configuration (OpenAI or Azure OpenAI)."""

    api_key: str
    provider: str = "openai"
    endpoint: Optional[str] = None
    api_version: str = "2024-02-15-preview"
    model: str = "gpt-4o-mini"
    max_concurrent: int = 50


@dataclass(frozen=True)
class OrchestratorSettings:
    scheduling_interval: float = 1.0
    max_scheduled_tasks: int = 10
    auto_assign: bool = True


@dataclass(frozen=True)
class MemorySettings:
    dimension: int = 384
    max_entries: Optional[int] = 10000
    default_ttl: Optional[float] = None


@dataclass(frozen=True)
class DecisionSettings:
    history_limit: int = 1000
    recent_window: int = 100
    recalibrate_every: int = 1


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    llm: Optional[LLMConfig] = None
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    decision: DecisionSettings = field(default_factory=DecisionSettings)
    log_level: str = "INFO"
    log_format: str = "json"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        llm_config = None
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        openai_key = os.getenv("OPENAI_API_KEY")
        if azure_key and os.getenv("AZURE_OPENAI_ENDPOINT"):
            llm_config = LLMConfig(
                api_key=azure_key,
                provider="azure",
                endpoint=os.getenv("AZURE_OPENAI_ENDPOINT"),
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                model=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4"),
                max_concurrent=int(os.getenv("AZURE_OPENAI_MAX_CONCURRENT", "50")),
            )
        elif openai_key:
            llm_config = LLMConfig(
                api_key=openai_key,
                model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
            )

        return cls(
            llm=llm_config,
            orchestrator=OrchestratorSettings(
                scheduling_interval=float(os.getenv("AGENTMESH_SCHEDULING_INTERVAL", "1.0")),
                max_scheduled_tasks=int(os.getenv("AGENTMESH_MAX_SCHEDULED_TASKS", "10")),
                auto_assign=_flag("AGENTMESH_AUTO_ASSIGN", True),
            ),
            memory=MemorySettings(
                dimension=int(os.getenv("AGENTMESH_MEMORY_DIMENSION", "384")),
                max_entries=int(os.getenv("AGENTMESH_MEMORY_MAX_ENTRIES", "10000")) or None,
                default_ttl=_optional_float("AGENTMESH_MEMORY_TTL"),
            ),
            decision=DecisionSettings(
                history_limit=int(os.getenv("AGENTMESH_DECISION_HISTORY", "1000")),
                recent_window=int(os.getenv("AGENTMESH_DECISION_WINDOW", "100")),
                recalibrate_every=int(os.getenv("AGENTMESH_RECALIBRATE_EVERY", "1")),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
