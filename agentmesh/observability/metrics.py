"""In-process counters and latency aggregates for the orchestrator."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """Collect counters, gauges and latency summaries."""

    def __init__(self) -> None:
        self.metrics: Dict[str, Any] = {}
        self.started_at = time.monotonic()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def record_latency(self, operation: str, duration: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a duration in seconds for ``operation``."""
        key = f"latency.{operation}"
        stats = self.metrics.setdefault(key, {"count": 0, "sum": 0.0, "min": float("inf"), "max": 0.0})
        stats["count"] += 1
        stats["sum"] += duration
        stats["min"] = min(stats["min"], duration)
        stats["max"] = max(stats["max"], duration)
        logger.debug("metric", metric_type="latency", operation=operation, duration=duration, tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None) -> None:
        self.metrics[name] = self.metrics.get(name, 0) + value
        logger.debug("metric", metric_type="counter", name=name, value=value, tags=tags or {})

    def set_gauge(self, name: str, value: float) -> None:
        self.metrics[name] = value

    def get(self, name: str, default: Any = 0) -> Any:
        return self.metrics.get(name, default)

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0.0,
                    "min": value["min"] if value["min"] != float("inf") else 0.0,
                    "max": value["max"],
                }
            else:
                summary[key] = value
        return summary

    def reset(self) -> None:
        self.metrics.clear()
        self.started_at = time.monotonic()
