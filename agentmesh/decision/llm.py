"""Decision engine that asks a language model what to do next."""
from __future__ import annotations

import json
import re
from collections import deque
from typing import Any, Deque, Optional

import structlog

from agentmesh.core.models import DecisionContext, TaskPriority
from agentmesh.decision.base import NEUTRAL_SCORE, DecisionEngine, score_outcome
from agentmesh.decision.rules import DecisionRecord
from agentmesh.services.llm import LLMProvider

logger = structlog.get_logger(__name__)

_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")
_PREFIX = re.compile(r"^(decision|action)\s*:\s*", re.IGNORECASE)
_QUALITATIVE = (
    ("very poor", 0.1),
    ("terrible", 0.1),
    ("excellent", 0.9),
    ("very good", 0.9),
    ("good", 0.7),
    ("successful", 0.7),
    ("average", 0.5),
    ("okay", 0.5),
    ("poor", 0.3),
    ("bad", 0.3),
)


def extract_score(text: str) -> float:
    """Pull a 0-1 score out of free text; values above 1 are read as percentages."""
    match = _NUMBER.search(text)
    if match:
        value = float(match.group(1))
        value = value / 100 if value > 1 else value
        return max(0.0, min(1.0, value))
    lowered = text.lower()
    for phrase, score in _QUALITATIVE:
        if phrase in lowered:
            return score
    return NEUTRAL_SCORE


def extract_decision(text: str) -> str:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    keywords = ("decision", "should", "action")
    chosen = next((line for line in lines if any(word in line.lower() for word in keywords)), lines[0])
    return _PREFIX.sub("", chosen).strip()


class LLMDecisionEngine(DecisionEngine):
    """Prompts an ``LLMProvider`` for decisions, scores and confidence.

    Provider failures never escape: each call falls back to a deterministic
    heuristic so an agent can keep working while the model is unavailable.
    """

    def __init__(self, provider: LLMProvider, *, history_limit: int = 500) -> None:
        self._provider = provider
        self._history: Deque[DecisionRecord] = deque(maxlen=history_limit)

    async def make_decision(self, context: DecisionContext) -> str:
        try:
            response = await self._provider.generate_text(
                self._decision_prompt(context), max_tokens=150, temperature=0.3
            )
            decision = extract_decision(response.content)
        except Exception as exc:  # noqa: BLE001
            logger.warning("llm_decision_failed", error=str(exc))
            return self._fallback_decision(context)
        return decision or self._fallback_decision(context)

    async def evaluate_decision(self, decision: str, context: DecisionContext, outcome: Any) -> float:
        try:
            response = await self._provider.generate_text(
                self._evaluation_prompt(decision, context, outcome), max_tokens=50, temperature=0.1
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("llm_evaluation_failed", error=str(exc))
            return score_outcome(outcome)
        return extract_score(response.content)

    async def learn(self, decision: str, context: DecisionContext, outcome: Any) -> None:
        score = await self.evaluate_decision(decision, context, outcome)
        self._history.append(DecisionRecord(decision=decision, context=context, outcome=outcome, score=score))

    async def get_confidence(self, decision: str, context: DecisionContext) -> float:
        try:
            response = await self._provider.generate_text(
                self._confidence_prompt(decision, context), max_tokens=50, temperature=0.1
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("llm_confidence_failed", error=str(exc))
            return NEUTRAL_SCORE
        return extract_score(response.content)

    def historical_success_rate(self, decision: str) -> float:
        wanted = decision.lower()
        scores = [
            record.score
            for record in self._history
            if wanted in record.decision.lower() or record.decision.lower() in wanted
        ]
        return sum(scores) / len(scores) if scores else NEUTRAL_SCORE

    def _recent_successes(self) -> str:
        successes = [record for record in list(self._history)[-10:] if record.score > 0.6]
        if not successes:
            return ""
        lines = "\n".join(f"- {record.decision} (Score: {record.score:.2f})" for record in successes)
        return f"\nRecent Successful Decisions:\n{lines}"

    def _decision_prompt(self, context: DecisionContext) -> str:
        current: Optional[str] = None
        if context.current_task is not None:
            current = f"{context.current_task.title} (Priority: {context.current_task.priority.value})"
        return (
            "You are an AI agent decision engine. Based on the following context, decide what action to take.\n\n"
            "Current Context:\n"
            f"- Agent State: {context.agent_status.value}\n"
            f"- Current Task: {current or 'None'}\n"
            f"- Available Tasks: {len(context.available_tasks)} tasks\n"
            f"- Resource Usage: CPU {round(context.resources.cpu * 100)}%, "
            f"Memory {round(context.resources.memory * 100)}%\n"
            f"- Constraints: {json.dumps(context.constraints, default=str)}\n"
            f"{self._recent_successes()}\n\n"
            "Based on this context, what should the agent do next? "
            "Provide a clear, actionable decision in 1-2 sentences.\n\nDecision:"
        )

    @staticmethod
    def _evaluation_prompt(decision: str, context: DecisionContext, outcome: Any) -> str:
        return (
            "Evaluate the quality of this decision:\n\n"
            f"Decision Made: {decision}\n"
            f"Context: Agent was {context.agent_status.value} with {len(context.available_tasks)} available tasks\n"
            f"Outcome: {json.dumps(outcome, default=str)}\n\n"
            "Rate the decision quality from 0.0 (very poor) to 1.0 (excellent).\n\nScore (0.0-1.0):"
        )

    def _confidence_prompt(self, decision: str, context: DecisionContext) -> str:
        success = round(self.historical_success_rate(decision) * 100)
        return (
            "Rate your confidence in this decision:\n\n"
            f"Decision: {decision}\n"
            f"Context: Agent state is {context.agent_status.value}, {len(context.available_tasks)} available tasks\n"
            f"Historical success rate for similar decisions: {success}%\n\n"
            "Rate from 0.0 (no confidence) to 1.0 (very confident).\n\nConfidence (0.0-1.0):"
        )

    @staticmethod
    def _fallback_decision(context: DecisionContext) -> str:
        if context.current_task is not None:
            return "continue_current_task"
        if any(task.priority in (TaskPriority.URGENT, TaskPriority.HIGH) for task in context.available_tasks):
            return "execute_high_priority_task"
        if context.available_tasks:
            return "execute_next_available_task"
        return "wait_for_tasks"
