"""Rule-based decision engine with outcome-driven priority/confidence adaptation."""
from __future__ import annotations

import dataclasses
import itertools
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Iterable, Optional, Tuple

import structlog

from agentmesh.core.models import AgentStatus, DecisionContext, TaskPriority, utcnow
from agentmesh.decision.base import NEUTRAL_SCORE, DecisionEngine, score_outcome

logger = structlog.get_logger(__name__)

Condition = Callable[[DecisionContext], bool]

UNMATCHED_CONFIDENCE = 0.3
MIN_PRIORITY = 1.0
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
PRIORITY_STEP = 10.0


@dataclass(frozen=True)
class Rule:
    id: str
    condition: Condition
    action: str
    priority: float
    confidence: float

    def holds(self, context: DecisionContext) -> bool:
        return bool(self.condition(context))


@dataclass(frozen=True)
class DecisionRecord:
    decision: str
    context: DecisionContext
    outcome: Any
    score: float
    timestamp: datetime = field(default_factory=utcnow)


def default_rules() -> Tuple[Rule, ...]:
    """Rules every fresh engine starts with."""
    return (
        Rule(
            id="urgent-task",
            condition=lambda ctx: ctx.current_task is not None and ctx.current_task.priority == TaskPriority.URGENT,
            action="execute_immediately",
            priority=100,
            confidence=0.9,
        ),
        Rule(
            id="low-resources",
            condition=lambda ctx: ctx.resources.cpu > 0.8 or ctx.resources.memory > 0.9,
            action="defer_task",
            priority=90,
            confidence=0.8,
        ),
        Rule(
            id="has-dependencies",
            condition=lambda ctx: ctx.current_task is not None and len(ctx.current_task.dependencies) > 0,
            action="wait_for_dependencies",
            priority=80,
            confidence=0.7,
        ),
        Rule(
            id="available-tasks",
            condition=lambda ctx: len(ctx.available_tasks) > 0,
            action="select_best_task",
            priority=50,
            confidence=0.6,
        ),
        Rule(
            id="idle-state",
            condition=lambda ctx: ctx.agent_status == AgentStatus.IDLE,
            action="wait_for_task",
            priority=10,
            confidence=0.9,
        ),
    )


def _sorted(rules: Iterable[Rule]) -> Tuple[Rule, ...]:
    # Stable: equal priorities keep insertion order.
    return tuple(sorted(rules, key=lambda rule: -rule.priority))


class RuleBasedDecisionEngine(DecisionEngine):
    """First matching rule (by descending priority) wins.

    The active rule list is an immutable tuple. Every mutation (adding,
    removing, recalibrating) builds a new sorted tuple and swaps it in with a
    single assignment, so an evaluation always walks one consistent snapshot.
    """

    def __init__(
        self,
        rules: Optional[Iterable[Rule]] = None,
        *,
        history_limit: int = 1000,
        recent_window: int = 100,
        recalibrate_every: int = 1,
    ) -> None:
        if recalibrate_every < 1:
            raise ValueError("recalibrate_every must be at least 1")
        self._rules: Tuple[Rule, ...] = _sorted(default_rules() if rules is None else rules)
        self._history: Deque[DecisionRecord] = deque(maxlen=history_limit)
        self._recent_window = recent_window
        self._recalibrate_every = recalibrate_every
        self._learn_calls = 0

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    @property
    def history(self) -> Tuple[DecisionRecord, ...]:
        return tuple(self._history)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return next((rule for rule in self._rules if rule.id == rule_id), None)

    def add_rule(self, rule: Rule) -> None:
        if self.get_rule(rule.id) is not None:
            raise ValueError(f"Rule {rule.id!r} already exists")
        self._rules = _sorted(itertools.chain(self._rules, (rule,)))

    def remove_rule(self, rule_id: str) -> bool:
        remaining = tuple(rule for rule in self._rules if rule.id != rule_id)
        removed = len(remaining) != len(self._rules)
        self._rules = remaining
        return removed

    async def make_decision(self, context: DecisionContext) -> str:
        for rule in self._rules:
            if self._safe_holds(rule, context):
                return rule.action
        return self._fallback_decision(context)

    async def evaluate_decision(self, decision: str, context: DecisionContext, outcome: Any) -> float:
        return score_outcome(outcome)

    async def learn(self, decision: str, context: DecisionContext, outcome: Any) -> None:
        score = await self.evaluate_decision(decision, context, outcome)
        self._history.append(DecisionRecord(decision=decision, context=context, outcome=outcome, score=score))
        self._learn_calls += 1
        if self._learn_calls % self._recalibrate_every == 0:
            self.recalibrate()

    async def get_confidence(self, decision: str, context: DecisionContext) -> float:
        for rule in self._rules:
            if rule.action == decision and self._safe_holds(rule, context):
                return (rule.confidence + self.historical_success_rate(decision)) / 2
        return UNMATCHED_CONFIDENCE

    def historical_success_rate(self, decision: str) -> float:
        scores = [record.score for record in self._history if record.decision == decision]
        if not scores:
            return NEUTRAL_SCORE
        return sum(scores) / len(scores)

    def recalibrate(self) -> None:
        """Shift each rule's priority/confidence by the mean score of its recent decisions."""
        recent = list(self._history)[-self._recent_window:]
        adjusted = []
        for rule in self._rules:
            scores = [record.score for record in recent if record.decision == rule.action]
            if not scores:
                adjusted.append(rule)
                continue
            mean = sum(scores) / len(scores)
            adjusted.append(
                dataclasses.replace(
                    rule,
                    priority=max(MIN_PRIORITY, rule.priority + (mean - NEUTRAL_SCORE) * PRIORITY_STEP),
                    confidence=max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, mean)),
                )
            )
        self._rules = _sorted(adjusted)
        logger.debug("rules_recalibrated", rules=[(rule.id, rule.priority) for rule in self._rules])

    @staticmethod
    def _safe_holds(rule: Rule, context: DecisionContext) -> bool:
        try:
            return rule.holds(context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rule_condition_failed", rule_id=rule.id, error=str(exc))
            return False

    @staticmethod
    def _fallback_decision(context: DecisionContext) -> str:
        if context.available_tasks:
            return "select_first_available_task"
        return "wait"
