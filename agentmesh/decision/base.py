"""Decision engine contract shared by the rule-based and LLM-backed strategies."""
from __future__ import annotations

import abc
from numbers import Real
from typing import Any, Mapping

from agentmesh.core.models import DecisionContext

NEUTRAL_SCORE = 0.5


def score_outcome(outcome: Any) -> float:
    """Map an arbitrary outcome onto a quality score in [0, 1].

    ``True``/``"success"``/``{"success": True}`` score 1.0, their negative
    counterparts 0.0, ``"partial"``/``{"partial": True}`` 0.5, a number already
    in [0, 1] is used as-is and ``{"score": x}`` is clamped. Anything else is
    neutral.
    """
    if isinstance(outcome, bool):
        return 1.0 if outcome else 0.0
    if isinstance(outcome, str):
        return {"success": 1.0, "failure": 0.0, "partial": 0.5}.get(outcome.lower(), NEUTRAL_SCORE)
    if isinstance(outcome, Real):
        value = float(outcome)
        return value if 0.0 <= value <= 1.0 else NEUTRAL_SCORE
    if isinstance(outcome, Mapping):
        success = outcome.get("success")
        if isinstance(success, bool):
            return 1.0 if success else 0.0
        if outcome.get("partial") is True:
            return 0.5
        score = outcome.get("score")
        if isinstance(score, Real) and not isinstance(score, bool):
            return max(0.0, min(1.0, float(score)))
    return NEUTRAL_SCORE


class DecisionEngine(abc.ABC):
    """Strategy mapping a context snapshot to an action string."""

    async def initialize(self) -> None:
        """Hook executed when the owning agent initialises."""
        return None

    async def shutdown(self) -> None:
        """Hook executed when the owning agent shuts down."""
        return None

    @abc.abstractmethod
    async def make_decision(self, context: DecisionContext) -> str:
        """Pick the next action for ``context``."""

    @abc.abstractmethod
    async def evaluate_decision(self, decision: str, context: DecisionContext, outcome: Any) -> float:
        """Score how good ``decision`` turned out to be, in [0, 1]."""

    @abc.abstractmethod
    async def learn(self, decision: str, context: DecisionContext, outcome: Any) -> None:
        """Fold an observed outcome back into the strategy."""

    @abc.abstractmethod
    async def get_confidence(self, decision: str, context: DecisionContext) -> float:
        """Confidence (0-1) that ``decision`` is right for ``context``."""
