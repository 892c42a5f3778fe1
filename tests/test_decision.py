"""Tests for the rule-based and LLM-backed decision engines."""
from __future__ import annotations

import pytest

from agentmesh.core.models import AgentStatus, DecisionContext, ResourceMetrics, Task, TaskPriority
from agentmesh.decision.base import score_outcome
from agentmesh.decision.llm import LLMDecisionEngine, extract_decision, extract_score
from agentmesh.decision.rules import Rule, RuleBasedDecisionEngine
from agentmesh.services.llm import LLMProvider, LLMResponse, ScriptedLLMProvider


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def always(action: str, priority: float, confidence: float = 0.5, rule_id: str = "") -> Rule:
    return Rule(
        id=rule_id or action,
        condition=lambda ctx: True,
        action=action,
        priority=priority,
        confidence=confidence,
    )


def idle_context(*tasks: Task) -> DecisionContext:
    return DecisionContext(agent_status=AgentStatus.IDLE, available_tasks=list(tasks))


class FailingProvider(LLMProvider):
    async def generate_text(self, prompt: str, *, max_tokens: int = 256, temperature: float = 0.7) -> LLMResponse:
        raise ConnectionError("model offline")


@pytest.mark.anyio
async def test_higher_priority_rule_wins() -> None:
    engine = RuleBasedDecisionEngine([always("low", 10), always("high", 100)])

    assert await engine.make_decision(idle_context()) == "high"


@pytest.mark.anyio
async def test_raising_condition_is_skipped() -> None:
    def broken(ctx):
        raise RuntimeError("bad rule")

    engine = RuleBasedDecisionEngine(
        [Rule(id="broken", condition=broken, action="never", priority=100, confidence=0.9), always("fallback", 1)]
    )

    assert await engine.make_decision(idle_context()) == "fallback"


@pytest.mark.anyio
async def test_no_matching_rule_falls_back() -> None:
    engine = RuleBasedDecisionEngine([])

    assert await engine.make_decision(idle_context()) == "wait"
    assert await engine.make_decision(idle_context(Task(title="t"))) == "select_first_available_task"


@pytest.mark.anyio
async def test_default_rules_prefer_urgent_current_task() -> None:
    engine = RuleBasedDecisionEngine()
    urgent = Task(title="liquidate", priority=TaskPriority.URGENT)
    context = DecisionContext(
        agent_status=AgentStatus.EXECUTING,
        current_task=urgent,
        resources=ResourceMetrics(cpu=0.95),
    )

    assert await engine.make_decision(context) == "execute_immediately"
    assert [rule.priority for rule in engine.rules] == sorted((rule.priority for rule in engine.rules), reverse=True)


@pytest.mark.anyio
async def test_default_rules_defer_on_low_resources() -> None:
    engine = RuleBasedDecisionEngine()
    context = DecisionContext(agent_status=AgentStatus.EXECUTING, resources=ResourceMetrics(cpu=0.9))

    assert await engine.make_decision(context) == "defer_task"


@pytest.mark.anyio
async def test_successful_outcomes_raise_priority_and_confidence() -> None:
    engine = RuleBasedDecisionEngine([always("trade", 50, 0.6), always("wait", 10, 0.9)])
    context = idle_context()
    before = engine.get_rule("trade")

    for _ in range(10):
        await engine.learn("trade", context, True)

    after = engine.get_rule("trade")
    assert after.priority >= before.priority
    assert after.confidence >= before.confidence
    assert after.confidence <= 0.95
    assert engine.get_rule("wait").priority == 10


@pytest.mark.anyio
async def test_failed_outcomes_lower_priority_and_reorder_rules() -> None:
    engine = RuleBasedDecisionEngine([always("risky", 20, 0.8), always("safe", 15, 0.8)])
    context = idle_context()

    await engine.learn("risky", context, {"success": False})

    assert engine.get_rule("risky").priority == 15
    assert engine.get_rule("risky").confidence == 0.1
    await engine.learn("risky", context, False)
    assert [rule.id for rule in engine.rules] == ["safe", "risky"]
    assert await engine.make_decision(context) == "safe"


@pytest.mark.anyio
async def test_priority_is_floored_at_one() -> None:
    engine = RuleBasedDecisionEngine([always("doomed", 2)])

    for _ in range(3):
        await engine.learn("doomed", idle_context(), 0.0)

    assert engine.get_rule("doomed").priority == 1


@pytest.mark.anyio
async def test_history_is_bounded() -> None:
    engine = RuleBasedDecisionEngine([always("x", 10)], history_limit=5)

    for _ in range(8):
        await engine.learn("x", idle_context(), True)

    assert len(engine.history) == 5


@pytest.mark.anyio
async def test_get_confidence_blends_rule_and_history() -> None:
    engine = RuleBasedDecisionEngine([always("trade", 50, 0.8)], recalibrate_every=100)
    context = idle_context()

    assert await engine.get_confidence("trade", context) == pytest.approx((0.8 + 0.5) / 2)
    await engine.learn("trade", context, True)
    assert await engine.get_confidence("trade", context) == pytest.approx((0.8 + 1.0) / 2)
    assert await engine.get_confidence("unknown", context) == 0.3


def test_add_and_remove_rules_keep_order() -> None:
    engine = RuleBasedDecisionEngine([always("a", 10)])
    engine.add_rule(always("b", 30))

    assert [rule.id for rule in engine.rules] == ["b", "a"]
    with pytest.raises(ValueError):
        engine.add_rule(always("b", 5))
    assert engine.remove_rule("b")
    assert not engine.remove_rule("b")


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (True, 1.0),
        (False, 0.0),
        ({"success": True}, 1.0),
        ({"success": False}, 0.0),
        ({"partial": True}, 0.5),
        (0.25, 0.25),
        ({"score": 3}, 1.0),
        ({"score": -1}, 0.0),
        ("failure", 0.0),
        (object(), 0.5),
        (7, 0.5),
    ],
)
def test_score_outcome(outcome, expected) -> None:
    assert score_outcome(outcome) == expected


def test_extract_helpers() -> None:
    assert extract_score("Score: 0.8") == 0.8
    assert extract_score("I'd say 75") == 0.75
    assert extract_score("an excellent call") == 0.9
    assert extract_score("no idea") == 0.5
    assert extract_decision("Thinking...\nDecision: execute the trade now") == "execute the trade now"


@pytest.mark.anyio
async def test_llm_engine_uses_provider_response() -> None:
    provider = ScriptedLLMProvider(["Decision: rebalance the portfolio", "0.9", "0.6"])
    engine = LLMDecisionEngine(provider)
    context = idle_context(Task(title="rebalance"))

    assert await engine.make_decision(context) == "rebalance the portfolio"
    await engine.learn("rebalance the portfolio", context, {"success": True})
    assert engine.historical_success_rate("rebalance") == 0.9
    assert await engine.get_confidence("rebalance the portfolio", context) == 0.6
    assert "Available Tasks: 1 tasks" in provider.prompts[0]


@pytest.mark.anyio
async def test_llm_engine_falls_back_when_provider_fails() -> None:
    engine = LLMDecisionEngine(FailingProvider())

    assert await engine.make_decision(idle_context()) == "wait_for_tasks"
    assert await engine.make_decision(idle_context(Task(title="t", priority=TaskPriority.HIGH))) == (
        "execute_high_priority_task"
    )
    assert await engine.evaluate_decision("x", idle_context(), {"success": True}) == 1.0
    assert await engine.get_confidence("x", idle_context()) == 0.5
