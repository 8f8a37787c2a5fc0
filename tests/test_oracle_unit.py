import json
from types import SimpleNamespace

import pytest

from src.domain.models import Direction, StopKind
from src.research.oracle import OracleError, StrategyOracle, analyse_trend, extract_json
from tests.fakes import make_position, make_snapshot, make_strategy

CONFIG = {"ai": {}, "trading": {"max_leverage": 5, "max_position_size": 100}}


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


def _oracle(*replies):
    completions = FakeCompletions(replies)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return StrategyOracle(config=CONFIG, client=client), completions


def test_extract_json_tolerates_surrounding_prose():
    assert extract_json('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}


def test_extract_json_rejects_garbage():
    with pytest.raises(OracleError):
        extract_json("no json here")
    with pytest.raises(OracleError):
        extract_json("{not: valid}")


def test_candidate_is_parsed_and_capped():
    reply = json.dumps({
        "side": "short", "entryPrice": 101.5, "entryCondition": "on retest", "leverage": 8,
        "positionSize": 250, "stopLossPercentage": 3, "takeProfitPercentage": 7,
        "reasoning": "Funding is rich.", "confidence": 72, "riskScore": 4,
    })
    oracle, completions = _oracle(reply)
    s = oracle.generate_candidate("ETHUSDT", make_snapshot("ETHUSDT"), {"trend": {}})

    assert s.direction is Direction.SHORT
    assert s.leverage == 5.0
    assert s.notional == 100.0
    assert s.entry_price == 101.5
    assert s.provenance == "oracle"
    assert completions.requests[0]["messages"][0]["role"] == "system"


def test_unparseable_candidate_uses_fallback():
    oracle, _ = _oracle("I think you should go long!")
    s = oracle.generate_candidate("BTCUSDT", make_snapshot(price=65000.0, funding_rate=-0.0002), {})
    assert s.provenance == "fallback"
    assert s.direction is Direction.SHORT
    assert s.entry_price == 65000.0
    assert (s.leverage, s.notional) == (5.0, 100.0)
    assert (s.stop_loss.percentage, s.take_profit.percentage) == (3.0, 6.0)
    assert (s.confidence, s.risk_score) == (60.0, 5.0)


def test_fallback_goes_long_on_positive_funding():
    oracle, _ = _oracle("{}")
    assert oracle.generate_candidate("BTCUSDT", make_snapshot(funding_rate=0.0001), {}).direction is Direction.LONG


def test_transport_failure_raises():
    oracle, _ = _oracle(RuntimeError("connection reset"))
    with pytest.raises(OracleError):
        oracle.generate_candidate("BTCUSDT", make_snapshot(), {})


def test_missing_client_raises():
    oracle = StrategyOracle(config=CONFIG, client=None)
    oracle.client = None
    with pytest.raises(OracleError, match="OPENAI_API_KEY"):
        oracle.generate_candidate("BTCUSDT", make_snapshot(), {})


def test_optimize_builds_adjusted_strategy_and_hints():
    reply = json.dumps({
        "keepOriginal": False,
        "optimizations": {
            "entryPrice": 100, "leverage": 3, "positionSize": 80,
            "stopLoss": {"type": "TRAILING", "percentage": 2.5, "trailingDistance": 1.5},
            "takeProfit": {"type": "FIXED", "percentage": 5},
        },
        "riskAssessment": {"score": 4.2, "recommendation": "APPROVE", "reasons": ["ok"]},
        "optimizationReasoning": "Lower leverage.",
        "improvements": ["reduced leverage"],
        "expectedWinRate": 55, "expectedRiskReward": 2,
    })
    oracle, _ = _oracle(reply)
    original = make_strategy(leverage=5.0)
    adjusted, hints = oracle.optimize_candidate(original, [make_position(symbol="ETHUSDT")])

    assert adjusted is not original
    assert original.leverage == 5.0
    assert adjusted.leverage == 3.0
    assert adjusted.stop_loss.kind is StopKind.TRAILING
    assert adjusted.stop_loss.trailing_distance == 1.5
    assert adjusted.provenance == "optimizer"
    assert hints.recommendation == "APPROVE"
    assert hints.expected_win_rate == 55.0


def test_optimize_keep_original_returns_same_candidate():
    oracle, _ = _oracle('{"keepOriginal": true, "riskAssessment": {"score": 3}}')
    original = make_strategy()
    adjusted, hints = oracle.optimize_candidate(original, [])
    assert adjusted is original
    assert hints.score == 3.0


def test_optimize_garbage_raises():
    oracle, _ = _oracle("sorry")
    with pytest.raises(OracleError):
        oracle.optimize_candidate(make_strategy(), [])


def test_execution_plan_parsing():
    oracle, _ = _oracle('{"shouldExecute": true, "executionType": "LIMIT", "limitPrice": 99.5, "warnings": ["gas"]}')
    plan = oracle.generate_execution_plan(make_strategy(), {"gas_price_gwei": 3})
    assert plan.should_execute is True
    assert plan.order_kind == "LIMIT"
    assert plan.limit_price == 99.5
    assert plan.warnings == ["gas"]


def test_execution_plan_without_decision_raises():
    oracle, _ = _oracle('{"executionType": "MARKET"}')
    with pytest.raises(OracleError):
        oracle.generate_execution_plan(make_strategy(), {})


@pytest.mark.parametrize("change,direction,strength", [
    (5.0, "BULLISH", 7),
    (-30.0, "BEARISH", 10),
    (1.2, "SLIGHTLY_BULLISH", 6),
    (-0.8, "SLIGHTLY_BEARISH", 5),
    (0.3, "SIDEWAYS", 5),
])
def test_trend_analysis(change, direction, strength):
    t = analyse_trend(make_snapshot(price_change_pct_24h=change))
    assert t.direction == direction
    assert t.strength == strength
