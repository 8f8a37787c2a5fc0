from __future__ import annotations

import json
import logging
import os
import re
import uuid
from dataclasses import replace
from typing import Any

from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError

from src.domain.models import (
    Direction,
    ExecutionPlan,
    MarketSnapshot,
    Position,
    RiskHints,
    StopKind,
    StopLossSpec,
    Strategy,
    TakeProfitSpec,
    TargetKind,
    TrendAnalysis,
)
from src.research.prompts import (
    build_candidate_system_prompt,
    build_execution_system_prompt,
    build_optimize_system_prompt,
    format_user_payload,
)

logger = logging.getLogger(__name__)

OPENAI_TIMEOUT_SECONDS = 30
OPENAI_MAX_RETRIES = 2

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


class OracleError(RuntimeError):
    pass


def extract_json(text: str) -> dict[str, Any]:
    """Pull the outermost JSON object out of a model reply (tolerates prose or fences around it)."""
    text = text or ""
    m = _JSON_BLOCK.search(text)
    if not m:
        raise OracleError(f"No JSON object in model output: {text[:120]!r}")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise OracleError(f"Model output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise OracleError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def analyse_trend(snapshot: MarketSnapshot) -> TrendAnalysis:
    chg = float(snapshot.price_change_pct_24h)
    mag = abs(chg)
    if mag > 2:
        direction = "BULLISH" if chg > 0 else "BEARISH"
        strength = min(10, int(5 + mag / 2))
    elif mag > 0.5:
        direction = "SLIGHTLY_BULLISH" if chg > 0 else "SLIGHTLY_BEARISH"
        strength = min(10, int(5 + mag))
    else:
        direction = "SIDEWAYS"
        strength = 5
    reasoning = (
        f"24h change {chg:+.2f}%, funding {snapshot.funding_rate * 100:.4f}%, "
        f"volume {snapshot.volume_24h:,.0f}"
    )
    return TrendAnalysis(direction=direction, strength=strength, reasoning=reasoning)


def _direction(value: Any) -> Direction:
    try:
        return Direction(str(value).strip().upper())
    except ValueError as e:
        raise OracleError(f"Invalid side: {value!r}") from e


class StrategyOracle:
    def __init__(self, model: str = "gpt-4.1-mini", *, config: dict | None = None, client: Any = None):
        """
        OpenAI-compatible strategy oracle.

        - OpenAI: set OPENAI_API_KEY (and optionally OPENAI_BASE_URL)
        - Other compatible servers: set OPENAI_BASE_URL (a dummy key is used when none is set)
        """
        self.config: dict = config or {}
        ai_cfg = self.config.get("ai", {}) or {}
        timeout = float(ai_cfg.get("timeout_seconds", OPENAI_TIMEOUT_SECONDS))

        if client is not None:
            self.client = client
        else:
            base_url = (os.getenv("OPENAI_BASE_URL") or "").strip() or None
            api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
            if not api_key and base_url:
                api_key = "ollama"
            if api_key or base_url:
                self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=OPENAI_MAX_RETRIES)
            else:
                self.client = None
        self.model = model
        self.timeout = timeout

        trading = self.config.get("trading", {}) or {}
        self.max_leverage = float(trading.get("max_leverage", 5))
        self.max_position_size = float(trading.get("max_position_size", 100))

    def _safe_completion(self, system: str, user: str, max_tokens: int = 1200, temperature: float = 0) -> str:
        if not self.client:
            raise OracleError("OPENAI_API_KEY is not set")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return (response.choices[0].message.content or "").strip()
        except APITimeoutError as e:
            raise OracleError(f"OpenAI API timed out after {self.timeout:g}s") from e
        except APIConnectionError as e:
            raise OracleError(f"Failed to connect to OpenAI API: {e}") from e
        except RateLimitError as e:
            raise OracleError(f"OpenAI rate limit exceeded: {e}") from e
        except Exception as e:
            raise OracleError(f"OpenAI API error: {type(e).__name__}: {e}") from e

    def _cap(self, leverage: float, notional: float) -> tuple[float, float]:
        return min(float(leverage), self.max_leverage), min(float(notional), self.max_position_size)

    # ----- candidate -----

    def fallback_candidate(self, symbol: str, snapshot: MarketSnapshot) -> Strategy:
        leverage, notional = self._cap(5, 100)
        return Strategy(
            id=f"strat_{uuid.uuid4().hex[:12]}",
            symbol=symbol,
            direction=Direction.LONG if snapshot.funding_rate > 0 else Direction.SHORT,
            entry_price=float(snapshot.price),
            leverage=leverage,
            notional=notional,
            stop_loss=StopLossSpec(StopKind.FIXED, 3.0),
            take_profit=TakeProfitSpec(TargetKind.FIXED, 6.0),
            confidence=60.0,
            risk_score=5.0,
            provenance="fallback",
            reasoning="Fallback strategy: model output could not be parsed",
            entry_condition="Market entry based on current conditions",
        )

    def _parse_candidate(self, symbol: str, raw: str) -> Strategy:
        data = extract_json(raw)
        try:
            leverage, notional = self._cap(data["leverage"], data["positionSize"])
            return Strategy(
                id=f"strat_{uuid.uuid4().hex[:12]}",
                symbol=symbol,
                direction=_direction(data["side"]),
                entry_price=float(data["entryPrice"]),
                leverage=leverage,
                notional=notional,
                stop_loss=StopLossSpec(StopKind.FIXED, float(data["stopLossPercentage"])),
                take_profit=TakeProfitSpec(TargetKind.FIXED, float(data["takeProfitPercentage"])),
                confidence=float(data.get("confidence", 50)),
                risk_score=float(data.get("riskScore", 5)),
                provenance="oracle",
                reasoning=str(data.get("reasoning") or ""),
                entry_condition=str(data.get("entryCondition") or ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise OracleError(f"Candidate JSON missing or invalid field: {e}") from e

    def generate_candidate(self, symbol: str, snapshot: MarketSnapshot, context: dict[str, Any]) -> Strategy:
        """
        Ask the model for one trade idea.
        Transport failures raise OracleError; unparseable output yields the fallback strategy.
        """
        user = format_user_payload({"symbol": symbol, "market": snapshot.to_dict(), "context": context})
        raw = self._safe_completion(build_candidate_system_prompt(self.config), user)
        try:
            strategy = self._parse_candidate(symbol, raw)
        except OracleError as e:
            logger.warning(f"Failed to parse candidate for {symbol}, using fallback strategy: {e}")
            return self.fallback_candidate(symbol, snapshot)
        logger.info(f"Candidate {strategy.id}: {strategy.direction.value} {symbol} "
                    f"{strategy.leverage:g}x ${strategy.notional:g} (confidence {strategy.confidence:g})")
        return strategy

    # ----- optimisation -----

    def optimize_candidate(self, candidate: Strategy, open_positions: list[Position]) -> tuple[Strategy, RiskHints]:
        user = format_user_payload({
            "proposal": candidate.to_dict(),
            "open_positions": [p.to_dict() for p in open_positions],
        })
        data = extract_json(self._safe_completion(build_optimize_system_prompt(self.config), user))

        try:
            ra = data.get("riskAssessment") or {}
            hints = RiskHints(
                score=float(ra["score"]) if ra.get("score") is not None else None,
                recommendation=str(ra.get("recommendation") or "") or None,
                reasons=[str(r) for r in ra.get("reasons") or []],
                reasoning=str(data.get("optimizationReasoning") or ""),
                improvements=[str(i) for i in data.get("improvements") or []],
                expected_win_rate=float(data["expectedWinRate"]) if data.get("expectedWinRate") is not None else None,
                expected_risk_reward=float(data["expectedRiskReward"]) if data.get("expectedRiskReward") is not None else None,
            )
            if data.get("keepOriginal") or not data.get("optimizations"):
                return candidate, hints

            opt = data["optimizations"]
            sl = opt.get("stopLoss") or {}
            tp = opt.get("takeProfit") or {}
            leverage, notional = self._cap(opt.get("leverage", candidate.leverage),
                                           opt.get("positionSize", candidate.notional))
            stop_kind = StopKind(str(sl.get("type", candidate.stop_loss.kind.value)).upper())
            trailing = sl.get("trailingDistance")
            adjusted = replace(
                candidate,
                id=f"opt_{uuid.uuid4().hex[:12]}",
                entry_price=float(opt.get("entryPrice", candidate.entry_price)),
                leverage=leverage,
                notional=notional,
                stop_loss=StopLossSpec(
                    stop_kind,
                    float(sl.get("percentage", candidate.stop_loss.percentage)),
                    float(trailing) if trailing is not None else None,
                ),
                take_profit=TakeProfitSpec(
                    TargetKind(str(tp.get("type", candidate.take_profit.kind.value)).upper()),
                    float(tp.get("percentage", candidate.take_profit.percentage)),
                ),
                provenance="optimizer",
                reasoning=hints.reasoning or candidate.reasoning,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise OracleError(f"Optimisation JSON missing or invalid field: {e}") from e

        logger.info(f"Optimised {candidate.id} -> {adjusted.id} (advice: {hints.recommendation})")
        return adjusted, hints

    # ----- execution plan -----

    def generate_execution_plan(self, strategy: Strategy, fee_context: dict[str, Any]) -> ExecutionPlan:
        user = format_user_payload({"strategy": strategy.to_dict(), "fees": fee_context})
        data = extract_json(self._safe_completion(build_execution_system_prompt(self.config), user, max_tokens=600))
        try:
            kind = str(data.get("executionType") or "MARKET").upper()
            if kind not in ("MARKET", "LIMIT"):
                raise ValueError(f"executionType {kind!r}")
            limit = data.get("limitPrice")
            plan = ExecutionPlan(
                should_execute=bool(data["shouldExecute"]),
                order_kind=kind,
                limit_price=float(limit) if limit is not None else None,
                warnings=[str(w) for w in data.get("warnings") or []],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise OracleError(f"Execution plan JSON missing or invalid field: {e}") from e
        logger.info(f"Execution plan for {strategy.symbol}: execute={plan.should_execute} {plan.order_kind}")
        return plan
