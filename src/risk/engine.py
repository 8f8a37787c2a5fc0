from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Callable, Sequence

from src.domain.models import (
    DailyStats,
    Direction,
    Position,
    Recommendation,
    RiskAssessment,
    RiskFactor,
    Strategy,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS = ("BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT")

REJECT_THRESHOLD = 8.0
REDUCE_THRESHOLD = 6.0


@dataclass(frozen=True)
class RiskLimits:
    max_leverage: float = 5.0
    max_position_size: float = 100.0
    max_daily_loss_pct: float = 3.0
    max_concurrent_positions: int = 3
    allowed_symbols: tuple[str, ...] = DEFAULT_SYMBOLS
    concentration_scale: float = 5.0

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RiskLimits:
        t = config.get("trading", {}) or {}
        return cls(
            max_leverage=float(t.get("max_leverage", 5)),
            max_position_size=float(t.get("max_position_size", 100)),
            max_daily_loss_pct=float(t.get("max_daily_loss_pct", 3)),
            max_concurrent_positions=int(t.get("max_concurrent_positions", 3)),
            allowed_symbols=tuple(str(s).upper() for s in (t.get("symbols") or DEFAULT_SYMBOLS)),
            concentration_scale=float(t.get("concentration_scale", 5)),
        )


# ----- price and P&L math (no rounding; callers round to the instrument) -----

def compute_stop_price(entry: float, direction: Direction, pct: float) -> float:
    if direction is Direction.LONG:
        return entry * (1 - pct / 100)
    return entry * (1 + pct / 100)


def compute_target_price(entry: float, direction: Direction, pct: float) -> float:
    if direction is Direction.LONG:
        return entry * (1 + pct / 100)
    return entry * (1 - pct / 100)


def compute_trailing_stop(current_price: float, direction: Direction, distance_pct: float) -> float:
    if direction is Direction.LONG:
        return current_price * (1 - distance_pct / 100)
    return current_price * (1 + distance_pct / 100)


def should_trigger_stop(current_price: float, stop_price: float, direction: Direction) -> bool:
    if direction is Direction.LONG:
        return current_price <= stop_price
    return current_price >= stop_price


def should_trigger_target(current_price: float, target_price: float, direction: Direction) -> bool:
    if direction is Direction.LONG:
        return current_price >= target_price
    return current_price <= target_price


def compute_pnl_percent(entry: float, current: float, notional: float, leverage: float, direction: Direction) -> float:
    """
    Leveraged P&L as a percentage of margin.
    `notional` is accepted for symmetry with callers; dollar figures are the caller's job.
    """
    if entry <= 0:
        return 0.0
    move = (current - entry) / entry
    if direction is Direction.SHORT:
        move = -move
    return move * leverage * 100


def is_tighter_stop(new_stop: float, old_stop: float, direction: Direction) -> bool:
    """Higher is tighter for a long, lower for a short."""
    if direction is Direction.LONG:
        return new_stop > old_stop
    return new_stop < old_stop


def build_alternatives(strategy: Strategy) -> list[dict[str, Any]]:
    """Advisory conservative/aggressive variants. Never fed back into admission."""
    conservative = replace(
        strategy,
        leverage=float(max(1, math.floor(strategy.leverage / 2))),
        notional=strategy.notional * 0.75,
        stop_loss=replace(strategy.stop_loss, percentage=strategy.stop_loss.percentage * 0.75),
        take_profit=replace(strategy.take_profit, percentage=strategy.take_profit.percentage * 0.75),
        provenance="optimizer",
    )
    out = [{"type": "CONSERVATIVE", "strategy": conservative.to_dict()}]
    if strategy.leverage < 15:
        aggressive = replace(
            strategy,
            leverage=float(min(20, math.ceil(strategy.leverage * 1.5))),
            notional=strategy.notional * 1.25,
            stop_loss=replace(strategy.stop_loss, percentage=strategy.stop_loss.percentage * 1.25),
            take_profit=replace(strategy.take_profit, percentage=strategy.take_profit.percentage * 1.5),
            provenance="optimizer",
        )
        out.append({"type": "AGGRESSIVE", "strategy": aggressive.to_dict()})
    return out


class RiskEngine:
    """
    Admission control for candidate strategies plus the daily P&L counter.

    The counter rolls over lazily: every public call first compares the UTC date of
    `clock()` with the stored reset date, so no timer is needed.
    """

    def __init__(self, limits: RiskLimits, *, clock: Callable[[], datetime] = utc_now):
        self.limits = limits
        self._clock = clock
        self._lock = threading.Lock()
        self._daily_pnl = 0.0
        self._daily_trades = 0
        self._reset_date: date = self._today()

    def _today(self) -> date:
        return self._clock().date()

    def _rollover(self) -> None:
        today = self._today()
        if today > self._reset_date:
            logger.info(f"Daily risk counter reset ({self._reset_date} -> {today})")
            self._daily_pnl = 0.0
            self._daily_trades = 0
            self._reset_date = today

    # ----- daily counter -----

    def update_daily_pnl(self, pnl_pct: float) -> None:
        with self._lock:
            self._rollover()
            self._daily_pnl += float(pnl_pct)
            self._daily_trades += 1
            logger.info(f"Daily P&L updated: {self._daily_pnl:.2f}% over {self._daily_trades} trade(s)")

    def is_daily_loss_limit_exceeded(self) -> bool:
        with self._lock:
            self._rollover()
            return abs(self._daily_pnl) >= self.limits.max_daily_loss_pct

    def daily_stats(self) -> DailyStats:
        with self._lock:
            self._rollover()
            return DailyStats(pnl_pct=self._daily_pnl, trades=self._daily_trades, reset_date=self._reset_date)

    # ----- admission -----

    def hard_limit_reasons(self, candidate: Strategy, open_positions: Sequence[Position]) -> list[str]:
        lim = self.limits
        reasons: list[str] = []
        if self.is_daily_loss_limit_exceeded():
            reasons.append("Daily loss limit exceeded")
        if not candidate.leverage > 0:
            reasons.append("Leverage must be positive")
        elif candidate.leverage > lim.max_leverage:
            reasons.append(f"Leverage exceeds max ({lim.max_leverage:g}x)")
        if not candidate.notional > 0:
            reasons.append("Position size must be positive")
        elif candidate.notional > lim.max_position_size:
            reasons.append(f"Position size exceeds max (${lim.max_position_size:g})")
        if candidate.symbol.upper() not in lim.allowed_symbols:
            reasons.append(f"Symbol {candidate.symbol} not in allowed list")
        if len(open_positions) >= lim.max_concurrent_positions:
            reasons.append(f"Maximum concurrent positions reached ({lim.max_concurrent_positions})")
        if any(p.symbol == candidate.symbol for p in open_positions):
            reasons.append(f"Already have position for {candidate.symbol}")
        return reasons

    def _factors(self, candidate: Strategy, open_positions: Sequence[Position]) -> list[RiskFactor]:
        lim = self.limits
        lev_ratio = candidate.leverage / lim.max_leverage if lim.max_leverage > 0 else 1.0
        size_ratio = candidate.notional / lim.max_position_size if lim.max_position_size > 0 else 1.0
        scale = lim.concentration_scale if lim.concentration_scale > 0 else 1.0
        return [
            RiskFactor("leverage", lev_ratio, 0.30),
            RiskFactor("position_size", size_ratio, 0.20),
            RiskFactor("confidence", 1 - candidate.confidence / 100, 0.15),
            RiskFactor("strategy_risk", candidate.risk_score / 10, 0.25),
            RiskFactor("concentration", min(len(open_positions) / scale, 1.0), 0.10),
        ]

    def assess_risk(self, candidate: Strategy, open_positions: Sequence[Position]) -> RiskAssessment:
        factors = self._factors(candidate, open_positions)
        score = sum(f.value * f.weight * 10 for f in factors)
        if math.isnan(score):
            score = 10.0

        reasons: list[str] = []
        if score > REJECT_THRESHOLD:
            recommendation = Recommendation.REJECT
            reasons.append("Risk score too high (>8/10)")
        elif score > REDUCE_THRESHOLD:
            recommendation = Recommendation.REDUCE_SIZE
            reasons.append("Moderate-high risk detected")
            reasons.append("Suggest reducing position size by 50%")
        else:
            recommendation = Recommendation.APPROVE

        overrides = self.hard_limit_reasons(candidate, open_positions)
        if overrides:
            recommendation = Recommendation.REJECT
            reasons.extend(overrides)

        if recommendation is Recommendation.APPROVE:
            reasons.append("All risk checks passed")
            reasons.append(f"Total risk score: {score:.1f}/10")

        return RiskAssessment(score=score, factors=factors, recommendation=recommendation, reasons=reasons)

    # Pure helpers, re-exported for callers holding an engine.
    compute_stop_price = staticmethod(compute_stop_price)
    compute_target_price = staticmethod(compute_target_price)
    compute_trailing_stop = staticmethod(compute_trailing_stop)
    should_trigger_stop = staticmethod(should_trigger_stop)
    should_trigger_target = staticmethod(should_trigger_target)
    compute_pnl_percent = staticmethod(compute_pnl_percent)
