from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"

    @property
    def exit_side(self) -> str:
        return "SELL" if self is Direction.LONG else "BUY"


class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REDUCE_SIZE = "REDUCE_SIZE"


class StopKind(str, Enum):
    FIXED = "FIXED"
    TRAILING = "TRAILING"


class TargetKind(str, Enum):
    FIXED = "FIXED"
    PARTIAL = "PARTIAL"


class MonitorState(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class Stage(str, Enum):
    COLLECT = "collect"
    ASSESS = "assess"
    EXECUTE = "execute"
    MONITOR = "monitor"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class StopLossSpec:
    kind: StopKind
    percentage: float
    trailing_distance: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "percentage": float(self.percentage),
            "trailing_distance": self.trailing_distance,
        }


@dataclass(frozen=True)
class TakeProfitSpec:
    kind: TargetKind
    percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "percentage": float(self.percentage)}


@dataclass(frozen=True)
class Strategy:
    """A candidate trade. Derived strategies are built with `dataclasses.replace`."""

    id: str
    symbol: str
    direction: Direction
    entry_price: float
    leverage: float
    notional: float
    stop_loss: StopLossSpec
    take_profit: TakeProfitSpec
    confidence: float
    risk_score: float
    provenance: str
    reasoning: str = ""
    entry_condition: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "entry_price": float(self.entry_price),
            "leverage": float(self.leverage),
            "notional": float(self.notional),
            "stop_loss": self.stop_loss.to_dict(),
            "take_profit": self.take_profit.to_dict(),
            "confidence": float(self.confidence),
            "risk_score": float(self.risk_score),
            "provenance": self.provenance,
            "reasoning": self.reasoning,
            "entry_condition": self.entry_condition,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class RiskFactor:
    name: str
    value: float
    weight: float


@dataclass(frozen=True)
class RiskAssessment:
    score: float
    factors: list[RiskFactor]
    recommendation: Recommendation
    reasons: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": round(float(self.score), 4),
            "factors": [asdict(f) for f in self.factors],
            "recommendation": self.recommendation.value,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class RiskHints:
    """Advisory output of the optimiser. Never overrides the Risk Engine."""

    score: float | None = None
    recommendation: str | None = None
    reasons: list[str] = field(default_factory=list)
    reasoning: str = ""
    improvements: list[str] = field(default_factory=list)
    expected_win_rate: float | None = None
    expected_risk_reward: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExecutionPlan:
    should_execute: bool
    order_kind: str = "MARKET"
    limit_price: float | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    price: float
    volume_24h: float
    open_interest: float
    funding_rate: float
    index_price: float
    mark_price: float
    price_change_pct_24h: float = 0.0
    fetched_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["fetched_at"] = self.fetched_at.isoformat()
        return d


@dataclass(frozen=True)
class TrendAnalysis:
    direction: str
    strength: int
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Position:
    """Locally tracked position. Mutated only by its PositionMonitor."""

    id: str
    symbol: str
    direction: Direction
    entry_price: float
    current_price: float
    notional: float
    quantity: float
    leverage: float
    stop_price: float
    target_price: float
    trailing_stop: bool
    unrealized_pnl_pct: float = 0.0
    realized_pnl_pct: float = 0.0
    opened_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "entry_price": float(self.entry_price),
            "current_price": float(self.current_price),
            "notional": float(self.notional),
            "quantity": float(self.quantity),
            "leverage": float(self.leverage),
            "unrealized_pnl_pct": float(self.unrealized_pnl_pct),
            "realized_pnl_pct": float(self.realized_pnl_pct),
            "stop_price": float(self.stop_price),
            "target_price": float(self.target_price),
            "trailing_stop": bool(self.trailing_stop),
            "opened_at": self.opened_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class ExchangePosition:
    symbol: str
    quantity: float
    entry_price: float
    mark_price: float
    leverage: float
    unrealized_profit: float
    notional: float

    @property
    def direction(self) -> Direction:
        return Direction.LONG if self.quantity > 0 else Direction.SHORT

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OrderSpec:
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: float | None = None
    stop_price: float | None = None
    reduce_only: bool = False
    time_in_force: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OpenOrder:
    """An order resting on the exchange book."""
    order_id: str
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: float | None = None
    reduce_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DailyStats:
    pnl_pct: float
    trades: int
    reset_date: date

    def to_dict(self) -> dict[str, Any]:
        return {"pnl": float(self.pnl_pct), "trades": int(self.trades), "reset_date": self.reset_date.isoformat()}


@dataclass(frozen=True)
class AuditEntry:
    stage: Stage
    timestamp: datetime
    status: AuditStatus
    payload: Any = None
    next_stage: Stage | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "payload": self.payload,
            "next_stage": self.next_stage.value if self.next_stage else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AuditEntry:
        ts = datetime.fromisoformat(str(d["timestamp"]))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        nxt = d.get("next_stage")
        return cls(
            stage=Stage(d["stage"]),
            timestamp=ts,
            status=AuditStatus(d["status"]),
            payload=d.get("payload"),
            next_stage=Stage(nxt) if nxt else None,
            error=d.get("error"),
        )
