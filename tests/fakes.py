"""In-memory collaborators for unit tests (no network, no LLM)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.domain.models import (
    AuditEntry,
    Direction,
    ExchangePosition,
    ExecutionPlan,
    MarketSnapshot,
    OpenOrder,
    OrderSpec,
    Position,
    RiskHints,
    StopKind,
    StopLossSpec,
    Strategy,
    TakeProfitSpec,
    TargetKind,
)
from src.exchange.errors import ExchangeError


def make_strategy(**overrides: Any) -> Strategy:
    base: dict[str, Any] = dict(
        id="strat_test",
        symbol="BTCUSDT",
        direction=Direction.LONG,
        entry_price=100.0,
        leverage=2.0,
        notional=50.0,
        stop_loss=StopLossSpec(StopKind.FIXED, 2.0),
        take_profit=TakeProfitSpec(TargetKind.FIXED, 4.0),
        confidence=80.0,
        risk_score=3.0,
        provenance="oracle",
    )
    base.update(overrides)
    return Strategy(**base)


def make_position(**overrides: Any) -> Position:
    base: dict[str, Any] = dict(
        id="pos_test",
        symbol="BTCUSDT",
        direction=Direction.LONG,
        entry_price=100.0,
        current_price=100.0,
        notional=100.0,
        quantity=1.0,
        leverage=1.0,
        stop_price=98.0,
        target_price=104.0,
        trailing_stop=False,
    )
    base.update(overrides)
    return Position(**base)


def make_snapshot(symbol: str = "BTCUSDT", price: float = 100.0, **overrides: Any) -> MarketSnapshot:
    base: dict[str, Any] = dict(
        symbol=symbol,
        price=price,
        volume_24h=1_000_000.0,
        open_interest=500_000.0,
        funding_rate=0.0001,
        index_price=price,
        mark_price=price,
        price_change_pct_24h=1.0,
    )
    base.update(overrides)
    return MarketSnapshot(**base)


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class FakeExchange:
    def __init__(self, price: float = 100.0):
        self.price = price
        self.orders: list[OrderSpec] = []
        self.closes: list[tuple[str, Direction, float | None]] = []
        self.positions: dict[str, ExchangePosition] = {}
        self.subscriptions: dict[str, Any] = {}
        self.place_errors: list[Exception] = []
        self.close_errors: list[Exception] = []
        self.list_error: Exception | None = None
        self.open_orders: list[OpenOrder] = []
        # When set, LIMIT entries rest on the book until fill() or cancel().
        self.rest_limit_orders = False
        self.margin = 1000.0
        self.closed = False

    async def get_market_snapshot(self, symbol: str) -> MarketSnapshot:
        return make_snapshot(symbol, self.price)

    async def place_order(self, spec: OrderSpec) -> str:
        if self.place_errors:
            raise self.place_errors.pop(0)
        self.orders.append(spec)
        order_id = f"order-{len(self.orders)}"
        if spec.order_type == "LIMIT" and not spec.reduce_only and self.rest_limit_orders:
            self.open_orders.append(OpenOrder(order_id, spec.symbol, spec.side, "LIMIT", spec.quantity, spec.price))
        elif spec.order_type in ("MARKET", "LIMIT") and not spec.reduce_only:
            self._open(spec.symbol, spec.side, spec.quantity)
        return order_id

    def _open(self, symbol: str, side: str, quantity: float) -> None:
        qty = quantity if side == "BUY" else -quantity
        self.positions[symbol] = ExchangePosition(
            symbol=symbol, quantity=qty, entry_price=self.price, mark_price=self.price,
            leverage=1.0, unrealized_profit=0.0, notional=abs(qty) * self.price,
        )

    def fill(self, symbol: str) -> None:
        for o in [o for o in self.open_orders if o.symbol == symbol]:
            self.open_orders.remove(o)
            self._open(o.symbol, o.side, o.quantity)

    def cancel(self, symbol: str) -> None:
        self.open_orders = [o for o in self.open_orders if o.symbol != symbol]

    async def list_open_orders(self, symbol: str) -> list[OpenOrder]:
        return [o for o in self.open_orders if o.symbol == symbol]

    async def close_position(self, symbol: str, direction: Direction, quantity: float | None = None) -> str:
        if self.close_errors:
            raise self.close_errors.pop(0)
        self.closes.append((symbol, direction, quantity))
        self.positions.pop(symbol, None)
        return f"close-{len(self.closes)}"

    async def list_positions(self) -> list[ExchangePosition]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.positions.values())

    async def get_available_margin(self) -> float:
        return self.margin

    def subscribe_price_ticks(self, symbol: str, callback: Any) -> None:
        self.subscriptions[symbol] = callback

    def unsubscribe(self, symbol: str) -> None:
        self.subscriptions.pop(symbol, None)

    def push(self, symbol: str, price: float) -> None:
        self.subscriptions[symbol](price)

    async def aclose(self) -> None:
        self.closed = True


class FakeOracle:
    def __init__(self, candidate: Strategy | None = None):
        self.candidate = candidate or make_strategy()
        self.optimized: Strategy | None = None
        self.optimize_error: Exception | None = None
        self.candidate_error: Exception | None = None
        self.plan = ExecutionPlan(should_execute=True, order_kind="MARKET")
        self.calls: list[str] = []

    def generate_candidate(self, symbol: str, snapshot: MarketSnapshot, context: dict[str, Any]) -> Strategy:
        self.calls.append("candidate")
        if self.candidate_error is not None:
            raise self.candidate_error
        return self.candidate

    def optimize_candidate(self, candidate: Strategy, open_positions: list[Position]) -> tuple[Strategy, RiskHints]:
        self.calls.append("optimize")
        if self.optimize_error is not None:
            raise self.optimize_error
        return (self.optimized or candidate), RiskHints(score=3.0, recommendation="APPROVE")

    def generate_execution_plan(self, strategy: Strategy, fee_context: dict[str, Any]) -> ExecutionPlan:
        self.calls.append("plan")
        return self.plan


class FakeBalance:
    def __init__(self, balance: float = 1000.0):
        self.balance = balance
        self.closed = False

    async def get_available_balance(self) -> float:
        return self.balance

    async def get_gas_price_gwei(self) -> float:
        return 3.0

    async def aclose(self) -> None:
        self.closed = True


class MemoryHistory:
    def __init__(self):
        self.entries: list[AuditEntry] = []
        self.positions: list[dict[str, Any]] = []

    def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def read_all(self) -> list[AuditEntry]:
        return list(self.entries)

    def append_position(self, snapshot: dict[str, Any]) -> None:
        self.positions.append(snapshot)

    def read_positions(self) -> list[dict[str, Any]]:
        return list(self.positions)


def exchange_error(code: int) -> ExchangeError:
    return ExchangeError(code, "test error", status_code=400)
