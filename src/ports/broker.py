from __future__ import annotations

from typing import Any, Callable, Protocol

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
    Strategy,
)

PriceCallback = Callable[[float], None]


class ExchangePort(Protocol):
    async def get_market_snapshot(self, symbol: str) -> MarketSnapshot: ...

    async def place_order(self, spec: OrderSpec) -> str: ...

    async def close_position(self, symbol: str, direction: Direction, quantity: float | None = None) -> str: ...

    async def list_positions(self) -> list[ExchangePosition]: ...

    async def list_open_orders(self, symbol: str) -> list[OpenOrder]: ...

    async def get_available_margin(self) -> float: ...

    def subscribe_price_ticks(self, symbol: str, callback: PriceCallback) -> None: ...

    def unsubscribe(self, symbol: str) -> None: ...

    async def aclose(self) -> None: ...


class BalancePort(Protocol):
    async def get_available_balance(self) -> float: ...

    async def get_gas_price_gwei(self) -> float: ...

    async def aclose(self) -> None: ...


class OraclePort(Protocol):
    def generate_candidate(self, symbol: str, snapshot: MarketSnapshot, context: dict[str, Any]) -> Strategy: ...

    def optimize_candidate(self, candidate: Strategy, open_positions: list[Position]) -> tuple[Strategy, RiskHints]: ...

    def generate_execution_plan(self, strategy: Strategy, fee_context: dict[str, Any]) -> ExecutionPlan: ...


class HistoryPort(Protocol):
    def append(self, entry: AuditEntry) -> None: ...

    def read_all(self) -> list[AuditEntry]: ...

    def append_position(self, snapshot: dict[str, Any]) -> None: ...

    def read_positions(self) -> list[dict[str, Any]]: ...
