from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any

from src.domain.models import Direction, ExecutionPlan, OrderSpec, Position, StopKind, Strategy
from src.exchange.errors import ExchangeError
from src.ports.broker import ExchangePort
from src.risk.engine import compute_stop_price, compute_target_price

logger = logging.getLogger(__name__)


class ExecutionError(RuntimeError):
    """Entry could not be placed. `notes` carries the remediation steps that were tried."""

    def __init__(self, message: str, notes: list[str] | None = None):
        super().__init__(message)
        self.notes = list(notes or [])


@dataclass
class ExecutionResult:
    position: Position
    entry_order_id: str
    protective_order_ids: dict[str, str] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    # False while a LIMIT entry may still be resting on the book.
    entry_filled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "entry_order_id": self.entry_order_id,
            "protective_order_ids": dict(self.protective_order_ids),
            "notes": list(self.notes),
            "entry_filled": self.entry_filled,
        }


def _to_step(value: float, step: float, rounding: str) -> float:
    v = Decimal(str(value))
    s = Decimal(str(step))
    if s <= 0:
        return float(value)
    return float((v / s).to_integral_value(rounding=rounding) * s)


def round_quantity(notional: float, entry_price: float, *, step: float = 0.001,
                   min_quantity: float = 0.001, precision: int = 3) -> float:
    """Base-asset quantity for a USD notional, floored to the lot step."""
    if entry_price <= 0 or notional <= 0:
        return float(min_quantity)
    qty = _to_step(notional / entry_price, step, ROUND_FLOOR)
    qty = max(qty, float(min_quantity))
    quant = Decimal(1).scaleb(-int(precision))
    return float(Decimal(str(qty)).quantize(quant, rounding=ROUND_HALF_UP))


def round_price(price: float, precision: int = 2) -> float:
    quant = Decimal(1).scaleb(-int(precision))
    return float(Decimal(str(price)).quantize(quant, rounding=ROUND_HALF_UP))


class TradeExecutor:
    """Places the entry and protective orders for an admitted strategy."""

    def __init__(self, exchange: ExchangePort, config: dict[str, Any]):
        self.exchange = exchange
        self.config = config
        t = config.get("trading", {}) or {}
        self.quantity_step = float(t.get("quantity_step", 0.001))
        self.min_quantity = float(t.get("min_quantity", 0.001))
        self.quantity_precision = int(t.get("quantity_precision", 3))
        self.price_precision = int(t.get("price_precision", 2))
        self.price_tick = float(t.get("price_tick", 0.01))
        self.min_margin_usd = float(t.get("min_margin_usd", 20))

    # ----- tick rounding for protective orders -----

    def _protective_price(self, price: float, direction: Direction, kind: str) -> float:
        """
        Stops round away from the entry (down for a long, up for a short) and targets
        round further into profit, so neither triggers earlier than computed.
        """
        if kind == "stop":
            rounding = ROUND_FLOOR if direction is Direction.LONG else ROUND_CEILING
        else:
            rounding = ROUND_CEILING if direction is Direction.LONG else ROUND_FLOOR
        return _to_step(price, self.price_tick, rounding)

    # ----- order placement with bounded remediation -----

    async def _place(self, spec: OrderSpec, notes: list[str]) -> tuple[str, OrderSpec]:
        try:
            return await self.exchange.place_order(spec), spec
        except ExchangeError as e:
            if e.code == ExchangeError.INSUFFICIENT_MARGIN:
                margin = await self.exchange.get_available_margin()
                notes.append(f"{spec.order_type} {spec.symbol}: insufficient margin ({e.code}), available ${margin:.2f}")
                if margin < self.min_margin_usd:
                    notes.append(f"available margin below ${self.min_margin_usd:g}, not retrying")
                    raise
                retry = replace(spec, quantity=self.min_quantity)
                notes.append(f"retrying at minimum quantity {self.min_quantity} (was {spec.quantity})")
                logger.warning(f"Insufficient margin for {spec.symbol}; retrying with quantity {self.min_quantity}")
                return await self.exchange.place_order(retry), retry

            if e.code == ExchangeError.BAD_PRECISION:
                quant = Decimal(1).scaleb(-self.quantity_precision)
                retry = replace(
                    spec,
                    quantity=float(Decimal(str(spec.quantity)).quantize(quant, rounding=ROUND_FLOOR)),
                    price=round_price(spec.price, self.price_precision) if spec.price is not None else None,
                    stop_price=round_price(spec.stop_price, self.price_precision) if spec.stop_price is not None else None,
                )
                if retry == spec:
                    notes.append(f"{spec.order_type} {spec.symbol}: precision error ({e.code}) "
                                 f"but nothing to round, not retrying")
                    raise
                notes.append(f"{spec.order_type} {spec.symbol}: precision error ({e.code}), "
                             f"retrying with prices rounded to {self.price_precision} decimals")
                logger.warning(f"Precision error for {spec.symbol}; retrying with rounded prices")
                return await self.exchange.place_order(retry), retry
            raise

    async def has_open_position(self, symbol: str) -> bool:
        positions = await self.exchange.list_positions()
        return any(p.symbol == symbol and p.quantity != 0 for p in positions)

    async def has_pending_entry(self, symbol: str) -> bool:
        orders = await self.exchange.list_open_orders(symbol)
        return any(o.symbol == symbol and not o.reduce_only for o in orders)

    async def execute(self, strategy: Strategy, plan: ExecutionPlan) -> ExecutionResult:
        notes: list[str] = []
        if not plan.should_execute:
            raise ExecutionError("Execution plan declined the trade", notes)

        if await self.has_open_position(strategy.symbol):
            raise ExecutionError(f"Position already open on exchange for {strategy.symbol}", notes)
        if await self.has_pending_entry(strategy.symbol):
            raise ExecutionError(f"Entry order already pending on exchange for {strategy.symbol}", notes)

        direction = strategy.direction
        use_limit = plan.order_kind.upper() == "LIMIT" and plan.limit_price is not None and plan.limit_price > 0
        entry_price = float(plan.limit_price) if use_limit else float(strategy.entry_price)
        quantity = round_quantity(
            strategy.notional, entry_price,
            step=self.quantity_step, min_quantity=self.min_quantity, precision=self.quantity_precision,
        )
        entry_spec = OrderSpec(
            symbol=strategy.symbol,
            side=direction.entry_side,
            order_type="LIMIT" if use_limit else "MARKET",
            quantity=quantity,
            price=_to_step(entry_price, self.price_tick, ROUND_HALF_UP) if use_limit else None,
            time_in_force="GTC" if use_limit else None,
        )

        try:
            entry_id, placed = await self._place(entry_spec, notes)
        except ExchangeError as e:
            raise ExecutionError(f"Entry order failed: {e}", notes) from e
        quantity = placed.quantity
        logger.info(f"Entry {placed.side} {quantity} {strategy.symbol} @ {entry_price} placed (order {entry_id})")

        stop_price = compute_stop_price(entry_price, direction, strategy.stop_loss.percentage)
        target_price = compute_target_price(entry_price, direction, strategy.take_profit.percentage)

        protective: dict[str, str] = {}
        for kind, order_type, price in (
            ("stop", "STOP_MARKET", stop_price),
            ("target", "TAKE_PROFIT_MARKET", target_price),
        ):
            spec = OrderSpec(
                symbol=strategy.symbol,
                side=direction.exit_side,
                order_type=order_type,
                quantity=quantity,
                stop_price=self._protective_price(price, direction, kind),
                reduce_only=True,
            )
            try:
                order_id, _ = await self._place(spec, notes)
                protective[kind] = order_id
            except Exception as e:
                # The monitor still enforces the stop and target locally.
                notes.append(f"{order_type} order failed: {e}")
                logger.warning(f"Failed to place {order_type} for {strategy.symbol}: {e}")

        position = Position(
            id=str(uuid.uuid4()),
            symbol=strategy.symbol,
            direction=direction,
            entry_price=entry_price,
            current_price=entry_price,
            notional=quantity * entry_price,
            quantity=quantity,
            leverage=strategy.leverage,
            stop_price=stop_price,
            target_price=target_price,
            trailing_stop=strategy.stop_loss.kind is StopKind.TRAILING,
        )
        return ExecutionResult(position=position, entry_order_id=entry_id,
                               protective_order_ids=protective, notes=notes,
                               entry_filled=not use_limit)
