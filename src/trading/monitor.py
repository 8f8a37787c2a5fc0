from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from src.domain.models import MonitorState, Position, utc_now
from src.ports.broker import ExchangePort
from src.risk.engine import (
    RiskEngine,
    compute_pnl_percent,
    compute_trailing_stop,
    is_tighter_stop,
    should_trigger_stop,
    should_trigger_target,
)

logger = logging.getLogger(__name__)

ClosedCallback = Callable[["PositionMonitor", dict[str, Any]], None]


class PositionMonitor:
    """
    Supervises one open position until it closes.

    Price ticks arrive through the exchange subscription and are queued; a single task
    drains the queue, so ticks for a symbol are evaluated strictly in order. When no
    tick arrives before the reconciliation deadline the task re-reads the exchange's
    positions instead.
    """

    def __init__(
        self,
        position: Position,
        exchange: ExchangePort,
        risk: RiskEngine,
        *,
        reconcile_interval: float = 5.0,
        trailing_activation_pct: float = 5.0,
        trailing_distance_pct: float = 3.0,
        on_closed: ClosedCallback | None = None,
        entry_order_id: str | None = None,
        entry_filled: bool = True,
    ):
        self.position = position
        self.exchange = exchange
        self.risk = risk
        self.reconcile_interval = float(reconcile_interval)
        self.trailing_activation_pct = float(trailing_activation_pct)
        self.trailing_distance_pct = float(trailing_distance_pct)
        self.on_closed = on_closed
        self.entry_order_id = entry_order_id
        self.entry_filled = entry_filled

        self.state = MonitorState.ACTIVE
        self.close_reason: str | None = None
        self._close_failed = False
        self._close_in_flight = False
        self._queue: asyncio.Queue[float] | None = None
        self._task: asyncio.Task | None = None
        self._subscribed = False

    @property
    def symbol(self) -> str:
        return self.position.symbol

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ----- lifecycle -----

    def start(self) -> None:
        """Subscribe to ticks and spawn the supervising task. Must be called inside a running loop."""
        if self.state is MonitorState.CLOSED:
            logger.debug(f"{self.symbol}: monitor already closed, not starting")
            return
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self.exchange.subscribe_price_ticks(self.symbol, self._enqueue)
        self._subscribed = True
        self._task = asyncio.create_task(self._run(self._queue), name=f"monitor-{self.symbol}")
        logger.info(f"Monitoring {self.symbol} ({self.position.direction.value}) "
                    f"stop={self.position.stop_price:.4f} target={self.position.target_price:.4f}")

    def stop(self) -> None:
        """Stop tracking without closing the position. In-flight close orders are not awaited."""
        self._teardown()
        logger.info(f"{self.symbol}: monitor stopped (state={self.state.value})")

    def _teardown(self) -> None:
        if self._subscribed:
            try:
                self.exchange.unsubscribe(self.symbol)
            except Exception as e:
                logger.warning(f"{self.symbol}: unsubscribe failed: {e}")
            self._subscribed = False
        task = self._task
        self._task = None
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

    def _enqueue(self, price: float) -> None:
        if self._queue is not None and self.state is not MonitorState.CLOSED:
            self._queue.put_nowait(float(price))

    async def _run(self, queue: asyncio.Queue[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.reconcile_interval
        while self.state is not MonitorState.CLOSED:
            timeout = max(0.0, deadline - loop.time())
            try:
                price = await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                await self.reconcile()
                deadline = loop.time() + self.reconcile_interval
                continue
            await self.on_tick(price)

    # ----- tick handling -----

    async def on_tick(self, price: float) -> None:
        if self.state is MonitorState.CLOSED:
            return
        pos = self.position
        pos.current_price = float(price)
        pos.updated_at = utc_now()
        pos.unrealized_pnl_pct = compute_pnl_percent(
            pos.entry_price, pos.current_price, pos.notional, pos.leverage, pos.direction
        )
        if not self.entry_filled:
            # Nothing to stop out until the resting entry fills.
            return

        stop_hit = should_trigger_stop(pos.current_price, pos.stop_price, pos.direction)
        target_hit = should_trigger_target(pos.current_price, pos.target_price, pos.direction)

        if self.state is MonitorState.CLOSING:
            if self._close_failed and (stop_hit or target_hit):
                await self.close(self.close_reason or ("stop" if stop_hit else "target"))
            return

        if stop_hit:
            logger.info(f"{pos.symbol}: stop hit at {pos.current_price} (stop {pos.stop_price})")
            await self.close("stop")
            return
        if target_hit:
            logger.info(f"{pos.symbol}: target hit at {pos.current_price} (target {pos.target_price})")
            await self.close("target")
            return

        if pos.trailing_stop and pos.unrealized_pnl_pct > self.trailing_activation_pct:
            candidate = compute_trailing_stop(pos.current_price, pos.direction, self.trailing_distance_pct)
            if is_tighter_stop(candidate, pos.stop_price, pos.direction):
                logger.info(f"{pos.symbol}: trailing stop {pos.stop_price:.4f} -> {candidate:.4f}")
                pos.stop_price = candidate

    # ----- closing -----

    async def close(self, reason: str = "manual") -> bool:
        """
        Submit a reduce-only close for the full quantity.
        Returns True once the position is CLOSED by this call; False when nothing was done
        or the submission failed (the monitor then stays CLOSING for a later retry).
        """
        if self.state is MonitorState.CLOSED or self._close_in_flight:
            return False
        pos = self.position
        self.state = MonitorState.CLOSING
        self.close_reason = reason
        self._close_in_flight = True
        try:
            order_id = await self.exchange.close_position(pos.symbol, pos.direction, pos.quantity)
        except asyncio.CancelledError:
            self._close_failed = True
            raise
        except Exception as e:
            self._close_failed = True
            logger.error(f"{pos.symbol}: close ({reason}) failed, will retry: {e}")
            return False
        finally:
            self._close_in_flight = False

        self._close_failed = False
        self._finish(reason=reason, order_id=order_id, external=False)
        return True

    async def reconcile(self) -> None:
        """Compare local state with the exchange; the exchange wins."""
        if self.state is MonitorState.CLOSED:
            return
        try:
            positions = await self.exchange.list_positions()
        except Exception as e:
            logger.warning(f"{self.symbol}: reconciliation read failed: {e}")
            return

        match = next((p for p in positions if p.symbol == self.symbol and p.quantity != 0), None)
        if match is None and not self.entry_filled:
            await self._reconcile_pending_entry()
            return
        if match is None:
            logger.warning(f"{self.symbol}: position no longer on exchange, marking closed")
            self._finish(reason=self.close_reason or "external", order_id=None, external=True)
            return

        if not self.entry_filled:
            self.entry_filled = True
            logger.info(f"{self.symbol}: entry order {self.entry_order_id} filled")

        if self.state is MonitorState.CLOSING and self._close_failed:
            await self.close(self.close_reason or "retry")

    async def _reconcile_pending_entry(self) -> None:
        """
        The position is not on the exchange yet. Keep waiting while the entry order
        rests on the book; once it is gone, either it filled between the two reads or
        it was cancelled without a fill.
        """
        try:
            orders = await self.exchange.list_open_orders(self.symbol)
        except Exception as e:
            logger.warning(f"{self.symbol}: open-order read failed: {e}")
            return
        for o in orders:
            if o.symbol != self.symbol or o.reduce_only:
                continue
            if self.entry_order_id is None or o.order_id == self.entry_order_id:
                logger.debug(f"{self.symbol}: entry order {o.order_id} still resting")
                return

        try:
            positions = await self.exchange.list_positions()
        except Exception as e:
            logger.warning(f"{self.symbol}: reconciliation read failed: {e}")
            return
        if any(p.symbol == self.symbol and p.quantity != 0 for p in positions):
            self.entry_filled = True
            logger.info(f"{self.symbol}: entry order {self.entry_order_id} filled")
            return

        logger.warning(f"{self.symbol}: entry order {self.entry_order_id} left the book unfilled")
        self._finish(reason="entry_cancelled", order_id=None, external=True, counted=False)

    def _finish(self, *, reason: str, order_id: str | None, external: bool, counted: bool = True) -> None:
        if self.state is MonitorState.CLOSED:
            return
        pos = self.position
        self.state = MonitorState.CLOSED
        self.close_reason = reason
        pos.updated_at = utc_now()
        if counted:
            pos.realized_pnl_pct = pos.unrealized_pnl_pct
            self.risk.update_daily_pnl(pos.realized_pnl_pct)
        else:
            pos.realized_pnl_pct = 0.0
        self._teardown()
        logger.info(f"{pos.symbol}: closed ({reason}) realized {pos.realized_pnl_pct:.2f}%"
                    + (" [external]" if external else ""))

        if self.on_closed is not None:
            outcome = {
                "position": pos.to_dict(),
                "reason": reason,
                "order_id": order_id,
                "external": external,
                "realized_pnl_pct": pos.realized_pnl_pct,
            }
            try:
                self.on_closed(self, outcome)
            except Exception as e:
                logger.error(f"{pos.symbol}: on_closed callback failed: {e}")
