from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from src.domain.models import (
    AuditEntry,
    AuditStatus,
    MonitorState,
    Position,
    Recommendation,
    Stage,
    Strategy,
    utc_now,
)
from src.ports.broker import BalancePort, ExchangePort, HistoryPort, OraclePort
from src.research.oracle import analyse_trend
from src.risk.engine import RiskEngine, build_alternatives
from src.trader.timeout import run_blocking_with_timeout
from src.trading.executor import ExecutionError, ExecutionResult, TradeExecutor
from src.trading.monitor import PositionMonitor

logger = logging.getLogger(__name__)

TAKER_FEE_PCT = 0.05
MAKER_FEE_PCT = 0.02


@dataclass
class OrchestratorDeps:
    exchange: ExchangePort
    oracle: OraclePort
    risk: RiskEngine
    executor: TradeExecutor
    history: HistoryPort | None = None
    balance: BalancePort | None = None


class CycleOrchestrator:
    """
    Drives collect -> assess -> execute once per cycle and owns the position monitors.

    At most one cycle is in flight; a request that arrives while one is running is
    logged and ignored. Every stage appends an audit entry whatever its outcome, and
    no exception escapes a cycle.
    """

    def __init__(self, deps: OrchestratorDeps, config: dict[str, Any], *, clock: Callable[[], datetime] = utc_now):
        self.deps = deps
        self.config = config
        self._clock = clock

        agents = config.get("agents", {}) or {}
        trading = config.get("trading", {}) or {}
        monitoring = config.get("monitoring", {}) or {}
        self.default_symbol = str(agents.get("default_symbol") or (trading.get("symbols") or ["BTCUSDT"])[0])
        self.cycle_interval = float(agents.get("cycle_interval_seconds", 300))
        self.stage_timeout = float(agents.get("stage_timeout_seconds", 90))
        self.auto_trading_enabled = bool(agents.get("auto_trading_enabled", False))
        self.manual_approval_required = bool(agents.get("manual_approval_required", True))
        self.position_size_percent = float(trading.get("position_size_percent", 20))
        self.max_position_size = float(trading.get("max_position_size", 100))
        self.reconcile_interval = float(monitoring.get("reconcile_interval_seconds", 5))
        self.trailing_activation_pct = float(monitoring.get("trailing_activation_pct", 5))
        self.trailing_distance_pct = float(monitoring.get("trailing_distance_pct", 3))

        self.running = False
        self.symbol = self.default_symbol
        self.monitors: dict[str, PositionMonitor] = {}
        self._audit: list[AuditEntry] = []
        self._last_ts: datetime | None = None
        self._cycle_lock = asyncio.Lock()
        self._stage = Stage.COLLECT
        self._timer_task: asyncio.Task | None = None

    # ----- audit -----

    def _next_timestamp(self) -> datetime:
        # Strictly increasing so the timestamp identifies an entry.
        ts = self._clock()
        if self._last_ts is not None and ts <= self._last_ts:
            ts = self._last_ts + timedelta(microseconds=1)
        self._last_ts = ts
        return ts

    def _record(
        self,
        stage: Stage,
        status: AuditStatus,
        payload: Any = None,
        *,
        next_stage: Stage | None = None,
        error: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            stage=stage,
            timestamp=self._next_timestamp(),
            status=status,
            payload=payload,
            next_stage=next_stage,
            error=error,
        )
        self._audit.append(entry)
        if self.deps.history is not None:
            try:
                self.deps.history.append(entry)
            except Exception as e:
                logger.error(f"Failed to persist audit entry ({stage.value}): {e}")
        return entry

    def _persist_position(self, event: str, payload: dict[str, Any]) -> None:
        if self.deps.history is None:
            return
        try:
            self.deps.history.append_position({"event": event, "timestamp": self._clock().isoformat(), **payload})
        except Exception as e:
            logger.error(f"Failed to persist position snapshot ({event}): {e}")

    # ----- lifecycle -----

    async def start(self, symbol: str | None = None) -> bool:
        if self.running:
            logger.info("Orchestrator already running")
            return False
        self.running = True
        self.symbol = symbol or self.symbol or self.default_symbol
        logger.info(f"Orchestrator started for {self.symbol} (auto trading: {self.auto_trading_enabled})")

        for monitor in self.monitors.values():
            monitor.start()

        await self.run_one_cycle(self.symbol)

        if self.running and self.auto_trading_enabled:
            self._timer_task = asyncio.create_task(self._timer_loop(), name="cycle-timer")
        return True

    def stop(self) -> None:
        """Disarm the timer and stop all monitors. Positions stay open on the exchange."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        for monitor in list(self.monitors.values()):
            monitor.stop()
        if self.running:
            logger.info("Orchestrator stopped")
        self.running = False

    async def _timer_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.cycle_interval)
            if not self.running:
                break
            await self.run_one_cycle(self.symbol)

    async def close(self) -> None:
        self.stop()
        for resource in (self.deps.exchange, self.deps.balance):
            if resource is None:
                continue
            try:
                await resource.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {type(resource).__name__}: {e}")
        close_history = getattr(self.deps.history, "close", None)
        if callable(close_history):
            close_history()

    # ----- queries -----

    def active_positions(self) -> list[Position]:
        return [m.position for m in self.monitors.values() if m.state is not MonitorState.CLOSED]

    async def wait_until_flat(self, poll_interval: float = 1.0) -> None:
        """Block until every spawned monitor has reached CLOSED."""
        while self.active_positions():
            await asyncio.sleep(poll_interval)

    def get_history(self) -> list[AuditEntry]:
        """Persisted and in-memory entries merged, one per timestamp, newest first."""
        persisted: list[AuditEntry] = []
        if self.deps.history is not None:
            try:
                persisted = self.deps.history.read_all()
            except Exception as e:
                logger.error(f"Failed to read audit history: {e}")
        merged: dict[datetime, AuditEntry] = {}
        for entry in [*persisted, *self._audit]:
            merged.setdefault(entry.timestamp, entry)
        return sorted(merged.values(), key=lambda e: e.timestamp, reverse=True)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "symbol": self.symbol,
            "active_positions": [p.to_dict() for p in self.active_positions()],
            "daily_stats": self.deps.risk.daily_stats().to_dict(),
            "conversation_count": len(self._audit),
            "config": {
                "auto_trading_enabled": self.auto_trading_enabled,
                "manual_approval_required": self.manual_approval_required,
                "cycle_interval_seconds": self.cycle_interval,
                "max_concurrent_positions": self.deps.risk.limits.max_concurrent_positions,
                "max_leverage": self.deps.risk.limits.max_leverage,
                "max_position_size": self.deps.risk.limits.max_position_size,
                "max_daily_loss_pct": self.deps.risk.limits.max_daily_loss_pct,
                "symbols": list(self.deps.risk.limits.allowed_symbols),
            },
        }

    # ----- cycle -----

    async def run_one_cycle(self, symbol: str | None = None) -> dict[str, Any]:
        symbol = symbol or self.symbol
        if self._cycle_lock.locked():
            logger.info("Cycle already in progress; request ignored")
            return {"status": "busy", "symbol": symbol}

        async with self._cycle_lock:
            self._stage = Stage.COLLECT
            try:
                return await self._cycle(symbol)
            except Exception as e:
                logger.exception(f"Cycle for {symbol} failed in {self._stage.value}")
                self._record(self._stage, AuditStatus.ERROR, {"symbol": symbol}, error=f"{type(e).__name__}: {e}")
                return {"status": "error", "symbol": symbol, "stage": self._stage.value, "error": str(e)}

    async def _call_oracle(self, func: Callable[..., Any], *args: Any) -> Any:
        return await run_blocking_with_timeout(func, self.stage_timeout, *args)

    async def _read_balance(self) -> float | None:
        if self.deps.balance is None:
            return None
        try:
            return float(await self.deps.balance.get_available_balance())
        except Exception as e:
            logger.warning(f"Balance unavailable, keeping proposed size: {e}")
            return None

    async def _gas_price(self) -> float | None:
        if self.deps.balance is None:
            return None
        try:
            return float(await self.deps.balance.get_gas_price_gwei())
        except Exception as e:
            logger.warning(f"Gas price unavailable: {e}")
            return None

    def _size(self, candidate: Strategy, balance: float | None) -> Strategy:
        if balance is None or balance <= 0:
            return candidate
        notional = min(balance * self.position_size_percent / 100, self.max_position_size)
        return replace(candidate, notional=notional)

    async def _cycle(self, symbol: str) -> dict[str, Any]:
        deps = self.deps

        # 1. collect
        self._stage = Stage.COLLECT
        try:
            snapshot = await deps.exchange.get_market_snapshot(symbol)
            trend = analyse_trend(snapshot)
            context = {
                "trend": trend.to_dict(),
                "open_positions": len(self.active_positions()),
                "daily_stats": deps.risk.daily_stats().to_dict(),
            }
            candidate = await self._call_oracle(deps.oracle.generate_candidate, symbol, snapshot, context)
        except Exception as e:
            logger.error(f"Collect stage failed for {symbol}: {e}")
            self._record(Stage.COLLECT, AuditStatus.ERROR, {"symbol": symbol}, error=f"{type(e).__name__}: {e}")
            return {"status": "error", "symbol": symbol, "stage": Stage.COLLECT.value, "error": str(e)}

        self._record(
            Stage.COLLECT, AuditStatus.SUCCESS,
            {"symbol": symbol, "snapshot": snapshot.to_dict(), "trend": trend.to_dict(), "candidate": candidate.to_dict()},
            next_stage=Stage.ASSESS,
        )

        # 2. assess
        self._stage = Stage.ASSESS
        try:
            open_positions = self.active_positions()
            balance = await self._read_balance()
            sized = self._size(candidate, balance)

            pre_reasons = deps.risk.hard_limit_reasons(sized, open_positions)
            if pre_reasons:
                logger.info(f"{symbol}: rejected before optimisation: {'; '.join(pre_reasons)}")
                self._record(Stage.ASSESS, AuditStatus.SUCCESS, {
                    "balance": balance,
                    "strategy": sized.to_dict(),
                    "recommendation": Recommendation.REJECT.value,
                    "reasons": pre_reasons,
                })
                return {"status": "rejected", "symbol": symbol, "reasons": pre_reasons}

            optimized, hints, optimization_error = sized, None, None
            try:
                optimized, hints = await self._call_oracle(deps.oracle.optimize_candidate, sized, open_positions)
            except Exception as e:
                optimization_error = f"{type(e).__name__}: {e}"
                logger.warning(f"{symbol}: optimisation failed, keeping original candidate: {e}")

            assessment = deps.risk.assess_risk(optimized, open_positions)
            payload = {
                "balance": balance,
                "sized": sized.to_dict(),
                "optimized": optimized.to_dict(),
                "hints": hints.to_dict() if hints is not None else None,
                "optimization_error": optimization_error,
                "assessment": assessment.to_dict(),
                "alternatives": build_alternatives(optimized),
            }

            if assessment.recommendation is Recommendation.REJECT:
                logger.info(f"{symbol}: rejected (score {assessment.score:.1f}): {'; '.join(assessment.reasons)}")
                self._record(Stage.ASSESS, AuditStatus.SUCCESS, payload)
                return {"status": "rejected", "symbol": symbol, "reasons": assessment.reasons}

            final = optimized
            if assessment.recommendation is Recommendation.REDUCE_SIZE:
                final = replace(optimized, notional=optimized.notional / 2)
                logger.info(f"{symbol}: size reduced ${optimized.notional:g} -> ${final.notional:g}")
            payload["final"] = final.to_dict()
        except Exception as e:
            logger.error(f"Assess stage failed for {symbol}: {e}")
            self._record(Stage.ASSESS, AuditStatus.ERROR, {"symbol": symbol}, error=f"{type(e).__name__}: {e}")
            return {"status": "error", "symbol": symbol, "stage": Stage.ASSESS.value, "error": str(e)}

        self._record(Stage.ASSESS, AuditStatus.SUCCESS, payload, next_stage=Stage.EXECUTE)

        # 3. execute
        self._stage = Stage.EXECUTE
        if self.manual_approval_required:
            logger.info(f"{symbol}: awaiting manual approval, not trading")
            self._record(Stage.EXECUTE, AuditStatus.SUCCESS, {
                "status": "awaiting_manual_approval",
                "strategy": final.to_dict(),
            })
            return {"status": "awaiting_approval", "symbol": symbol, "strategy": final.to_dict()}

        try:
            fee_context = {
                "current_price": snapshot.price,
                "gas_price_gwei": await self._gas_price(),
                "taker_fee_pct": TAKER_FEE_PCT,
                "maker_fee_pct": MAKER_FEE_PCT,
            }
            plan = await self._call_oracle(deps.oracle.generate_execution_plan, final, fee_context)
            if not plan.should_execute:
                logger.info(f"{symbol}: execution plan declined the trade")
                self._record(Stage.EXECUTE, AuditStatus.SUCCESS, {"status": "not_executed", "plan": plan.to_dict()})
                return {"status": "not_executed", "symbol": symbol}
            result = await deps.executor.execute(final, plan)
        except ExecutionError as e:
            logger.error(f"Execution failed for {symbol}: {e}")
            self._record(Stage.EXECUTE, AuditStatus.ERROR,
                         {"symbol": symbol, "strategy": final.to_dict(), "notes": e.notes}, error=str(e))
            return {"status": "error", "symbol": symbol, "stage": Stage.EXECUTE.value, "error": str(e)}
        except Exception as e:
            logger.error(f"Execution failed for {symbol}: {e}")
            self._record(Stage.EXECUTE, AuditStatus.ERROR,
                         {"symbol": symbol, "strategy": final.to_dict()}, error=f"{type(e).__name__}: {e}")
            return {"status": "error", "symbol": symbol, "stage": Stage.EXECUTE.value, "error": str(e)}

        self._spawn_monitor(result, final)
        self._record(Stage.EXECUTE, AuditStatus.SUCCESS,
                     {"status": "executed", "plan": plan.to_dict(), **result.to_dict()}, next_stage=Stage.MONITOR)
        self._persist_position("opened", {"position": result.position.to_dict(), "strategy_id": final.id})
        return {"status": "executed", "symbol": symbol, "position": result.position.to_dict()}

    # ----- monitors -----

    def _spawn_monitor(self, result: ExecutionResult, strategy: Strategy) -> PositionMonitor:
        position = result.position
        distance = strategy.stop_loss.trailing_distance or self.trailing_distance_pct
        monitor = PositionMonitor(
            position,
            self.deps.exchange,
            self.deps.risk,
            reconcile_interval=self.reconcile_interval,
            trailing_activation_pct=self.trailing_activation_pct,
            trailing_distance_pct=distance,
            on_closed=self._on_monitor_closed,
            entry_order_id=result.entry_order_id,
            entry_filled=result.entry_filled,
        )
        self.monitors[position.symbol] = monitor
        monitor.start()
        return monitor

    def _on_monitor_closed(self, monitor: PositionMonitor, outcome: dict[str, Any]) -> None:
        if self.monitors.get(monitor.symbol) is monitor:
            del self.monitors[monitor.symbol]
        self._record(Stage.MONITOR, AuditStatus.SUCCESS, {"status": "closed", **outcome})
        self._persist_position("closed", outcome)
