from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from src.exchange.aster import AsterGateway
from src.research.oracle import StrategyOracle
from src.risk.engine import RiskEngine, RiskLimits
from src.trader.orchestrator import CycleOrchestrator, OrchestratorDeps
from src.trading.executor import TradeExecutor
from src.utils.config_loader import load_config
from src.utils.history_store import HistoryStore
from src.wallet.bsc import BSC_USD_CONTRACT, BscWalletReader

logger = logging.getLogger(__name__)


def _db_path(config: dict[str, Any]) -> Path:
    raw = str((config.get("storage", {}) or {}).get("db_path") or "agents.db")
    path = Path(raw)
    if not path.is_absolute():
        # Keep the database in the project root regardless of where the process is started from.
        path = Path(__file__).resolve().parents[2] / path
    return path


def build_orchestrator(config: dict[str, Any]) -> CycleOrchestrator:
    """Composition root: every collaborator is constructed here and injected."""
    ex_cfg = config.get("exchange", {}) or {}
    exchange = AsterGateway(
        rest_url=str(ex_cfg["rest_url"]),
        ws_url=str(ex_cfg["ws_url"]),
        api_key=os.getenv("ASTER_API_KEY", ""),
        api_secret=os.getenv("ASTER_API_SECRET", ""),
        recv_window=int(ex_cfg.get("recv_window", 5000)),
        timeout=float(ex_cfg.get("timeout_seconds", 10)),
        reconnect_delay=float(ex_cfg.get("reconnect_delay_seconds", 5)),
    )

    wallet_cfg = config.get("wallet", {}) or {}
    balance = None
    if wallet_cfg.get("address") and wallet_cfg.get("rpc_url"):
        balance = BscWalletReader(
            rpc_url=str(wallet_cfg["rpc_url"]),
            address=str(wallet_cfg["address"]),
            token_contract=str(wallet_cfg.get("usdt_contract") or BSC_USD_CONTRACT),
        )
    else:
        logger.info("No trading wallet configured; candidates keep their proposed size")

    deps = OrchestratorDeps(
        exchange=exchange,
        oracle=StrategyOracle(model=str(config["ai"].get("model") or "gpt-4.1-mini"), config=config),
        risk=RiskEngine(RiskLimits.from_config(config)),
        executor=TradeExecutor(exchange, config),
        history=HistoryStore(_db_path(config)),
        balance=balance,
    )
    return CycleOrchestrator(deps, config)


async def run_forever(orchestrator: CycleOrchestrator, symbol: str | None = None) -> None:
    await orchestrator.start(symbol)
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await orchestrator.close()


async def run_once(orchestrator: CycleOrchestrator, symbol: str | None = None,
                   poll_interval: float = 1.0) -> dict[str, Any]:
    """One cycle, then supervise whatever it opened until the monitors close it."""
    try:
        outcome = await orchestrator.run_one_cycle(symbol)
        open_positions = orchestrator.active_positions()
        if open_positions:
            logger.info(f"Supervising {len(open_positions)} open position(s) until they close")
            await orchestrator.wait_until_flat(poll_interval)
        return outcome
    finally:
        await orchestrator.close()


def main(symbol: str | None = None, once: bool = False) -> None:
    # Configure logging (idempotent; safe if configured elsewhere).
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config()
    orchestrator = build_orchestrator(config)
    symbol = (symbol or os.getenv("AGENT_SYMBOL") or "").strip().upper() or None

    if once:
        outcome = asyncio.run(run_once(orchestrator, symbol))
        logger.info(f"Cycle finished: {json.dumps(outcome, default=str)}")
        return

    try:
        asyncio.run(run_forever(orchestrator, symbol))
    except KeyboardInterrupt:
        logger.info("Stopping trading agents...")


if __name__ == "__main__":
    main()
