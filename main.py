"""Headless entrypoint for the trading agents.

Usage:
    python main.py                   # start the orchestrator and keep running
    python main.py --symbol ETHUSDT  # trade a different symbol
    python main.py --once            # run a single collect/assess/execute cycle and exit
"""

from __future__ import annotations

import argparse
from pathlib import Path

from dotenv import load_dotenv

SECRETS_ENV = Path(__file__).resolve().parent / "config" / "secrets.env"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Aster trading agents")
    parser.add_argument("--symbol", help="Symbol to trade (defaults to agents.default_symbol or AGENT_SYMBOL)")
    parser.add_argument("--once", action="store_true", help="Run one cycle, print its outcome and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    # Secrets stay out of config.yaml; local runs read them from config/secrets.env.
    if SECRETS_ENV.exists():
        load_dotenv(SECRETS_ENV)

    from src.trader.runner import main as runner_main

    runner_main(symbol=args.symbol, once=args.once)


if __name__ == "__main__":
    main()
