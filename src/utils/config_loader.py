from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

_TRUTHY = {"1", "true", "yes", "on"}


def _project_root() -> Path:
    # src/utils/config_loader.py -> src/utils -> src -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _env_bool(name: str) -> bool:
    return os.environ[name].strip().lower() in _TRUTHY


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Override selected YAML settings with environment variables.

    Secrets never live in YAML; only operational knobs are overridable here.
    """
    exchange = cfg.setdefault("exchange", {})
    if os.getenv("ASTER_REST_URL"):
        exchange["rest_url"] = os.environ["ASTER_REST_URL"]
    if os.getenv("ASTER_WS_URL"):
        exchange["ws_url"] = os.environ["ASTER_WS_URL"]

    wallet = cfg.setdefault("wallet", {})
    if os.getenv("TRADING_WALLET_ADDRESS"):
        wallet["address"] = os.environ["TRADING_WALLET_ADDRESS"]

    ai = cfg.setdefault("ai", {})
    if os.getenv("AI_MODEL"):
        ai["model"] = os.environ["AI_MODEL"]

    agents = cfg.setdefault("agents", {})
    if os.getenv("AGENT_CYCLE_INTERVAL_SECONDS"):
        agents["cycle_interval_seconds"] = int(os.environ["AGENT_CYCLE_INTERVAL_SECONDS"])
    if os.getenv("AUTO_TRADING_ENABLED"):
        agents["auto_trading_enabled"] = _env_bool("AUTO_TRADING_ENABLED")
    if os.getenv("MANUAL_APPROVAL_REQUIRED"):
        agents["manual_approval_required"] = _env_bool("MANUAL_APPROVAL_REQUIRED")

    trading = cfg.setdefault("trading", {})
    if os.getenv("MAX_LEVERAGE"):
        trading["max_leverage"] = float(os.environ["MAX_LEVERAGE"])
    if os.getenv("MAX_POSITION_SIZE"):
        trading["max_position_size"] = float(os.environ["MAX_POSITION_SIZE"])
    if os.getenv("MAX_DAILY_LOSS_PERCENT"):
        trading["max_daily_loss_pct"] = float(os.environ["MAX_DAILY_LOSS_PERCENT"])
    if os.getenv("MAX_CONCURRENT_POSITIONS"):
        trading["max_concurrent_positions"] = int(os.environ["MAX_CONCURRENT_POSITIONS"])

    storage = cfg.setdefault("storage", {})
    if os.getenv("AGENTS_DB_PATH"):
        storage["db_path"] = os.environ["AGENTS_DB_PATH"]


def validate_config(cfg: dict[str, Any]) -> None:
    """Fail fast if the configuration is missing required sections or has nonsensical limits."""
    required_top = ["exchange", "trading", "ai", "agents"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    exchange = cfg.get("exchange") or {}
    for k in ["rest_url", "ws_url"]:
        if k not in exchange:
            raise ValueError(f"Missing exchange.{k} in config")

    trading = cfg.get("trading") or {}
    for k in ["max_leverage", "max_position_size", "max_daily_loss_pct", "max_concurrent_positions"]:
        if k not in trading:
            raise ValueError(f"Missing trading.{k} in config")
        if float(trading[k]) <= 0:
            raise ValueError(f"trading.{k} must be positive")
    if not trading.get("symbols"):
        raise ValueError("trading.symbols must list at least one symbol")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)
