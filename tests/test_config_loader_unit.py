import pytest
import yaml

from src.utils.config_loader import default_config_path, load_config, validate_config

OVERRIDE_VARS = [
    "ASTER_REST_URL", "ASTER_WS_URL", "TRADING_WALLET_ADDRESS", "AI_MODEL",
    "AGENT_CYCLE_INTERVAL_SECONDS", "AUTO_TRADING_ENABLED", "MANUAL_APPROVAL_REQUIRED",
    "MAX_LEVERAGE", "MAX_POSITION_SIZE", "MAX_DAILY_LOSS_PERCENT", "MAX_CONCURRENT_POSITIONS",
    "AGENTS_DB_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)


def _minimal():
    return {
        "exchange": {"rest_url": "https://example.test", "ws_url": "wss://example.test"},
        "ai": {},
        "agents": {},
        "trading": {
            "max_leverage": 5, "max_position_size": 100, "max_daily_loss_pct": 3,
            "max_concurrent_positions": 3, "symbols": ["BTCUSDT"],
        },
    }


def _write(tmp_path, cfg):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


def test_shipped_config_is_valid():
    cfg = load_config(default_config_path(), force_reload=True)
    assert cfg["agents"]["manual_approval_required"] is True
    assert cfg["agents"]["auto_trading_enabled"] is False
    assert cfg["trading"]["max_concurrent_positions"] == 3
    assert "BTCUSDT" in cfg["trading"]["symbols"]


def test_env_overrides_apply(tmp_path, monkeypatch):
    monkeypatch.setenv("MAX_LEVERAGE", "3")
    monkeypatch.setenv("AUTO_TRADING_ENABLED", "yes")
    monkeypatch.setenv("MANUAL_APPROVAL_REQUIRED", "false")
    monkeypatch.setenv("AGENT_CYCLE_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("ASTER_REST_URL", "https://override.test")

    cfg = load_config(_write(tmp_path, _minimal()), force_reload=True)
    assert cfg["trading"]["max_leverage"] == 3.0
    assert cfg["agents"]["auto_trading_enabled"] is True
    assert cfg["agents"]["manual_approval_required"] is False
    assert cfg["agents"]["cycle_interval_seconds"] == 60
    assert cfg["exchange"]["rest_url"] == "https://override.test"


def test_returned_config_is_a_copy(tmp_path):
    path = _write(tmp_path, _minimal())
    first = load_config(path, force_reload=True)
    first["trading"]["max_leverage"] = 99
    assert load_config(path)["trading"]["max_leverage"] == 5


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)


def test_validate_rejects_missing_section():
    cfg = _minimal()
    del cfg["exchange"]
    with pytest.raises(ValueError, match="exchange"):
        validate_config(cfg)


def test_validate_rejects_non_positive_limit():
    cfg = _minimal()
    cfg["trading"]["max_daily_loss_pct"] = 0
    with pytest.raises(ValueError, match="max_daily_loss_pct"):
        validate_config(cfg)


def test_validate_rejects_empty_symbols():
    cfg = _minimal()
    cfg["trading"]["symbols"] = []
    with pytest.raises(ValueError, match="symbols"):
        validate_config(cfg)
