"""
Unit tests for configuration
"""

from importlib import reload

import pytest

import config.config as cfg
from trade_engine.pipeline.config import get_config


def test_config_loading():
    """Test that configuration loads correctly"""
    assert cfg.PROMOTION_INTERVAL_HOURS > 0
    assert cfg.SYNC_POLL_INTERVAL_SEC > 0
    assert cfg.EXCHANGE_CALL_TIMEOUT_SEC > 0
    assert all(symbol == symbol.upper() for symbol in cfg.DEFAULT_SYMBOLS)
    assert cfg.validate_config() is True


def test_pipeline_config_defaults():
    config = get_config()

    assert config.retention.trades_per_candidate == 250
    assert config.retention.threshold_pct == 20.0
    assert config.retention.events_days == 30
    assert config.replay.progress_step_pct == 5
    assert config.profit_factor_cap == 999.0
    assert config.schedule.promotion_interval_hours == cfg.PROMOTION_INTERVAL_HOURS
    assert config.exchange.default_balance_usd == cfg.DEFAULT_ACCOUNT_BALANCE_USD


def test_env_parsing(monkeypatch):
    """DEFAULT_SYMBOLS и числовые переменные из окружения"""
    monkeypatch.setenv("DEFAULT_SYMBOLS", " solusdt, ,xrpusdt ")
    monkeypatch.setenv("SYNC_POLL_INTERVAL_SEC", "5")
    monkeypatch.setenv("REDIS_LOCK_ENABLED", "false")
    try:
        reload(cfg)
        assert cfg.DEFAULT_SYMBOLS == ["SOLUSDT", "XRPUSDT"]
        assert cfg.SYNC_POLL_INTERVAL_SEC == 5.0
        assert cfg.REDIS_LOCK_ENABLED is False
    finally:
        monkeypatch.undo()
        reload(cfg)


def test_validate_config_errors(monkeypatch):
    monkeypatch.setattr(cfg, "PROMOTION_INTERVAL_HOURS", 0)
    monkeypatch.setattr(cfg, "DEFAULT_ACCOUNT_BALANCE_USD", -1.0)

    with pytest.raises(ValueError) as exc_info:
        cfg.validate_config()

    message = str(exc_info.value)
    assert "PROMOTION_INTERVAL_HOURS must be positive" in message
    assert "DEFAULT_ACCOUNT_BALANCE_USD must not be negative" in message
