"""
Unit tests for pipeline settings normalization
"""

import pytest
from pydantic import ValidationError

from config.config import DEFAULT_SYMBOLS
from trade_engine.core.enums import IndicationType
from trade_engine.core.exceptions import RangeValidationError, SettingsValidationError
from trade_engine.pipeline.settings import (
    CURRENT_SCHEMA_VERSION,
    ConnectionSettings,
    PositionCostFormula,
    normalize_connection_settings,
    normalize_settings,
)


def test_defaults():
    settings = ConnectionSettings(connection_id="conn-1")

    assert settings.symbols == DEFAULT_SYMBOLS
    assert settings.indications.enabled_types() == [
        IndicationType.DIRECTION,
        IndicationType.MOVE,
        IndicationType.ACTIVE,
    ]
    assert settings.activity.activation_threshold_pct == 0.2
    assert settings.activity.deactivation_threshold_pct == 0.05
    assert settings.promotion.real.profit_factor_min >= settings.promotion.main.profit_factor_min
    assert settings.execution.leverage == 10


def test_range_aliases_and_specs():
    settings = normalize_connection_settings({
        "connection_id": "conn-1",
        "symbols": ["btcusdt", " ethusdt ", "BTCUSDT"],
        "positions": {"takeprofit_factor": {"from": 2, "to": 6, "step": 2}},
    })

    assert settings.symbols == ["BTCUSDT", "ETHUSDT"]
    spec = settings.positions.range_specs()["takeprofit_factor"]
    assert list(spec.values()) == [2, 4, 6]


def test_normalize_settings_accepts_list():
    snapshot = normalize_settings({
        "connections": [
            {"connection_id": "bybit-main", "symbols": ["BTCUSDT"]},
            {"connection_id": "paper", "exchange": "paper"},
        ]
    })

    assert snapshot.schema_version == CURRENT_SCHEMA_VERSION
    assert set(snapshot.connections) == {"bybit-main", "paper"}
    assert snapshot.connections["bybit-main"].connection_id == "bybit-main"


@pytest.mark.parametrize(
    "connections",
    [
        [{"symbols": ["BTCUSDT"]}],
        [{"connection_id": "paper"}, {"connection_id": ""}],
        ["paper"],
    ],
)
def test_list_connection_without_id(connections):
    with pytest.raises(SettingsValidationError) as exc_info:
        normalize_settings({"connections": connections})
    assert "connection_id is required" in str(exc_info.value)


def test_normalize_settings_uses_dict_keys_as_ids():
    snapshot = normalize_settings({"connections": {"conn-7": {"symbols": ["SOLUSDT"]}}})
    assert snapshot.connections["conn-7"].connection_id == "conn-7"


@pytest.mark.parametrize(
    "raw",
    [
        {"connection_id": "c", "symbols": [" "]},
        {"connection_id": "c", "activity": {"activation_threshold_pct": 0.05, "deactivation_threshold_pct": 0.1}},
        {"connection_id": "c", "activity": {"calculation_range_sec": 60}},
        {"connection_id": "c", "positions": {"stoploss_ratio": {"from": 1, "to": 2, "step": 0}}},
        {"connection_id": "c", "base": {"initial_positions": 50, "expanded_positions": 10}},
        {"connection_id": "c", "execution": {"leverage": 0}},
    ],
)
def test_invalid_connection_settings(raw):
    with pytest.raises(SettingsValidationError):
        normalize_connection_settings(raw)


def test_real_thresholds_must_be_stricter():
    """Real не мягче Main"""
    with pytest.raises(SettingsValidationError) as exc_info:
        normalize_connection_settings({
            "connection_id": "c",
            "promotion": {
                "main": {"profit_factor_min": 1.5},
                "real": {"profit_factor_min": 1.0},
            },
        })
    assert "profit_factor_min" in str(exc_info.value)

    with pytest.raises(SettingsValidationError):
        normalize_connection_settings({
            "connection_id": "c",
            "promotion": {
                "main": {"drawdown_time_max_hours": 6},
                "real": {"drawdown_time_max_hours": 12},
            },
        })


def test_unknown_schema_version():
    with pytest.raises(SettingsValidationError):
        normalize_settings({"schema_version": CURRENT_SCHEMA_VERSION + 1})


def test_settings_error_is_range_error():
    assert issubclass(SettingsValidationError, RangeValidationError)


def test_position_cost_formula():
    """Range 1 = 0.1%, Range 10 ≈ 1.5%"""
    formula = PositionCostFormula()
    assert formula.cost_pct() == pytest.approx(0.1)
    assert formula.cost_pct(10) == pytest.approx(1.5004)
    assert formula.ratio(1) == pytest.approx(0.001)


def test_settings_are_frozen():
    settings = ConnectionSettings(connection_id="conn-1")
    with pytest.raises(ValidationError):
        settings.connection_id = "other"
