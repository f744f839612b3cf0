"""
Unit tests for Volume Calculator
"""

import pytest

from trade_engine.core.exceptions import PipelineError
from trade_engine.pipeline.settings import ExchangeSettings, PositionCostFormula
from trade_engine.pipeline.volume import calculate_quantity, calculate_volume, round_to_step


def test_calculate_quantity():
    """10000 × 0.001 / (100 × 10) = 0.01"""
    assert calculate_quantity(10_000.0, 0.001, 100.0, 10) == pytest.approx(0.01)
    assert calculate_quantity(0.0, 0.001, 100.0, 10) == 0.0


@pytest.mark.parametrize("entry_price,leverage", [(0.0, 10), (-1.0, 10), (100.0, 0)])
def test_calculate_quantity_invalid(entry_price, leverage):
    with pytest.raises(PipelineError):
        calculate_quantity(10_000.0, 0.001, entry_price, leverage)


def test_round_to_step():
    assert round_to_step(0.0129, "0.001") == 0.012
    assert round_to_step(0.3, "0.1") == 0.3
    assert round_to_step(5.7, "1") == 5.0
    assert round_to_step(0.0129, None) == 0.0129


def test_calculate_volume_defaults():
    result = calculate_volume(10_000.0, 100.0, ExchangeSettings())

    assert result.quantity == pytest.approx(0.01)
    assert result.volume_usd == pytest.approx(1.0)
    assert result.position_cost_pct == pytest.approx(0.1)
    assert result.leverage == 10
    assert result.balance == 10_000.0


def test_calculate_volume_range_index():
    settings = ExchangeSettings(leverage=5, position_cost=PositionCostFormula(base_pct=0.1, step_pct=0.1))

    result = calculate_volume(10_000.0, 50.0, settings, range_index=3, qty_step="0.01")

    # 0.3% × 10000 / (50 × 5) = 0.12
    assert result.position_cost_pct == pytest.approx(0.3)
    assert result.quantity == pytest.approx(0.12)
    assert result.volume_usd == pytest.approx(6.0)
