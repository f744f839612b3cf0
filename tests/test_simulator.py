"""
Unit tests for Position Simulator
"""

from datetime import timedelta

import pytest

from trade_engine.core.enums import CloseReason, Direction, TradeSource
from trade_engine.pipeline.simulator import ExitLevels, PositionSimulator


def test_exit_levels_from_candidate(make_candidate):
    """TP = factor × unit, SL = TP × ratio"""
    exits = ExitLevels.from_candidate(make_candidate(takeprofit_factor=6, stoploss_ratio=0.5), 0.1)
    assert exits.take_profit_pct == pytest.approx(0.6)
    assert exits.stop_loss_pct == pytest.approx(0.3)
    assert exits.take_profit_price(100.0, Direction.LONG) == pytest.approx(100.6)
    assert exits.stop_loss_price(100.0, Direction.LONG) == pytest.approx(99.7)
    assert exits.take_profit_price(100.0, Direction.SHORT) == pytest.approx(99.4)
    assert exits.stop_loss_price(100.0, Direction.SHORT) == pytest.approx(100.3)


def test_take_profit_exit_at_level(make_candidate, t0):
    simulator = PositionSimulator("conn-1", tp_unit_pct=0.1)
    candidate = make_candidate(takeprofit_factor=2, stoploss_ratio=1.0)
    assert simulator.open(candidate, 100.0, t0) is not None

    assert simulator.on_price("BTCUSDT", 100.1, t0 + timedelta(seconds=1)) == []
    closed = simulator.on_price("BTCUSDT", 100.5, t0 + timedelta(seconds=2))

    assert len(closed) == 1
    trade = closed[0]
    assert trade.close_reason == CloseReason.TAKE_PROFIT
    assert trade.exit_price == pytest.approx(100.2)
    assert trade.pnl_pct == pytest.approx(0.2)
    assert trade.is_win
    assert simulator.open_count() == 0


def test_stop_loss_short(make_candidate, t0):
    simulator = PositionSimulator("conn-1", tp_unit_pct=0.1)
    candidate = make_candidate(direction=Direction.SHORT, takeprofit_factor=2, stoploss_ratio=0.5)
    simulator.open(candidate, 100.0, t0)

    closed = simulator.on_price("BTCUSDT", 100.2, t0 + timedelta(seconds=1))
    assert closed[0].close_reason == CloseReason.STOP_LOSS
    assert closed[0].exit_price == pytest.approx(100.1)
    assert closed[0].pnl_pct == pytest.approx(-0.1)
    assert not closed[0].is_win


def test_trailing_stop_exits_at_current_price(make_candidate, t0):
    """Trailing активируется на trail_start и закрывает по откату"""
    simulator = PositionSimulator("conn-1", tp_unit_pct=0.1)
    candidate = make_candidate(
        takeprofit_factor=10, stoploss_ratio=1.0, trailing=True, trail_start=0.3, trail_stop=0.1
    )
    simulator.open(candidate, 100.0, t0)

    assert simulator.on_price("BTCUSDT", 100.35, t0 + timedelta(seconds=1)) == []
    assert simulator.on_price("BTCUSDT", 100.5, t0 + timedelta(seconds=2)) == []
    closed = simulator.on_price("BTCUSDT", 100.38, t0 + timedelta(seconds=3))

    assert closed[0].close_reason == CloseReason.TRAILING_STOP
    assert closed[0].exit_price == 100.38
    assert closed[0].pnl_pct == pytest.approx(0.38)


def test_max_open_per_candidate(make_candidate, t0):
    simulator = PositionSimulator("conn-1", max_open_per_candidate=1)
    candidate = make_candidate()
    assert simulator.open(candidate, 100.0, t0) is not None
    assert simulator.open(candidate, 100.0, t0) is None
    assert simulator.open(make_candidate(range=6), 100.0, t0) is not None
    assert simulator.open_count() == 2
    assert simulator.open_count(candidate.key) == 1


def test_other_symbol_prices_ignored(make_candidate, t0):
    simulator = PositionSimulator("conn-1")
    simulator.open(make_candidate(), 100.0, t0)
    assert simulator.on_price("ETHUSDT", 1.0, t0) == []
    assert simulator.open_count() == 1


def test_discard_and_source(make_candidate, t0):
    simulator = PositionSimulator(None, source=TradeSource.REPLAY)
    first, second = make_candidate(range=3), make_candidate(range=6)
    simulator.open(first, 100.0, t0)
    simulator.open(second, 100.0, t0)

    assert simulator.discard({first.key}) == 1
    closed = simulator.on_price("BTCUSDT", 110.0, t0 + timedelta(seconds=1))
    assert len(closed) == 1
    assert closed[0].source == TradeSource.REPLAY
    assert closed[0].connection_id is None
