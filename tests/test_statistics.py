"""
Unit tests for level statistics
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from trade_engine.pipeline.statistics import (
    apply_close,
    compute_window_stats,
    counters_consistent,
    level_drawdown_hours,
    level_profit_factor,
    profit_factor,
    rank_key,
)


def _record():
    return SimpleNamespace(
        total_positions=0, winning_positions=0, losing_positions=0,
        total_pnl=0.0, gross_profit=0.0, gross_loss=0.0, win_rate=0.0,
        avg_profit=0.0, avg_loss=0.0, equity=0.0, peak_equity=0.0,
        max_drawdown=0.0, drawdown_started_at=None, max_drawdown_seconds=0.0,
        last_trade_at=None,
    )


def test_profit_factor():
    assert profit_factor(1.2, -0.6) == pytest.approx(2.0)
    assert profit_factor(1.0, 0.0) == 999.0
    assert profit_factor(0.0, 0.0) == 0.0
    assert profit_factor(0.0, -1.0) == 0.0


def test_window_stats_pf_two(t0):
    """6 × +0.2% и 4 × -0.15% → PF 2.0"""
    pnls = [0.2, -0.15, 0.2, -0.15, 0.2, -0.15, 0.2, -0.15, 0.2, 0.2]
    closed = [t0 + timedelta(minutes=10 * i) for i in range(len(pnls))]
    stats = compute_window_stats(pnls, closed, closed[-1])

    assert stats.total == 10
    assert stats.wins == 6
    assert stats.losses == 4
    assert stats.win_rate == pytest.approx(0.6)
    assert stats.profit_factor == pytest.approx(2.0)
    assert stats.avg_profit == pytest.approx(0.2)
    assert stats.avg_loss == pytest.approx(-0.15)
    assert stats.profit_ratio == pytest.approx(0.2 / 0.15)
    assert stats.max_drawdown == pytest.approx(0.15)
    assert stats.drawdown_time_hours == pytest.approx(10 / 60)


def test_window_stats_empty():
    stats = compute_window_stats([], [])
    assert stats.total == 0
    assert stats.profit_factor == 0.0


def test_window_stats_length_mismatch(t0):
    with pytest.raises(ValueError):
        compute_window_stats([0.1], [t0, t0])


def test_ongoing_drawdown_counts_to_now(t0):
    """Незакрытый drawdown считается до момента оценки"""
    closed = [t0, t0 + timedelta(hours=1), t0 + timedelta(hours=2)]
    stats = compute_window_stats([0.5, -0.2, -0.1], closed, now=t0 + timedelta(hours=14))
    assert stats.drawdown_time_hours == pytest.approx(13.0)
    assert stats.max_drawdown == pytest.approx(0.3)


def test_first_trade_loss_starts_drawdown(t0):
    closed = [t0, t0 + timedelta(hours=3)]
    stats = compute_window_stats([-0.1, 0.2], closed)
    assert stats.drawdown_time_hours == pytest.approx(3.0)


def test_rank_key_ordering():
    """PF desc → drawdown time asc → trades desc"""
    ranked = sorted(
        [
            ("a", rank_key(1.5, 2.0, 30)),
            ("b", rank_key(2.0, 5.0, 10)),
            ("c", rank_key(1.5, 1.0, 10)),
            ("d", rank_key(1.5, 1.0, 40)),
        ],
        key=lambda item: item[1],
    )
    assert [name for name, _ in ranked] == ["b", "d", "c", "a"]


def test_apply_close_incremental(t0):
    record = _record()
    apply_close(record, 0.5, t0)
    apply_close(record, -0.2, t0 + timedelta(hours=1))
    apply_close(record, -0.1, t0 + timedelta(hours=2))

    assert record.total_positions == 3
    assert record.winning_positions == 1
    assert record.losing_positions == 2
    assert record.win_rate == pytest.approx(1 / 3)
    assert record.total_pnl == pytest.approx(0.2)
    assert record.max_drawdown == pytest.approx(0.3)
    assert record.drawdown_started_at == t0 + timedelta(hours=1)
    assert counters_consistent(record)
    assert level_profit_factor(record) == pytest.approx(0.5 / 0.3)
    assert level_drawdown_hours(record, t0 + timedelta(hours=5)) == pytest.approx(4.0)

    # возврат на пик закрывает drawdown
    apply_close(record, 0.4, t0 + timedelta(hours=3))
    assert record.drawdown_started_at is None
    assert record.max_drawdown_seconds == pytest.approx(2 * 3600)
    assert level_drawdown_hours(record, t0 + timedelta(hours=10)) == pytest.approx(2.0)


def test_zero_pnl_is_a_loss(t0):
    record = _record()
    apply_close(record, 0.0, t0)
    assert record.losing_positions == 1
    assert record.winning_positions == 0


def test_counters_consistency_check():
    record = _record()
    record.total_positions = 3
    record.winning_positions = 1
    record.losing_positions = 1
    record.win_rate = 1 / 3
    assert not counters_consistent(record)
