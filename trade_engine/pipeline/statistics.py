"""
Level Statistics

Profit factor, drawdown и drawdown time для Base/Main/Real уровней.

Два режима:
- apply_close: инкрементальное обновление счётчиков уровня (single writer)
- compute_window_stats: trailing window по списку сделок (numpy)

ВАЖНО: сделки должны быть отсортированы по closed_at!
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Tuple

import numpy as np

from trade_engine.pipeline.config import get_config


@dataclass
class WindowStats:
    """Статистика по окну сделок."""
    total: int
    wins: int
    losses: int
    win_rate: float
    total_pnl: float
    gross_profit: float
    gross_loss: float            # отрицательное или 0
    profit_factor: float
    avg_profit: float
    avg_loss: float
    max_drawdown: float          # в единицах pnl (%)
    drawdown_time_hours: float   # самый длинный период ниже HWM

    @property
    def profit_ratio(self) -> float:
        """avg_profit / |avg_loss| (reward/risk)."""
        if self.avg_loss == 0:
            return get_config().profit_factor_cap if self.avg_profit > 0 else 0.0
        return self.avg_profit / abs(self.avg_loss)


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """
    profit_factor = gross_profit / |gross_loss|

    Без убыточных сделок: cap (999) если есть прибыль, иначе 0.
    """
    cap = get_config().profit_factor_cap
    if gross_loss == 0:
        return cap if gross_profit > 0 else 0.0
    return min(gross_profit / abs(gross_loss), cap)


def rank_key(pf: float, drawdown_hours: float, trades: int) -> Tuple[float, float, int]:
    """
    Sort key для ранжирования кандидатов.

    PF desc → drawdown time asc → trades desc.
    """
    return (-pf, drawdown_hours, -trades)


# =============================================================================
# Incremental (на объектах LevelStatsMixin)
# =============================================================================


def apply_close(record, pnl_pct: float, closed_at: datetime) -> None:
    """
    Применить закрытую сделку к счётчикам уровня.

    Вызывать только под lock кандидата (read-modify-write).
    """
    record.total_positions = (record.total_positions or 0) + 1
    if pnl_pct > 0:
        record.winning_positions = (record.winning_positions or 0) + 1
        record.gross_profit = (record.gross_profit or 0.0) + pnl_pct
    else:
        record.losing_positions = (record.losing_positions or 0) + 1
        record.gross_loss = (record.gross_loss or 0.0) + pnl_pct

    record.total_pnl = (record.total_pnl or 0.0) + pnl_pct
    record.win_rate = record.winning_positions / record.total_positions
    record.avg_profit = (
        record.gross_profit / record.winning_positions if record.winning_positions else 0.0
    )
    record.avg_loss = (
        record.gross_loss / record.losing_positions if record.losing_positions else 0.0
    )

    # === EQUITY / HWM ===
    record.equity = (record.equity or 0.0) + pnl_pct
    peak = record.peak_equity or 0.0
    if record.equity >= peak:
        if record.drawdown_started_at is not None:
            duration = (closed_at - record.drawdown_started_at).total_seconds()
            record.max_drawdown_seconds = max(record.max_drawdown_seconds or 0.0, duration)
            record.drawdown_started_at = None
        record.peak_equity = record.equity
    else:
        if record.drawdown_started_at is None:
            record.drawdown_started_at = closed_at
        record.max_drawdown = max(record.max_drawdown or 0.0, peak - record.equity)

    record.last_trade_at = closed_at


def level_drawdown_hours(record, now: datetime) -> float:
    """Drawdown time уровня, текущий незакрытый drawdown считается до now."""
    seconds = record.max_drawdown_seconds or 0.0
    if record.drawdown_started_at is not None:
        seconds = max(seconds, (now - record.drawdown_started_at).total_seconds())
    return max(seconds, 0.0) / 3600.0


def level_profit_factor(record) -> float:
    return profit_factor(record.gross_profit or 0.0, record.gross_loss or 0.0)


def level_profit_ratio(record) -> float:
    """avg_profit / |avg_loss| уровня."""
    avg_profit = record.avg_profit or 0.0
    avg_loss = record.avg_loss or 0.0
    if avg_loss == 0:
        return get_config().profit_factor_cap if avg_profit > 0 else 0.0
    return avg_profit / abs(avg_loss)


def counters_consistent(record) -> bool:
    """winning + losing == total и win_rate == winning / total."""
    total = record.total_positions or 0
    if (record.winning_positions or 0) + (record.losing_positions or 0) != total:
        return False
    expected = record.winning_positions / total if total else 0.0
    return abs((record.win_rate or 0.0) - expected) < 1e-9


# =============================================================================
# Trailing window (numpy)
# =============================================================================


def compute_window_stats(
    pnls: Sequence[float],
    closed_at: Sequence[datetime],
    now: Optional[datetime] = None,
) -> WindowStats:
    """
    Статистика по окну сделок.

    Args:
        pnls: PnL % сделок (отсортированы по closed_at)
        closed_at: Время закрытия каждой сделки
        now: Момент оценки (текущий drawdown считается до него)

    Algorithm:
        1. equity = cumsum(pnl), peak = running max (с 0 в начале)
        2. below = equity < peak
        3. Сегменты below → длительность от закрытия первой сделки
           сегмента до закрытия первой сделки, вернувшей equity на пик
    """
    if len(pnls) != len(closed_at):
        raise ValueError("pnls and closed_at must have equal length")

    if not pnls:
        return WindowStats(
            total=0, wins=0, losses=0, win_rate=0.0, total_pnl=0.0,
            gross_profit=0.0, gross_loss=0.0, profit_factor=0.0,
            avg_profit=0.0, avg_loss=0.0, max_drawdown=0.0, drawdown_time_hours=0.0,
        )

    pnl = np.asarray(pnls, dtype=float)
    wins_mask = pnl > 0
    wins = int(wins_mask.sum())
    losses = int(len(pnl) - wins)
    gross_profit = float(pnl[wins_mask].sum())
    gross_loss = float(pnl[~wins_mask].sum())

    equity = np.cumsum(pnl)
    peak = np.maximum.accumulate(np.concatenate([[0.0], equity]))[1:]
    drawdown = peak - equity
    below = (equity < peak).astype(np.int8)

    edges = np.diff(np.concatenate([[0], below, [0]]))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)

    longest = 0.0
    for start_idx, end_idx in zip(starts, ends):
        start_time = closed_at[start_idx]
        if end_idx < len(pnl):
            end_time = closed_at[end_idx]
        else:
            end_time = now or closed_at[-1]
        longest = max(longest, (end_time - start_time).total_seconds())

    return WindowStats(
        total=len(pnl),
        wins=wins,
        losses=losses,
        win_rate=wins / len(pnl),
        total_pnl=float(equity[-1]),
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=profit_factor(gross_profit, gross_loss),
        avg_profit=gross_profit / wins if wins else 0.0,
        avg_loss=gross_loss / losses if losses else 0.0,
        max_drawdown=float(drawdown.max()),
        drawdown_time_hours=longest / 3600.0,
    )
