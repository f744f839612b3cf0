"""
Position Simulator

Симуляция pseudo позиций по тикам (volume-independent, count-based).
Touch модель: цена коснулась TP/SL = выход по уровню.
Trailing: активируется при profit >= trail_start, выход при откате
от лучшей цены >= trail_stop (по текущей цене).
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from trade_engine.core.enums import CloseReason, Direction, TradeSource
from trade_engine.pipeline.expander import (
    STOPLOSS_RATIO,
    TAKEPROFIT_FACTOR,
    TRAIL_START,
    TRAIL_STOP,
    TRAILING,
    ConfigurationCandidate,
)


@dataclass(frozen=True)
class ExitLevels:
    """Exit параметры позиции в %."""
    take_profit_pct: float
    stop_loss_pct: float
    trailing: bool = False
    trail_start_pct: float = 0.0
    trail_stop_pct: float = 0.0

    @classmethod
    def from_candidate(cls, candidate: ConfigurationCandidate, tp_unit_pct: float) -> "ExitLevels":
        """
        TP % = takeprofit_factor × tp_unit_pct
        SL % = TP % × stoploss_ratio
        """
        tp_pct = float(candidate.param(TAKEPROFIT_FACTOR, 2)) * tp_unit_pct
        sl_pct = tp_pct * float(candidate.param(STOPLOSS_RATIO, 1.0))
        return cls(
            take_profit_pct=tp_pct,
            stop_loss_pct=sl_pct,
            trailing=bool(candidate.param(TRAILING, False)),
            trail_start_pct=float(candidate.param(TRAIL_START, 0.0) or 0.0),
            trail_stop_pct=float(candidate.param(TRAIL_STOP, 0.0) or 0.0),
        )

    def take_profit_price(self, entry: float, direction: Direction) -> float:
        return entry * (1 + direction.sign * self.take_profit_pct / 100.0)

    def stop_loss_price(self, entry: float, direction: Direction) -> float:
        return entry * (1 - direction.sign * self.stop_loss_pct / 100.0)


@dataclass
class SimulatedPosition:
    """Открытая pseudo позиция."""
    candidate: ConfigurationCandidate
    connection_id: Optional[str]
    entry_price: float
    opened_at: datetime
    exits: ExitLevels
    source: TradeSource = TradeSource.LIVE
    best_price: float = 0.0
    trailing_active: bool = False

    def __post_init__(self):
        self.best_price = self.entry_price

    @property
    def direction(self) -> Direction:
        return self.candidate.direction

    def pnl_pct(self, price: float) -> float:
        return (price - self.entry_price) / self.entry_price * 100.0 * self.direction.sign

    def check_exit(self, price: float) -> Optional[tuple[CloseReason, float]]:
        """
        Проверить выход на цене.

        SL проверяется первым (sl_first).

        Returns:
            (reason, exit_price) или None
        """
        sign = self.direction.sign
        sl_price = self.exits.stop_loss_price(self.entry_price, self.direction)
        tp_price = self.exits.take_profit_price(self.entry_price, self.direction)

        if (price - sl_price) * sign <= 0:
            return CloseReason.STOP_LOSS, sl_price

        if self.exits.trailing:
            if (price - self.best_price) * sign > 0:
                self.best_price = price
            if not self.trailing_active and self.pnl_pct(price) >= self.exits.trail_start_pct:
                self.trailing_active = True
            if self.trailing_active:
                retrace = (self.best_price - price) / self.best_price * 100.0 * sign
                if retrace >= self.exits.trail_stop_pct:
                    return CloseReason.TRAILING_STOP, price

        if (price - tp_price) * sign >= 0:
            return CloseReason.TAKE_PROFIT, tp_price
        return None


@dataclass
class ClosedTrade:
    """Закрытая pseudo сделка (идёт в aggregator)."""
    candidate: ConfigurationCandidate
    connection_id: Optional[str]
    entry_price: float
    exit_price: float
    pnl_pct: float
    close_reason: CloseReason
    opened_at: datetime
    closed_at: datetime
    source: TradeSource = TradeSource.LIVE

    @property
    def is_win(self) -> bool:
        return self.pnl_pct > 0


class PositionSimulator:
    """
    Открытые pseudo позиции одного connection (или replay прогона).

    Лимит: max_open_per_candidate одновременных позиций на кандидата.
    """

    def __init__(
        self,
        connection_id: Optional[str],
        tp_unit_pct: float = 0.1,
        max_open_per_candidate: int = 1,
        source: TradeSource = TradeSource.LIVE,
    ):
        self.connection_id = connection_id
        self.tp_unit_pct = tp_unit_pct
        self.max_open_per_candidate = max_open_per_candidate
        self.source = source
        self._positions: Dict[str, List[SimulatedPosition]] = defaultdict(list)

    def open_count(self, candidate_key: Optional[str] = None) -> int:
        if candidate_key is not None:
            return len(self._positions.get(candidate_key, []))
        return sum(len(items) for items in self._positions.values())

    def open(
        self,
        candidate: ConfigurationCandidate,
        price: float,
        at: datetime,
    ) -> Optional[SimulatedPosition]:
        """Открыть позицию если лимит кандидата не исчерпан."""
        if self.open_count(candidate.key) >= self.max_open_per_candidate:
            return None
        position = SimulatedPosition(
            candidate=candidate,
            connection_id=self.connection_id,
            entry_price=price,
            opened_at=at,
            exits=ExitLevels.from_candidate(candidate, self.tp_unit_pct),
            source=self.source,
        )
        self._positions[candidate.key].append(position)
        return position

    def on_price(self, symbol: str, price: float, at: datetime) -> List[ClosedTrade]:
        """Проверить выходы всех открытых позиций symbol."""
        closed: List[ClosedTrade] = []
        for key in list(self._positions):
            positions = self._positions[key]
            if not positions or positions[0].candidate.symbol != symbol:
                continue
            remaining = []
            for position in positions:
                exit_info = position.check_exit(price)
                if exit_info is None:
                    remaining.append(position)
                    continue
                reason, exit_price = exit_info
                closed.append(self._close(position, exit_price, reason, at))
            if remaining:
                self._positions[key] = remaining
            else:
                del self._positions[key]
        return closed

    def discard(self, candidate_keys: Optional[set] = None) -> int:
        """Выбросить открытые позиции без закрытия (кандидат выключен)."""
        removed = 0
        for key in list(self._positions):
            if candidate_keys is None or key in candidate_keys:
                removed += len(self._positions.pop(key))
        return removed

    def _close(
        self,
        position: SimulatedPosition,
        exit_price: float,
        reason: CloseReason,
        at: datetime,
    ) -> ClosedTrade:
        return ClosedTrade(
            candidate=position.candidate,
            connection_id=position.connection_id,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl_pct=position.pnl_pct(exit_price),
            close_reason=reason,
            opened_at=position.opened_at,
            closed_at=at,
            source=position.source,
        )
