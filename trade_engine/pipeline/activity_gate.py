"""
Market Activity Gate

Hysteresis state machine над price change / volatility за окно
calculation_range (5-20 сек), сэмплированное по calculation_frame.

Переходы:
- → ACTIVE, когда activity >= activation_threshold
- → PAUSED, когда activity < deactivation_threshold
- между порогами состояние не меняется (MONITORING - начальная метка)

Пока PAUSED, индикации для symbol не считаются.
Выключенный gate всегда ACTIVE.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trade_engine.core.enums import ActivityState
from trade_engine.database.models import utcnow
from trade_engine.pipeline.models import MarketActivityRecord
from trade_engine.pipeline.settings import MarketActivitySettings

# Минимум кадров для оценки (1 изменение между кадрами)
MIN_FRAMES = 2


@dataclass
class ActivityReading:
    """Результат расчёта activity за окно."""
    price_change_pct: float
    volatility_pct: float
    frames: int

    @property
    def activity_pct(self) -> float:
        """Combined activity: большее из изменения и волатильности."""
        return max(self.price_change_pct, self.volatility_pct)


@dataclass
class ActivityTransition:
    """Смена состояния gate."""
    connection_id: str
    symbol: str
    from_state: ActivityState
    to_state: ActivityState
    activity_pct: float
    at: datetime


def frame_closes(samples: Sequence[Tuple[datetime, float]], frame_sec: float) -> List[float]:
    """Цена закрытия каждого кадра (последний тик в кадре)."""
    if not samples:
        return []
    origin = samples[0][0]
    closes: List[float] = []
    current_frame = None
    for ts, price in samples:
        frame = int((ts - origin).total_seconds() // frame_sec)
        if frame != current_frame:
            closes.append(price)
            current_frame = frame
        else:
            closes[-1] = price
    return closes


def measure_activity(
    samples: Sequence[Tuple[datetime, float]],
    frame_sec: float,
) -> Optional[ActivityReading]:
    """
    Price change % и volatility % по кадрам окна.

    price_change_pct = |close_last - close_first| / close_first × 100
    volatility_pct = std(изменений между кадрами, %)

    Returns:
        None если кадров меньше MIN_FRAMES
    """
    closes = frame_closes(samples, frame_sec)
    if len(closes) < MIN_FRAMES:
        return None

    prices = np.asarray(closes, dtype=float)
    changes = np.diff(prices) / prices[:-1] * 100.0
    return ActivityReading(
        price_change_pct=float(abs(prices[-1] - prices[0]) / prices[0] * 100.0),
        volatility_pct=float(np.std(changes)),
        frames=len(closes),
    )


def next_state(
    current: ActivityState,
    activity_pct: float,
    activation_threshold: float,
    deactivation_threshold: float,
) -> ActivityState:
    """Чистое hysteresis правило."""
    if activity_pct >= activation_threshold:
        return ActivityState.ACTIVE
    if activity_pct < deactivation_threshold:
        return ActivityState.PAUSED
    return current


class MarketActivityGate:
    """Gate одного (connection, symbol)."""

    def __init__(
        self,
        connection_id: str,
        symbol: str,
        settings: MarketActivitySettings,
        state: ActivityState = ActivityState.MONITORING,
        entered_at: Optional[datetime] = None,
    ):
        self.connection_id = connection_id
        self.symbol = symbol
        self.settings = settings
        self.enabled = settings.enabled
        self.state = ActivityState.ACTIVE if not self.enabled else state
        self.entered_at = entered_at or utcnow()
        self.last_price_change_pct = 0.0
        self.last_volatility_pct = 0.0

    @property
    def allows_evaluation(self) -> bool:
        return self.state.allows_evaluation()

    def apply(self, activity_pct: float, now: datetime) -> Optional[ActivityTransition]:
        """Применить activity. Returns: transition или None."""
        if not self.enabled:
            return None

        new_state = next_state(
            self.state,
            activity_pct,
            self.settings.activation_threshold_pct,
            self.settings.deactivation_threshold_pct,
        )
        if new_state == self.state:
            return None
        return self._transition(new_state, activity_pct, now)

    def update(
        self,
        samples: Sequence[Tuple[datetime, float]],
        now: datetime,
    ) -> Optional[ActivityTransition]:
        """Посчитать activity по окну сэмплов и применить."""
        reading = measure_activity(samples, self.settings.calculation_frame_sec)
        if reading is None:
            return None
        self.last_price_change_pct = reading.price_change_pct
        self.last_volatility_pct = reading.volatility_pct
        return self.apply(reading.activity_pct, now)

    def set_enabled(self, enabled: bool, now: datetime) -> Optional[ActivityTransition]:
        """Включить/выключить gate. Выключение форсирует ACTIVE."""
        self.enabled = enabled
        if not enabled and self.state != ActivityState.ACTIVE:
            return self._transition(ActivityState.ACTIVE, self.last_price_change_pct, now)
        return None

    def _transition(
        self,
        new_state: ActivityState,
        activity_pct: float,
        now: datetime,
    ) -> ActivityTransition:
        transition = ActivityTransition(
            connection_id=self.connection_id,
            symbol=self.symbol,
            from_state=self.state,
            to_state=new_state,
            activity_pct=activity_pct,
            at=now,
        )
        logger.debug(
            f"Activity {self.connection_id}/{self.symbol}: "
            f"{self.state.value} → {new_state.value} ({activity_pct:.4f}%)"
        )
        self.state = new_state
        self.entered_at = now
        return transition


# =============================================================================
# Persistence
# =============================================================================


async def save_gate_state(session: AsyncSession, gate: MarketActivityGate) -> MarketActivityRecord:
    """Upsert MarketActivityRecord для gate."""
    result = await session.execute(
        select(MarketActivityRecord).where(
            MarketActivityRecord.connection_id == gate.connection_id,
            MarketActivityRecord.symbol == gate.symbol,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        record = MarketActivityRecord(
            connection_id=gate.connection_id,
            symbol=gate.symbol,
            entered_at=gate.entered_at,
        )
        session.add(record)

    record.state = gate.state.value
    record.last_price_change_pct = gate.last_price_change_pct
    record.last_volatility_pct = gate.last_volatility_pct
    record.entered_at = gate.entered_at
    record.touch(gate.entered_at)
    return record


async def load_gate(
    session: AsyncSession,
    connection_id: str,
    symbol: str,
    settings: MarketActivitySettings,
) -> MarketActivityGate:
    """Восстановить gate из БД (или создать новый)."""
    result = await session.execute(
        select(MarketActivityRecord).where(
            MarketActivityRecord.connection_id == connection_id,
            MarketActivityRecord.symbol == symbol,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        return MarketActivityGate(connection_id, symbol, settings)
    gate = MarketActivityGate(
        connection_id,
        symbol,
        settings,
        state=ActivityState(record.state),
        entered_at=record.entered_at,
    )
    gate.last_price_change_pct = record.last_price_change_pct
    gate.last_volatility_pct = record.last_volatility_pct
    return gate
