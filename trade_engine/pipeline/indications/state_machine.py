"""
Indication State Machine

Одна машина на (connection, symbol, indication_type).

Lifecycle:
    IDLE → ACCUMULATING → VALIDATED → COOLDOWN → IDLE

- IDLE → ACCUMULATING: первый квалифицирующий detection
- ACCUMULATING → IDLE: detection пропал или сменил тренд (без сигнала)
- ACCUMULATING → VALIDATED: прошло min_calculation_time и последняя
  часть накопленных движений >= last_part_ratio × среднее движение
- VALIDATED → COOLDOWN: сразу, на timeout секунд
- COOLDOWN → IDLE: по истечении timeout

Переходы управляются только временем тиков (now), без таймаутов.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from trade_engine.core.enums import Direction, IndicationPhase, IndicationType
from trade_engine.pipeline.indications.detectors import Detection
from trade_engine.pipeline.settings import IndicationSettings

# Минимум накопленных движений для continuation check
MIN_CONTINUATION_SAMPLES = 3
MAX_SAMPLES = 1000


@dataclass
class Signal:
    """Validated сигнал индикации."""
    connection_id: str
    symbol: str
    indication_type: IndicationType
    direction: Direction
    price: float
    at: datetime
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass
class PhaseChange:
    """Переход фазы (для persistence и events)."""
    from_phase: IndicationPhase
    to_phase: IndicationPhase
    at: datetime


@dataclass
class EvaluationResult:
    signal: Optional[Signal] = None
    changes: List[PhaseChange] = field(default_factory=list)


def continuation_ratio(changes: Sequence[float], last_part_fraction: float) -> Optional[float]:
    """
    Среднее движение последней части / среднее движение всего окна.

    Returns:
        None если сэмплов мало или общего движения по тренду нет
    """
    if len(changes) < MIN_CONTINUATION_SAMPLES:
        return None
    overall = sum(changes) / len(changes)
    if overall <= 0:
        return None
    last_n = max(1, math.ceil(len(changes) * last_part_fraction))
    last = sum(changes[-last_n:]) / last_n
    return last / overall


def continuation_confirmed(
    changes: Sequence[float],
    last_part_fraction: float,
    last_part_ratio: float,
) -> bool:
    ratio = continuation_ratio(changes, last_part_fraction)
    return ratio is not None and ratio >= last_part_ratio


class IndicationStateMachine:
    """State machine одного (connection, symbol, type)."""

    def __init__(
        self,
        connection_id: str,
        symbol: str,
        indication_type: IndicationType,
        settings: IndicationSettings,
        phase: IndicationPhase = IndicationPhase.IDLE,
        cooldown_until: Optional[datetime] = None,
        last_validated_at: Optional[datetime] = None,
    ):
        self.connection_id = connection_id
        self.symbol = symbol
        self.indication_type = IndicationType(indication_type)
        self.settings = settings

        # Восстановленное из БД ACCUMULATING не продолжаем: сэмплов нет
        if phase in (IndicationPhase.ACCUMULATING, IndicationPhase.VALIDATED):
            phase = IndicationPhase.IDLE
        self.phase = phase
        self.cooldown_until = cooldown_until if phase == IndicationPhase.COOLDOWN else None
        self.last_validated_at = last_validated_at
        self.accumulated_since: Optional[datetime] = None
        self.trend: Optional[Direction] = None
        self.direction: Optional[Direction] = None
        self.signals_count = 0
        self._last_price: Optional[float] = None
        self._changes: List[float] = []

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.settings.timeout_sec)

    @property
    def min_calculation_time(self) -> timedelta:
        return timedelta(seconds=self.settings.min_calculation_time_sec)

    def evaluate(
        self,
        detection: Optional[Detection],
        price: float,
        now: datetime,
    ) -> EvaluationResult:
        """Один шаг машины."""
        result = EvaluationResult()

        if self.phase == IndicationPhase.COOLDOWN:
            if self.cooldown_until is not None and now < self.cooldown_until:
                return result
            self._set_phase(IndicationPhase.IDLE, now, result)
            self.cooldown_until = None

        if self.phase == IndicationPhase.IDLE:
            if detection is not None:
                self._start_accumulating(detection, price, now, result)
            return result

        # ACCUMULATING
        if detection is None or detection.trend != self.trend:
            self._reset(now, result)
            return result

        if self._last_price:
            change = (price - self._last_price) / self._last_price * 100.0 * self.trend.sign
            self._changes.append(change)
            if len(self._changes) > MAX_SAMPLES:
                self._changes = self._changes[-MAX_SAMPLES:]
        self._last_price = price
        self.direction = detection.direction

        if now - self.accumulated_since < self.min_calculation_time:
            return result

        ratio = continuation_ratio(self._changes, self.settings.last_part_fraction)
        if ratio is None or ratio < self.settings.last_part_ratio:
            return result

        metrics = dict(detection.metrics)
        metrics.setdefault("continuation_ratio", ratio)
        metrics["accumulated_sec"] = (now - self.accumulated_since).total_seconds()
        result.signal = Signal(
            connection_id=self.connection_id,
            symbol=self.symbol,
            indication_type=self.indication_type,
            direction=detection.direction,
            price=price,
            at=now,
            metrics=metrics,
        )
        self._set_phase(IndicationPhase.VALIDATED, now, result)
        self.last_validated_at = now
        self.signals_count += 1

        self._set_phase(IndicationPhase.COOLDOWN, now, result)
        self.cooldown_until = now + self.timeout
        self._clear_accumulation()
        return result

    def _start_accumulating(
        self,
        detection: Detection,
        price: float,
        now: datetime,
        result: EvaluationResult,
    ) -> None:
        self._set_phase(IndicationPhase.ACCUMULATING, now, result)
        self.accumulated_since = now
        self.trend = detection.trend
        self.direction = detection.direction
        self._last_price = price
        self._changes = []

    def _reset(self, now: datetime, result: EvaluationResult) -> None:
        self._set_phase(IndicationPhase.IDLE, now, result)
        self._clear_accumulation()

    def _clear_accumulation(self) -> None:
        self.accumulated_since = None
        self.trend = None
        self._last_price = None
        self._changes = []

    def _set_phase(self, phase: IndicationPhase, now: datetime, result: EvaluationResult) -> None:
        result.changes.append(PhaseChange(self.phase, phase, now))
        self.phase = phase
