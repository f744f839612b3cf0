"""
Indication Detectors

Чистые функции над хронологическим окном цен. Каждый detector отвечает
на вопрос "квалифицирует ли текущее окно паттерн" и возвращает Detection:

- trend: куда двигается цена в паттерне (для continuation check)
- direction: направление позиции (для Direction/Optimal - разворот)
- metrics: числа для fan-out по параметрам кандидатов
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np

from trade_engine.core.enums import Direction, IndicationType
from trade_engine.pipeline.feed import PriceBuffer
from trade_engine.pipeline.settings import (
    ActiveAdvancedSettings,
    ActiveSettings,
    AutoSettings,
    DirectionSettings,
    IndicationSettings,
    MoveSettings,
    OptimalSettings,
)

# Минимум точек для любого detector
MIN_PRICES = 3


@dataclass
class Detection:
    """Квалифицирующий паттерн."""
    trend: Direction
    direction: Direction
    metrics: Dict[str, float] = field(default_factory=dict)


def pct_change(start: float, end: float) -> float:
    return (end - start) / start * 100.0 if start else 0.0


# =============================================================================
# Step-based (Direction / Move / Optimal)
# =============================================================================


def trailing_run(prices: Sequence[float]) -> tuple[int, Optional[Direction]]:
    """
    Длина последней серии строгих шагов в одну сторону.

    Returns:
        (steps, trend) - (0, None) если последний шаг плоский
    """
    if len(prices) < 2:
        return 0, None
    trend = Direction.from_change(prices[-1] - prices[-2])
    if trend is None:
        return 0, None
    steps = 0
    for i in range(len(prices) - 1, 0, -1):
        if Direction.from_change(prices[i] - prices[i - 1]) != trend:
            break
        steps += 1
    return steps, trend


def detect_direction(prices: Sequence[float], min_steps: int) -> Optional[Detection]:
    """
    Разворот: min_steps последовательных шагов в одну сторону → позиция
    в противоположную (после падения - LONG, после роста - SHORT).
    """
    if len(prices) < MIN_PRICES:
        return None
    steps, trend = trailing_run(prices)
    if trend is None or steps < min_steps:
        return None
    move = abs(pct_change(prices[-1 - steps], prices[-1]))
    return Detection(
        trend=trend,
        direction=trend.opposite(),
        metrics={"steps": float(steps), "change_pct": move},
    )


def detect_move(
    prices: Sequence[float],
    min_steps: int,
    min_move_pct: float,
    min_moving_ratio: float,
) -> Optional[Detection]:
    """
    Продолжение: последняя серия шагов без противоположных
    (плоские допускаются), доля движущихся шагов >= min_moving_ratio,
    суммарное движение >= min_move_pct.
    """
    if len(prices) < MIN_PRICES:
        return None

    trend: Optional[Direction] = None
    steps = 0
    moving = 0
    for i in range(len(prices) - 1, 0, -1):
        step_dir = Direction.from_change(prices[i] - prices[i - 1])
        if step_dir is not None:
            if trend is None:
                trend = step_dir
            elif step_dir != trend:
                break
            moving += 1
        steps += 1

    if trend is None or steps < min_steps:
        return None
    if moving / steps < min_moving_ratio:
        return None
    move = abs(pct_change(prices[-1 - steps], prices[-1]))
    if move < min_move_pct:
        return None
    return Detection(
        trend=trend,
        direction=trend,
        metrics={"steps": float(steps), "change_pct": move, "moving_ratio": moving / steps},
    )


def detect_optimal(
    prices: Sequence[float],
    min_steps: int,
    max_drawdown_ratio: float,
) -> Optional[Detection]:
    """
    Direction + фильтр: глубина серии относительно диапазона окна
    (drawdown_ratio) не больше max_drawdown_ratio.
    """
    detection = detect_direction(prices, min_steps)
    if detection is None:
        return None
    window_range = max(prices) - min(prices)
    steps = int(detection.metrics["steps"])
    run_depth = abs(prices[-1] - prices[-1 - steps])
    ratio = run_depth / window_range if window_range > 0 else 1.0
    if ratio > max_drawdown_ratio:
        return None
    detection.metrics["drawdown_ratio"] = ratio
    return detection


# =============================================================================
# Window-based (Active / Active-Advanced / Auto)
# =============================================================================


def detect_active(prices: Sequence[float], threshold_pct: float) -> Optional[Detection]:
    """|% изменения за окно| >= threshold_pct."""
    if len(prices) < 2:
        return None
    change = pct_change(prices[0], prices[-1])
    trend = Direction.from_change(change)
    if trend is None or abs(change) < threshold_pct:
        return None
    return Detection(trend=trend, direction=trend, metrics={"change_pct": abs(change)})


def detect_active_advanced(
    prices: Sequence[float],
    activity_ratio_pct: float,
    last_part_fraction: float,
    min_continuation: float,
    min_volatility_pct: float,
    max_drawdown_pct: float,
) -> Optional[Detection]:
    """
    Active с фильтрами:
    - |overall change| >= activity_ratio_pct
    - последняя часть окна двигается в ту же сторону (momentum != 0)
    - доля шагов по тренду >= min_continuation
    - std шагов >= min_volatility_pct
    - откат от экстремума <= max_drawdown_pct
    """
    if len(prices) < MIN_PRICES + 1:
        return None
    arr = np.asarray(prices, dtype=float)
    overall = pct_change(arr[0], arr[-1])
    trend = Direction.from_change(overall)
    if trend is None or abs(overall) < activity_ratio_pct:
        return None

    last_n = max(2, int(np.ceil(len(arr) * last_part_fraction)))
    momentum = pct_change(arr[-last_n], arr[-1])
    if Direction.from_change(momentum) != trend:
        return None

    steps = np.diff(arr) / arr[:-1] * 100.0
    directional = steps * trend.sign
    continuation = float((directional > 0).sum()) / len(steps)
    if continuation < min_continuation:
        return None

    volatility = float(np.std(steps))
    if volatility < min_volatility_pct:
        return None

    if trend == Direction.LONG:
        extreme = np.maximum.accumulate(arr)
        drawdown = float(((extreme - arr) / extreme * 100.0).max())
    else:
        extreme = np.minimum.accumulate(arr)
        drawdown = float(((arr - extreme) / extreme * 100.0).max())
    if drawdown > max_drawdown_pct:
        return None

    return Detection(
        trend=trend,
        direction=trend,
        metrics={
            "change_pct": abs(overall),
            "continuation_ratio": continuation,
            "volatility_pct": volatility,
            "drawdown_pct": drawdown,
        },
    )


def timeframe_trend(prices: Sequence[float], threshold_pct: float) -> tuple[Optional[Direction], float]:
    """Тренд таймфрейма: направление если |change| >= threshold."""
    if len(prices) < 2:
        return None, 0.0
    change = pct_change(prices[0], prices[-1])
    if abs(change) < threshold_pct:
        return None, change
    return Direction.from_change(change), change


def detect_auto(
    long_prices: Sequence[float],
    medium_prices: Sequence[float],
    short_prices: Sequence[float],
    immediate_prices: Sequence[float],
    trend_threshold_pct: float,
) -> Optional[Detection]:
    """
    Multi-timeframe alignment: long/medium/short тренды совпадают
    и immediate движение в ту же сторону.
    """
    trends = [
        timeframe_trend(prices, trend_threshold_pct)
        for prices in (long_prices, medium_prices, short_prices)
    ]
    directions = {direction for direction, _ in trends}
    if len(directions) != 1 or None in directions:
        return None
    trend = directions.pop()

    if len(immediate_prices) < 2:
        return None
    immediate = pct_change(immediate_prices[0], immediate_prices[-1])
    if Direction.from_change(immediate) != trend:
        return None

    return Detection(
        trend=trend,
        direction=trend,
        metrics={
            "change_pct": min(abs(change) for _, change in trends),
            "long_change_pct": trends[0][1],
            "medium_change_pct": trends[1][1],
            "short_change_pct": trends[2][1],
            "immediate_change_pct": immediate,
        },
    )


# =============================================================================
# Detector objects (settings → buffer windows)
# =============================================================================


class Detector:
    """Detector одного типа, связанный с его settings."""

    indication_type: IndicationType

    def __init__(self, settings: IndicationSettings):
        self.settings = settings

    def detect(self, buffer: PriceBuffer, now: Optional[datetime] = None) -> Optional[Detection]:
        raise NotImplementedError

    def _prices(self, buffer: PriceBuffer, now: Optional[datetime]) -> List[float]:
        return buffer.prices(self.settings.window_sec, now)


class DirectionDetector(Detector):
    indication_type = IndicationType.DIRECTION
    settings: DirectionSettings

    def detect(self, buffer, now=None):
        return detect_direction(self._prices(buffer, now), self.settings.min_steps)


class MoveDetector(Detector):
    indication_type = IndicationType.MOVE
    settings: MoveSettings

    def detect(self, buffer, now=None):
        return detect_move(
            self._prices(buffer, now),
            self.settings.min_steps,
            self.settings.min_move_pct,
            self.settings.min_moving_ratio,
        )


class ActiveDetector(Detector):
    indication_type = IndicationType.ACTIVE
    settings: ActiveSettings

    def detect(self, buffer, now=None):
        return detect_active(self._prices(buffer, now), self.settings.threshold_pct)


class ActiveAdvancedDetector(Detector):
    indication_type = IndicationType.ACTIVE_ADVANCED
    settings: ActiveAdvancedSettings

    def detect(self, buffer, now=None):
        return detect_active_advanced(
            self._prices(buffer, now),
            self.settings.activity_ratio_pct,
            self.settings.last_part_fraction,
            self.settings.min_continuation,
            self.settings.min_volatility_pct,
            self.settings.max_drawdown_pct,
        )


class OptimalDetector(Detector):
    indication_type = IndicationType.OPTIMAL
    settings: OptimalSettings

    def detect(self, buffer, now=None):
        return detect_optimal(
            self._prices(buffer, now),
            self.settings.min_steps,
            self.settings.max_drawdown_ratio,
        )


class AutoDetector(Detector):
    indication_type = IndicationType.AUTO
    settings: AutoSettings

    def detect(self, buffer, now=None):
        s = self.settings
        return detect_auto(
            buffer.prices(s.long_window_sec, now),
            buffer.prices(s.medium_window_sec, now),
            buffer.prices(s.short_window_sec, now),
            buffer.prices(s.window_sec, now),
            s.trend_threshold_pct,
        )


DETECTORS = {
    IndicationType.DIRECTION: DirectionDetector,
    IndicationType.MOVE: MoveDetector,
    IndicationType.ACTIVE: ActiveDetector,
    IndicationType.ACTIVE_ADVANCED: ActiveAdvancedDetector,
    IndicationType.OPTIMAL: OptimalDetector,
    IndicationType.AUTO: AutoDetector,
}


def build_detector(indication_type: IndicationType, settings: IndicationSettings) -> Detector:
    return DETECTORS[IndicationType(indication_type)](settings)
