"""
Volume Calculator

Размер live позиции для Real → Exchange.

Формулы:
1. position_cost_ratio = (base_pct + (range_index - 1) × step_pct) / 100
2. quantity = balance × position_cost_ratio / (entry_price × leverage)
3. volume_usd = quantity × entry_price

Опционально quantity округляется вниз до qty_step (Decimal, без float артефактов).
"""
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from loguru import logger

from trade_engine.core.exceptions import PipelineError
from trade_engine.pipeline.settings import ExchangeSettings


@dataclass
class VolumeCalculation:
    """Результат расчёта объёма."""
    quantity: float
    volume_usd: float
    position_cost_pct: float
    leverage: int
    balance: float


def calculate_quantity(
    balance: float,
    position_cost_ratio: float,
    entry_price: float,
    leverage: int,
) -> float:
    """quantity = balance × ratio / (entry × leverage)"""
    if entry_price <= 0:
        raise PipelineError(f"Invalid entry price {entry_price}")
    if leverage < 1:
        raise PipelineError(f"Invalid leverage {leverage}")
    return balance * position_cost_ratio / (entry_price * leverage)


def round_to_step(quantity: float, qty_step: Optional[str]) -> float:
    """Округлить вниз до шага биржи."""
    if not qty_step:
        return quantity
    step = Decimal(qty_step)
    return float((Decimal(str(quantity)) / step).to_integral_value(rounding=ROUND_DOWN) * step)


def calculate_volume(
    balance: float,
    entry_price: float,
    settings: ExchangeSettings,
    range_index: Optional[int] = None,
    qty_step: Optional[str] = None,
) -> VolumeCalculation:
    """
    Рассчитать объём позиции по настройкам connection.

    Args:
        balance: Баланс аккаунта (USD)
        entry_price: Цена входа
        settings: ExchangeSettings (leverage, position_cost formula)
        range_index: Переопределить range index формулы
        qty_step: Шаг количества инструмента
    """
    cost_pct = settings.position_cost.cost_pct(range_index)
    quantity = calculate_quantity(balance, cost_pct / 100.0, entry_price, settings.leverage)
    quantity = round_to_step(quantity, qty_step)

    logger.debug(
        f"Volume: balance=${balance:.2f}, cost={cost_pct:.4f}%, "
        f"leverage={settings.leverage}x, qty={quantity:.8f}"
    )

    return VolumeCalculation(
        quantity=quantity,
        volume_usd=quantity * entry_price,
        position_cost_pct=cost_pct,
        leverage=settings.leverage,
        balance=balance,
    )
