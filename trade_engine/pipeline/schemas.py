"""
Query Schemas - Pydantic модели query contract.

Read-only представления для UI / внешних клиентов.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Market Activity
# =============================================================================


class MarketActivityResponse(BaseModel):
    """Состояние gate на (connection, symbol)."""

    model_config = ConfigDict(from_attributes=True)

    connection_id: str
    symbol: str
    state: str
    last_price_change_pct: float = 0.0
    last_volatility_pct: float = 0.0
    entered_at: datetime
    updated_at: datetime


# =============================================================================
# Levels
# =============================================================================


class LevelStatisticsResponse(BaseModel):
    """Статистика записи Base / Main / Real."""

    level: str
    record_id: int
    connection_id: Optional[str] = None
    candidate_key: str
    symbol: str
    indication_type: str
    direction: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    status: str
    status_reason: Optional[str] = None

    total_positions: int = 0
    winning_positions: int = 0
    losing_positions: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_profit: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    drawdown_time_hours: float = 0.0

    needs_review: bool = False
    exchange_positions_closed: int = 0
    exchange_realized_pnl: float = 0.0
    updated_at: datetime


class LevelCounts(BaseModel):
    """Кандидаты по уровням."""

    base: int = 0
    base_active: int = 0
    base_rejected: int = 0
    main: int = 0
    real: int = 0
    exchange_open: int = 0


# =============================================================================
# Configuration Sets
# =============================================================================


class SetMetrics(BaseModel):
    """Метрики последней оценки configuration set."""

    trades: int = 0
    profit_factor: float = 0.0
    profit_factor_last_25: float = 0.0
    profit_factor_last_50: float = 0.0
    win_rate: float = 0.0
    drawdown_time_hours: float = 0.0
    positions_per_24h: int = 0


class SetStatusResponse(BaseModel):
    """Статус configuration set."""

    set_id: int
    connection_id: str
    name: str
    indication_type: str
    symbols: List[str]
    status: str
    is_enabled: bool
    disabled_reason: Optional[str] = None
    testing_progress: int = 0
    candidates_count: int = 0
    counts: LevelCounts = Field(default_factory=LevelCounts)
    metrics: Optional[SetMetrics] = None
    last_evaluated_at: Optional[datetime] = None


# =============================================================================
# Events
# =============================================================================


class EventResponse(BaseModel):
    """Structured pipeline event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    severity: str
    connection_id: Optional[str] = None
    symbol: Optional[str] = None
    candidate_key: Optional[str] = None
    level: Optional[str] = None
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
