"""
Pipeline Database Models

SQLAlchemy 2.0 models для Base → Main → Real → Exchange pipeline.
Одна durable запись на сущность, ключ - natural uniqueness tuple.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Float,
    Boolean,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trade_engine.database.models import Base, JSONType, TimestampMixin, UTCDateTime
from trade_engine.core.enums import (
    ActivityState,
    BasePhase,
    BaseStatus,
    ConfigurationSetStatus,
    ExchangePositionStatus,
    IndicationPhase,
    MainStatus,
    RealStatus,
    SyncStatus,
    TradeSource,
)


class LevelStatsMixin:
    """
    Статистика уровня (одинаковая форма для Base / Main / Real).

    gross_loss хранится отрицательным (сумма убыточных pnl).
    Инвариант: winning + losing == total, win_rate == winning / total.
    """

    total_positions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    winning_positions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    losing_positions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    total_pnl: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    gross_profit: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    gross_loss: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    win_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_profit: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_loss: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    # === EQUITY / DRAWDOWN ===
    equity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    peak_equity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_drawdown: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False, comment="Max drawdown в % pnl"
    )
    drawdown_started_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, comment="Начало текущего drawdown (None = на пике)"
    )
    max_drawdown_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    last_trade_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class BasePseudoPosition(LevelStatsMixin, TimestampMixin, Base):
    """
    Base pseudo position - одна запись на ConfigurationCandidate.

    Connection-agnostic: переживает остановку connection.
    """
    __tablename__ = "base_pseudo_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    candidate_key: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False,
        comment="sha256(symbol, type, parameters, direction)"
    )
    symbol: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    indication_type: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    parameters: Mapped[dict] = mapped_column(JSONType, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=BaseStatus.EVALUATING.value, nullable=False, index=True
    )
    phase: Mapped[int] = mapped_column(Integer, default=BasePhase.INITIAL.value, nullable=False)
    status_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_base_symbol_type_status", "symbol", "indication_type", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<BasePseudoPosition(id={self.id}, {self.symbol}/{self.indication_type}/"
            f"{self.direction}, total={self.total_positions}, status={self.status})>"
        )


class MainPseudoPosition(LevelStatsMixin, TimestampMixin, Base):
    """Main level: Base кандидат, продвинутый на конкретном connection."""
    __tablename__ = "main_pseudo_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    base_id: Mapped[int] = mapped_column(
        ForeignKey("base_pseudo_positions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    # Денормализация для фильтров
    symbol: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    indication_type: Mapped[str] = mapped_column(String(20), index=True, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=MainStatus.ACTIVE.value, nullable=False, index=True
    )
    status_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    promoted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Exchange roll-up (fills текут обратно)
    exchange_realized_pnl: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    exchange_positions_closed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    base: Mapped[BasePseudoPosition] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("connection_id", "base_id", name="uq_main_connection_base"),
    )


class RealPseudoPosition(LevelStatsMixin, TimestampMixin, Base):
    """Real level: единица, допущенная к live execution."""
    __tablename__ = "real_pseudo_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    base_id: Mapped[int] = mapped_column(
        ForeignKey("base_pseudo_positions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    main_id: Mapped[int] = mapped_column(
        ForeignKey("main_pseudo_positions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    indication_type: Mapped[str] = mapped_column(String(20), index=True, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=RealStatus.VALIDATED.value, nullable=False, index=True
    )
    status_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    promoted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    drawdown_time_hours: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    profit_factor: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    needs_review: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="Invariant violation - нужен оператор"
    )

    exchange_realized_pnl: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    exchange_positions_closed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    base: Mapped[BasePseudoPosition] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("connection_id", "base_id", name="uq_real_connection_base"),
    )


class PseudoTrade(Base):
    """
    Закрытая симулированная сделка.

    Источник trailing-window статистики для promotion.
    counted_main/counted_real - была ли сделка засчитана на уровне.
    """
    __tablename__ = "pseudo_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    base_id: Mapped[int] = mapped_column(
        ForeignKey("base_pseudo_positions.id", ondelete="CASCADE"), nullable=False
    )
    connection_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)

    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[float] = mapped_column(Float, nullable=False)
    pnl_pct: Mapped[float] = mapped_column(Float, nullable=False)
    is_win: Mapped[bool] = mapped_column(Boolean, nullable=False)
    close_reason: Mapped[str] = mapped_column(String(30), nullable=False)
    source: Mapped[str] = mapped_column(String(10), default=TradeSource.LIVE.value, nullable=False)

    counted_main: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    counted_real: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    closed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_pseudo_trades_base_closed", "base_id", "closed_at"),
        Index("ix_pseudo_trades_conn_base", "connection_id", "base_id"),
    )


class ActiveExchangePosition(TimestampMixin, Base):
    """
    Live позиция на бирже, принадлежит RealPseudoPosition.

    Закрытые позиции остаются как архив (status CLOSED/CANCELLED/LIQUIDATED).
    """
    __tablename__ = "active_exchange_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    real_id: Mapped[int] = mapped_column(
        ForeignKey("real_pseudo_positions.id", ondelete="CASCADE"), index=True, nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False)

    exchange_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True, comment="Order/position id на бирже"
    )

    # === SIZE ===
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    volume_usd: Mapped[float] = mapped_column(Float, nullable=False)
    leverage: Mapped[int] = mapped_column(Integer, nullable=False)
    position_cost_pct: Mapped[float] = mapped_column(Float, nullable=False)

    # === EXITS ===
    take_profit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    stop_loss: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    trailing_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trail_start_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    trail_stop_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    trailing_activated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trailing_high: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True, comment="Лучшая цена после активации trailing"
    )

    # === EXTREMES ===
    price_high: Mapped[float] = mapped_column(Float, nullable=False)
    price_low: Mapped[float] = mapped_column(Float, nullable=False)
    max_profit_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_loss_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    # === PNL ===
    unrealized_pnl: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    realized_pnl: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # === STATUS ===
    status: Mapped[str] = mapped_column(
        String(20), default=ExchangePositionStatus.OPEN.value, nullable=False, index=True
    )
    sync_status: Mapped[str] = mapped_column(
        String(20), default=SyncStatus.PENDING_UPDATE.value, nullable=False, index=True
    )
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_sync_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    close_reason: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    real: Mapped[RealPseudoPosition] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_exchange_real_status", "real_id", "status"),
        Index("ix_exchange_conn_status", "connection_id", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in [s.value for s in ExchangePositionStatus.open_states()]


class MarketActivityRecord(TimestampMixin, Base):
    """Состояние Market Activity Gate на (connection, symbol)."""
    __tablename__ = "market_activity_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default=ActivityState.MONITORING.value, nullable=False
    )
    last_price_change_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_volatility_pct: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    entered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "symbol", name="uq_activity_connection_symbol"),
    )


class IndicationStateRecord(TimestampMixin, Base):
    """Runtime состояние state machine на (connection, symbol, type)."""
    __tablename__ = "indication_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    indication_type: Mapped[str] = mapped_column(String(20), nullable=False)
    phase: Mapped[str] = mapped_column(
        String(20), default=IndicationPhase.IDLE.value, nullable=False
    )
    direction: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    accumulated_since: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_validated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    signals_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "symbol", "indication_type", name="uq_indication_state"
        ),
    )


class ConfigurationSet(TimestampMixin, Base):
    """
    Configuration set (preset): ranges одной индикации + exit ranges.

    Прогоняется через тот же Base/Main/Real pipeline.
    """
    __tablename__ = "configuration_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    indication_type: Mapped[str] = mapped_column(String(20), nullable=False)
    symbols: Mapped[list] = mapped_column(JSONType, nullable=False)

    # {"range": {"from": 3, "to": 12, "step": 3}, ...}
    indication_ranges: Mapped[dict] = mapped_column(JSONType, nullable=False)
    position_ranges: Mapped[dict] = mapped_column(JSONType, nullable=False)
    trailing: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # === THRESHOLDS ===
    profit_factor_min: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    drawdown_time_max_hours: Mapped[float] = mapped_column(Float, default=12.0, nullable=False)
    min_positions: Mapped[int] = mapped_column(Integer, default=25, nullable=False)
    evaluation_window: Mapped[int] = mapped_column(
        Integer, default=50, nullable=False, comment="Последние N позиций для оценки"
    )
    evaluation_interval_hours: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # === STATUS ===
    status: Mapped[str] = mapped_column(
        String(20), default=ConfigurationSetStatus.IDLE.value, nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    disabled_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    testing_progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    candidates_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_evaluated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_metrics: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("connection_id", "name", name="uq_set_connection_name"),
    )


class ConfigurationSetMember(Base):
    """Кандидат, принадлежащий configuration set."""
    __tablename__ = "configuration_set_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    set_id: Mapped[int] = mapped_column(
        ForeignKey("configuration_sets.id", ondelete="CASCADE"), index=True, nullable=False
    )
    candidate_key: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    parameters: Mapped[dict] = mapped_column(JSONType, nullable=False)

    __table_args__ = (
        UniqueConstraint("set_id", "candidate_key", name="uq_set_member"),
    )


class PipelineEvent(Base):
    """Structured event на каждый state transition (observability)."""
    __tablename__ = "pipeline_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(40), index=True, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), default="INFO", nullable=False)
    connection_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    candidate_key: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    level: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
