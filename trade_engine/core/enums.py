"""
Core Enums - единые типы для всего pipeline.

Определяет:
- IndicationType: типы индикаций (state machines)
- Direction: направление позиции
- ActivityState: состояние Market Activity Gate
- IndicationPhase: фазы state machine индикации
- BaseStatus / MainStatus / RealStatus: статусы уровней
- PositionLevel: уровни Base → Main → Real → Exchange
- ExchangePositionStatus / SyncStatus: live позиции на бирже
- TransitionReason: reason codes для promotion/demotion
- EventType: типы structured events
"""

from enum import Enum


class IndicationType(str, Enum):
    """Тип индикации. Каждый тип - отдельная state machine на (connection, symbol)."""

    DIRECTION = "direction"              # разворот после N шагов против движения
    MOVE = "move"                        # продолжение движения
    ACTIVE = "active"                    # % изменения за окно
    ACTIVE_ADVANCED = "active_advanced"  # activity ratio + continuation + volatility
    OPTIMAL = "optimal"                  # direction + drawdown filter
    AUTO = "auto"                        # multi-timeframe alignment

    @classmethod
    def step_based(cls) -> list["IndicationType"]:
        """Типы, использующие consecutive price steps."""
        return [cls.DIRECTION, cls.MOVE, cls.OPTIMAL]


class Direction(str, Enum):
    """Направление позиции."""

    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        """+1 для LONG, -1 для SHORT."""
        return 1 if self == Direction.LONG else -1

    def opposite(self) -> "Direction":
        return Direction.SHORT if self == Direction.LONG else Direction.LONG

    @classmethod
    def from_change(cls, change: float) -> "Direction | None":
        """Направление по знаку изменения цены (None для 0)."""
        if change > 0:
            return cls.LONG
        if change < 0:
            return cls.SHORT
        return None


class ActivityState(str, Enum):
    """
    Market Activity Gate.

    MONITORING - начальное состояние / dead zone между порогами.
    PAUSED - evaluation индикаций пропускается.
    """

    ACTIVE = "active"
    MONITORING = "monitoring"
    PAUSED = "paused"

    def allows_evaluation(self) -> bool:
        return self != ActivityState.PAUSED


class IndicationPhase(str, Enum):
    """
    Фазы state machine индикации.

    Lifecycle: IDLE → ACCUMULATING → VALIDATED → COOLDOWN → IDLE
    """

    IDLE = "idle"
    ACCUMULATING = "accumulating"
    VALIDATED = "validated"
    COOLDOWN = "cooldown"


class PositionLevel(str, Enum):
    """Уровни commitment: от чистой симуляции до live капитала."""

    BASE = "base"
    MAIN = "main"
    REAL = "real"
    EXCHANGE = "exchange"


class BaseStatus(str, Enum):
    """Статус Base pseudo position."""

    EVALUATING = "evaluating"
    ACTIVE = "active"
    REJECTED = "rejected"

    def accepts_positions(self) -> bool:
        """REJECTED кандидаты больше не открывают симулированные позиции."""
        return self != BaseStatus.REJECTED


class BasePhase(int, Enum):
    """Фазы оценки Base: initial (до 10), expanded (до 50), production."""

    INITIAL = 1
    EXPANDED = 2
    PRODUCTION = 3


class MainStatus(str, Enum):
    """Статус Main pseudo position."""

    ACTIVE = "active"
    PAUSED = "paused"


class RealStatus(str, Enum):
    """Статус Real pseudo position (unit для live execution)."""

    VALIDATED = "validated"
    PAUSED = "paused"


class ExchangePositionStatus(str, Enum):
    """Статус позиции на бирже."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    LIQUIDATED = "liquidated"

    @classmethod
    def open_states(cls) -> list["ExchangePositionStatus"]:
        """Состояния, требующие reconciliation."""
        return [cls.OPEN, cls.CLOSING]

    def is_terminal(self) -> bool:
        return self not in self.open_states()


class SyncStatus(str, Enum):
    """Статус синхронизации с биржей."""

    SYNCED = "synced"
    PENDING_UPDATE = "pending_update"
    ERROR = "error"
    OUT_OF_SYNC = "out_of_sync"


class CloseReason(str, Enum):
    """Причина закрытия позиции (simulated или exchange)."""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    MANUAL = "manual"
    DEMOTED = "demoted"
    CONNECTION_STOPPED = "connection_stopped"
    EXCHANGE_CLOSED = "exchange_closed"
    LIQUIDATED = "liquidated"


class TradeSource(str, Enum):
    """Источник тиков для симулированной сделки."""

    LIVE = "live"
    REPLAY = "replay"


class TransitionReason(str, Enum):
    """
    Reason codes для promotion/demotion.

    Каждое решение state machine возвращает (status, reason) для аудита.
    """

    PROMOTED = "promoted"
    RESUMED = "resumed"
    UNCHANGED = "unchanged"
    HOLD_INSUFFICIENT_TRADES = "hold_insufficient_trades"
    HOLD_BELOW_THRESHOLD = "hold_below_threshold"
    DEMOTED_PROFIT_FACTOR = "demoted_profit_factor"
    DEMOTED_DRAWDOWN_TIME = "demoted_drawdown_time"
    CAP_REACHED = "cap_reached"
    BASE_REJECTED = "base_rejected"
    INVARIANT_VIOLATION = "invariant_violation"
    CONNECTION_STOPPED = "connection_stopped"

    def is_demotion(self) -> bool:
        return self in (
            TransitionReason.DEMOTED_PROFIT_FACTOR,
            TransitionReason.DEMOTED_DRAWDOWN_TIME,
            TransitionReason.INVARIANT_VIOLATION,
        )


class ConfigurationSetStatus(str, Enum):
    """Статус configuration set (preset coordination)."""

    IDLE = "idle"
    TESTING = "testing"
    LIVE = "live"
    DISABLED = "disabled"


class EventType(str, Enum):
    """Типы structured events (каждый state transition)."""

    ACTIVITY_CHANGED = "activity_changed"
    SIGNAL_VALIDATED = "signal_validated"
    BASE_STATUS_CHANGED = "base_status_changed"
    PROMOTED = "promoted"
    DEMOTED = "demoted"
    RESUMED = "resumed"
    EXCHANGE_OPENED = "exchange_opened"
    EXCHANGE_CLOSED = "exchange_closed"
    ORDER_REJECTED = "order_rejected"
    SYNC_ERROR = "sync_error"
    SYNC_RECOVERED = "sync_recovered"
    INVARIANT_VIOLATION = "invariant_violation"
    SET_STARTED = "set_started"
    SET_PROGRESS = "set_progress"
    SET_DISABLED = "set_disabled"
    SET_STOPPED = "set_stopped"
    CONNECTION_STARTED = "connection_started"
    CONNECTION_STOPPED = "connection_stopped"

    def is_alert(self) -> bool:
        """Alerts требуют вмешательства оператора."""
        return self in (EventType.SYNC_ERROR, EventType.INVARIANT_VIOLATION)
