"""
Pipeline Settings

Нормализация snapshot из Settings/Config Store в полностью заполненный,
версионированный value object. Все defaults резолвятся один раз здесь,
pipeline компоненты получают только готовые модели.

Usage:
    >>> settings = normalize_connection_settings({"connection_id": "bybit-main"})
    >>> settings.indications.direction.timeout_sec
    20.0
"""
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from config.config import DEFAULT_SYMBOLS
from trade_engine.core.enums import IndicationType
from trade_engine.core.exceptions import SettingsValidationError
from trade_engine.pipeline.expander import RangeSpec, TrailingSpec

CURRENT_SCHEMA_VERSION = 1


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


# =============================================================================
# Ranges
# =============================================================================


class RangeModel(_Frozen):
    """{from, to, step} как приходит из store."""

    start: float = Field(alias="from")
    end: float = Field(alias="to")
    step: float

    @model_validator(mode="after")
    def _check_terminating(self) -> "RangeModel":
        self.to_spec()
        return self

    def to_spec(self, name: Optional[str] = None) -> RangeSpec:
        def _num(value: float):
            return int(value) if float(value).is_integer() else value

        return RangeSpec(_num(self.start), _num(self.end), _num(self.step), name=name)


def _range(start: float, end: float, step: float) -> RangeModel:
    return RangeModel(start=start, end=end, step=step)


class TrailingModel(_Frozen):
    """Trailing toggle + сетка start/stop (в %)."""

    enabled: bool = True
    starts: List[float] = Field(default_factory=lambda: [0.3])
    stops: List[float] = Field(default_factory=lambda: [0.1])

    def to_spec(self) -> TrailingSpec:
        return TrailingSpec(
            enabled=self.enabled, starts=tuple(self.starts), stops=tuple(self.stops)
        )


# =============================================================================
# Market Activity Gate
# =============================================================================


class MarketActivitySettings(_Frozen):
    """Hysteresis gate. Пороги в %."""

    enabled: bool = True
    calculation_range_sec: float = Field(default=10.0, ge=5.0, le=20.0)
    calculation_frame_sec: float = Field(default=1.0, gt=0.0)
    activation_threshold_pct: float = Field(default=0.2, gt=0.0)
    deactivation_threshold_pct: float = Field(default=0.05, ge=0.0)

    @model_validator(mode="after")
    def _check_band(self) -> "MarketActivitySettings":
        if self.deactivation_threshold_pct >= self.activation_threshold_pct:
            raise ValueError("deactivation_threshold_pct must be below activation_threshold_pct")
        if self.calculation_frame_sec > self.calculation_range_sec:
            raise ValueError("calculation_frame_sec must not exceed calculation_range_sec")
        return self


# =============================================================================
# Indications (одна явная модель на тип)
# =============================================================================


class IndicationSettings(_Frozen):
    """Общие поля state machine индикации."""

    enabled: bool = True
    interval_ms: int = Field(default=1000, ge=50)
    min_calculation_time_sec: float = Field(default=3.0, ge=0.0)
    timeout_sec: float = Field(default=20.0, ge=0.0)
    last_part_fraction: float = Field(default=0.2, gt=0.0, le=1.0)
    last_part_ratio: float = Field(default=1.0, ge=0.0)
    window_sec: float = Field(default=60.0, gt=0.0)
    ranges: Dict[str, RangeModel] = Field(default_factory=dict)

    def range_specs(self) -> Dict[str, RangeSpec]:
        return {name: model.to_spec(name) for name, model in self.ranges.items()}


class DirectionSettings(IndicationSettings):
    """Разворот: min_steps последовательных шагов против движения."""

    min_steps: int = Field(default=3, ge=2)
    ranges: Dict[str, RangeModel] = Field(default_factory=lambda: {"range": _range(3, 12, 3)})


class MoveSettings(IndicationSettings):
    """Продолжение: шаги без противоположных, min_move_pct суммарно."""

    min_steps: int = Field(default=3, ge=2)
    min_move_pct: float = Field(default=0.3, gt=0.0)
    min_moving_ratio: float = Field(default=0.6, gt=0.0, le=1.0)
    ranges: Dict[str, RangeModel] = Field(default_factory=lambda: {"range": _range(3, 12, 3)})


class ActiveSettings(IndicationSettings):
    """% изменения за window_sec."""

    threshold_pct: float = Field(default=0.5, gt=0.0)
    ranges: Dict[str, RangeModel] = Field(
        default_factory=lambda: {"threshold": _range(0.5, 2.5, 0.5)}
    )


class ActiveAdvancedSettings(IndicationSettings):
    """Activity ratio + continuation + volatility + drawdown filter."""

    enabled: bool = False
    activity_ratio_pct: float = Field(default=0.5, gt=0.0)
    min_continuation: float = Field(default=0.6, ge=0.0, le=1.0)
    min_volatility_pct: float = Field(default=0.02, ge=0.0)
    max_drawdown_pct: float = Field(default=5.0, gt=0.0)
    window_sec: float = Field(default=300.0, gt=0.0)
    ranges: Dict[str, RangeModel] = Field(
        default_factory=lambda: {"activity_ratio": _range(0.5, 2.0, 0.5)}
    )


class OptimalSettings(IndicationSettings):
    """Direction + фильтр drawdown ratio."""

    enabled: bool = False
    min_steps: int = Field(default=3, ge=2)
    max_drawdown_ratio: float = Field(default=0.5, gt=0.0)
    ranges: Dict[str, RangeModel] = Field(
        default_factory=lambda: {
            "range": _range(3, 9, 3),
            "drawdown_ratio": _range(0.1, 0.5, 0.2),
        }
    )


class AutoSettings(IndicationSettings):
    """Multi-timeframe alignment (8h / 1h / 30m / immediate)."""

    enabled: bool = False
    interval_ms: int = Field(default=5000, ge=50)
    long_window_sec: float = Field(default=8 * 3600, gt=0.0)
    medium_window_sec: float = Field(default=3600, gt=0.0)
    short_window_sec: float = Field(default=1800, gt=0.0)
    window_sec: float = Field(default=60.0, gt=0.0)
    trend_threshold_pct: float = Field(default=0.3, gt=0.0)
    ranges: Dict[str, RangeModel] = Field(
        default_factory=lambda: {"trend_threshold": _range(0.3, 0.9, 0.3)}
    )


class IndicationSuite(_Frozen):
    direction: DirectionSettings = Field(default_factory=DirectionSettings)
    move: MoveSettings = Field(default_factory=MoveSettings)
    active: ActiveSettings = Field(default_factory=ActiveSettings)
    active_advanced: ActiveAdvancedSettings = Field(default_factory=ActiveAdvancedSettings)
    optimal: OptimalSettings = Field(default_factory=OptimalSettings)
    auto: AutoSettings = Field(default_factory=AutoSettings)

    def for_type(self, indication_type: IndicationType) -> IndicationSettings:
        return getattr(self, IndicationType(indication_type).value)

    def enabled_types(self) -> List[IndicationType]:
        return [t for t in IndicationType if self.for_type(t).enabled]


# =============================================================================
# Positions / levels
# =============================================================================


class PositionSettings(_Frozen):
    """
    Exit-параметры симулированных позиций.

    TP % = takeprofit_factor × tp_unit_pct
    SL % = TP % × stoploss_ratio
    """

    tp_unit_pct: float = Field(default=0.1, gt=0.0)
    takeprofit_factor: RangeModel = Field(default_factory=lambda: _range(2, 10, 4))
    stoploss_ratio: RangeModel = Field(default_factory=lambda: _range(0.5, 1.5, 0.5))
    trailing: TrailingModel = Field(default_factory=TrailingModel)

    def range_specs(self) -> Dict[str, RangeSpec]:
        return {
            "takeprofit_factor": self.takeprofit_factor.to_spec("takeprofit_factor"),
            "stoploss_ratio": self.stoploss_ratio.to_spec("stoploss_ratio"),
        }


class BaseEvaluationSettings(_Frozen):
    """Фазы оценки Base pseudo positions."""

    initial_positions: int = Field(default=10, ge=1)
    initial_min_win_rate: float = Field(default=0.40, ge=0.0, le=1.0)
    expanded_positions: int = Field(default=50, ge=1)
    expanded_min_win_rate: float = Field(default=0.45, ge=0.0, le=1.0)
    expanded_min_profit_ratio: float = Field(default=1.2, ge=0.0)
    production_min_win_rate: float = Field(default=0.38, ge=0.0, le=1.0)
    max_open_per_candidate: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_phases(self) -> "BaseEvaluationSettings":
        if self.expanded_positions <= self.initial_positions:
            raise ValueError("expanded_positions must exceed initial_positions")
        return self


class LevelThresholds(_Frozen):
    """Пороги promotion для одного уровня."""

    min_positions: int = Field(default=10, ge=1)
    profit_factor_min: float = Field(default=1.0, ge=0.0)
    drawdown_time_max_hours: float = Field(default=24.0, gt=0.0)
    evaluation_window: int = Field(default=50, ge=1)


class PromotionSettings(_Frozen):
    main: LevelThresholds = Field(
        default_factory=lambda: LevelThresholds(
            min_positions=10, profit_factor_min=0.5, drawdown_time_max_hours=24.0, evaluation_window=50
        )
    )
    real: LevelThresholds = Field(
        default_factory=lambda: LevelThresholds(
            min_positions=10, profit_factor_min=0.6, drawdown_time_max_hours=12.0, evaluation_window=20
        )
    )
    target_positions: int = Field(default=5, ge=0)
    max_concurrent_indications: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_strictness(self) -> "PromotionSettings":
        if self.real.profit_factor_min < self.main.profit_factor_min:
            raise ValueError("real.profit_factor_min must not be below main.profit_factor_min")
        if self.real.drawdown_time_max_hours > self.main.drawdown_time_max_hours:
            raise ValueError("real.drawdown_time_max_hours must not exceed main")
        return self


class PositionCostFormula(_Frozen):
    """
    position cost % баланса = base_pct + (range_index - 1) × step_pct.

    Mapping range index → ratio настраивается, defaults дают
    Range 1 = 0.1%, Range 10 ≈ 1.5%.
    """

    base_pct: float = Field(default=0.1, gt=0.0)
    step_pct: float = Field(default=0.1556, ge=0.0)
    range_index: int = Field(default=1, ge=1, le=10)

    def cost_pct(self, range_index: Optional[int] = None) -> float:
        index = self.range_index if range_index is None else range_index
        return self.base_pct + (index - 1) * self.step_pct

    def ratio(self, range_index: Optional[int] = None) -> float:
        """Доля баланса (0.001 = 0.1%)."""
        return self.cost_pct(range_index) / 100.0


class ExchangeSettings(_Frozen):
    """Live execution (Real → Exchange)."""

    enabled: bool = True
    leverage: int = Field(default=10, ge=1, le=125)
    position_cost: PositionCostFormula = Field(default_factory=PositionCostFormula)
    mirror_profit_factor_min: float = Field(default=0.6, ge=0.0)
    mirror_window: int = Field(default=30, ge=1)
    order_attempts: int = Field(default=3, ge=1)
    max_sync_attempts: int = Field(default=3, ge=1)
    sync_backoff_base_sec: float = Field(default=2.0, gt=0.0)
    sync_backoff_max_sec: float = Field(default=30.0, gt=0.0)


# =============================================================================
# Connection / root
# =============================================================================


class ConnectionSettings(_Frozen):
    """Полный, нормализованный набор настроек одного exchange connection."""

    connection_id: str
    exchange: str = "paper"
    is_enabled: bool = True
    symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    activity: MarketActivitySettings = Field(default_factory=MarketActivitySettings)
    indications: IndicationSuite = Field(default_factory=IndicationSuite)
    positions: PositionSettings = Field(default_factory=PositionSettings)
    base: BaseEvaluationSettings = Field(default_factory=BaseEvaluationSettings)
    promotion: PromotionSettings = Field(default_factory=PromotionSettings)
    execution: ExchangeSettings = Field(default_factory=ExchangeSettings)

    @field_validator("symbols")
    @classmethod
    def _upper_symbols(cls, value: List[str]) -> List[str]:
        symbols = [s.strip().upper() for s in value if s and s.strip()]
        if not symbols:
            raise ValueError("at least one symbol is required")
        return list(dict.fromkeys(symbols))


class PipelineSettings(_Frozen):
    """Корневой snapshot: версия схемы + connections."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    connections: Dict[str, ConnectionSettings] = Field(default_factory=dict)

    @field_validator("schema_version")
    @classmethod
    def _known_version(cls, value: int) -> int:
        if value > CURRENT_SCHEMA_VERSION or value < 1:
            raise ValueError(f"unsupported schema_version {value}")
        return value


def normalize_settings(raw: Mapping[str, Any]) -> PipelineSettings:
    """
    Единственная точка нормализации snapshot.

    Connections могут прийти списком или словарём id → settings.

    Raises:
        SettingsValidationError: snapshot не валиден
    """
    data = dict(raw)
    connections = data.get("connections") or {}
    if isinstance(connections, list):
        connections = _connections_by_id(connections)
    data["connections"] = {
        conn_id: {**conn, "connection_id": conn_id} for conn_id, conn in connections.items()
    }
    try:
        return PipelineSettings.model_validate(data)
    except ValidationError as e:
        raise SettingsValidationError(_format_errors(e)) from e


def _connections_by_id(items: List[Any]) -> Dict[str, Any]:
    by_id: Dict[str, Any] = {}
    for index, item in enumerate(items):
        if not isinstance(item, Mapping) or not item.get("connection_id"):
            raise SettingsValidationError(f"connections[{index}]: connection_id is required")
        by_id[item["connection_id"]] = item
    return by_id


def normalize_connection_settings(raw: Mapping[str, Any]) -> ConnectionSettings:
    """Нормализовать настройки одного connection."""
    try:
        return ConnectionSettings.model_validate(dict(raw))
    except ValidationError as e:
        raise SettingsValidationError(_format_errors(e)) from e


def _format_errors(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
