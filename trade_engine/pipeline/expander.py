"""
Parameter Expander

Превращает range specs {from, to, step} в cartesian product конкретных
ConfigurationCandidate.

Количество вариаций одного range = floor((to - from) / step) + 1,
итог = произведение по всем ranges (× trailing variants).
Арифметика через Decimal: 0.1 + 0.2 не должно терять последний шаг.
"""
import hashlib
import itertools
import json
import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from trade_engine.core.enums import Direction, IndicationType
from trade_engine.core.exceptions import RangeValidationError

Number = Union[int, float]

# Параметры позиции (exit), общие для всех типов индикаций
TAKEPROFIT_FACTOR = "takeprofit_factor"
STOPLOSS_RATIO = "stoploss_ratio"
TRAILING = "trailing"
TRAIL_START = "trail_start"
TRAIL_STOP = "trail_stop"

# Защита от случайного взрыва комбинаций
MAX_CANDIDATES = 500_000


@dataclass(frozen=True)
class RangeSpec:
    """Range одного tunable параметра."""

    start: Number
    end: Number
    step: Number
    name: Optional[str] = None

    def __post_init__(self):
        for label, value in (("from", self.start), ("to", self.end), ("step", self.step)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise RangeValidationError(f"'{label}' must be a number, got {value!r}", self.name)
            if not math.isfinite(value):
                raise RangeValidationError(f"'{label}' must be finite, got {value!r}", self.name)
        if self.step <= 0:
            raise RangeValidationError(f"step must be > 0, got {self.step}", self.name)
        if self.start > self.end:
            raise RangeValidationError(
                f"from ({self.start}) must not exceed to ({self.end})", self.name
            )

    @property
    def is_integral(self) -> bool:
        return all(isinstance(v, int) for v in (self.start, self.end, self.step))

    @property
    def count(self) -> int:
        """floor((to - from) / step) + 1"""
        span = (_dec(self.end) - _dec(self.start)) / _dec(self.step)
        return int(span.to_integral_value(rounding=ROUND_FLOOR)) + 1

    def values(self) -> List[Number]:
        start, step = _dec(self.start), _dec(self.step)
        result: List[Number] = []
        for i in range(self.count):
            value = start + step * i
            result.append(int(value) if self.is_integral else float(value))
        return result

    @classmethod
    def single(cls, value: Number, name: Optional[str] = None) -> "RangeSpec":
        """Range из одного значения (from == to)."""
        return cls(start=value, end=value, step=1, name=name)


@dataclass(frozen=True)
class TrailingSpec:
    """
    Trailing toggle.

    enabled=False → один вариант (без trailing).
    enabled=True → вариант без trailing + каждая пара (start, stop);
    одна пара даёт ×2.
    """

    enabled: bool = False
    starts: Tuple[float, ...] = (0.3,)
    stops: Tuple[float, ...] = (0.1,)

    def __post_init__(self):
        if self.enabled:
            if not self.starts or not self.stops:
                raise RangeValidationError("trailing starts/stops must not be empty", TRAILING)
            for value in (*self.starts, *self.stops):
                if value <= 0:
                    raise RangeValidationError(f"trailing values must be > 0, got {value}", TRAILING)

    @classmethod
    def from_ranges(cls, starts: RangeSpec, stops: RangeSpec) -> "TrailingSpec":
        return cls(enabled=True, starts=tuple(starts.values()), stops=tuple(stops.values()))

    def pairs(self) -> List[Tuple[float, float]]:
        if not self.enabled:
            return []
        return list(itertools.product(self.starts, self.stops))

    def variants(self) -> List[Dict[str, Any]]:
        result: List[Dict[str, Any]] = [{TRAILING: False, TRAIL_START: 0.0, TRAIL_STOP: 0.0}]
        for start, stop in self.pairs():
            result.append({TRAILING: True, TRAIL_START: start, TRAIL_STOP: stop})
        return result

    @property
    def multiplier(self) -> int:
        return 1 + len(self.pairs())


@dataclass(frozen=True)
class ConfigurationCandidate:
    """
    Один тестируемый вариант стратегии.

    Immutable tuple (symbol, indication_type, parameters, direction).
    parameters - отсортированный tuple пар (name, value).
    """

    symbol: str
    indication_type: IndicationType
    parameters: Tuple[Tuple[str, Any], ...]
    direction: Direction
    key: str = field(init=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "parameters", tuple(sorted(self.parameters)))
        object.__setattr__(self, "key", candidate_key(
            self.symbol, self.indication_type, dict(self.parameters), self.direction
        ))

    def param(self, name: str, default: Any = None) -> Any:
        for key, value in self.parameters:
            if key == name:
                return value
        return default

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.parameters)

    @property
    def indication_parameters(self) -> Dict[str, Any]:
        """Параметры без exit-части (TP/SL/trailing)."""
        exit_names = {TAKEPROFIT_FACTOR, STOPLOSS_RATIO, TRAILING, TRAIL_START, TRAIL_STOP}
        return {k: v for k, v in self.parameters if k not in exit_names}

    @classmethod
    def create(
        cls,
        symbol: str,
        indication_type: IndicationType,
        parameters: Mapping[str, Any],
        direction: Direction,
    ) -> "ConfigurationCandidate":
        return cls(
            symbol=symbol.upper(),
            indication_type=IndicationType(indication_type),
            parameters=tuple(parameters.items()),
            direction=Direction(direction),
        )


def candidate_key(
    symbol: str,
    indication_type: IndicationType,
    parameters: Mapping[str, Any],
    direction: Direction,
) -> str:
    """Stable natural key: sha256 canonical JSON."""
    payload = json.dumps(
        {
            "symbol": symbol.upper(),
            "type": IndicationType(indication_type).value,
            "params": {k: _canonical(v) for k, v in sorted(parameters.items())},
            "direction": Direction(direction).value,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def expand_parameters(ranges: Mapping[str, RangeSpec]) -> List[Dict[str, Number]]:
    """
    Cartesian product всех ranges.

    Returns:
        Ровно prod(range.count) словарей, каждый уникален.
    """
    if not ranges:
        return [{}]
    names = sorted(ranges)
    grids = [ranges[name].values() for name in names]
    return [dict(zip(names, combo)) for combo in itertools.product(*grids)]


def iter_parameters(ranges: Mapping[str, RangeSpec]) -> Iterator[Dict[str, Number]]:
    """Ленивая версия expand_parameters для больших пространств."""
    names = sorted(ranges)
    grids = [ranges[name].values() for name in names]
    for combo in itertools.product(*grids):
        yield dict(zip(names, combo))


def count_variations(
    ranges: Mapping[str, RangeSpec],
    trailing: Optional[TrailingSpec] = None,
    directions: int = 1,
) -> int:
    """Количество вариаций без материализации."""
    total = math.prod(spec.count for spec in ranges.values())
    if trailing is not None:
        total *= trailing.multiplier
    return total * directions


def build_candidates(
    symbol: str,
    indication_type: IndicationType,
    indication_ranges: Mapping[str, RangeSpec],
    position_ranges: Optional[Mapping[str, RangeSpec]] = None,
    trailing: Optional[TrailingSpec] = None,
    directions: Sequence[Direction] = (Direction.LONG, Direction.SHORT),
) -> List[ConfigurationCandidate]:
    """
    Построить все кандидаты для одного (symbol, indication_type).

    Raises:
        RangeValidationError: если пространство больше MAX_CANDIDATES
            или имена параметров пересекаются
    """
    position_ranges = position_ranges or {}
    overlap = set(indication_ranges) & set(position_ranges)
    if overlap:
        raise RangeValidationError(f"duplicate parameter names: {sorted(overlap)}")

    trailing = trailing or TrailingSpec(enabled=False)
    all_ranges = {**indication_ranges, **position_ranges}
    total = count_variations(all_ranges, trailing, len(directions))
    if total > MAX_CANDIDATES:
        raise RangeValidationError(
            f"expansion produces {total} candidates (limit {MAX_CANDIDATES})"
        )

    candidates: List[ConfigurationCandidate] = []
    trailing_variants = trailing.variants()
    for params in iter_parameters(all_ranges):
        for variant in trailing_variants:
            for direction in directions:
                candidates.append(ConfigurationCandidate.create(
                    symbol, indication_type, {**params, **variant}, direction
                ))
    return candidates


def _dec(value: Number) -> Decimal:
    return Decimal(str(value))


def _canonical(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return round(value, 10)
    return value
