"""
Signal fan-out

Один validated сигнал на (symbol, type) раздаётся всем включённым
кандидатам этого symbol/type/direction, чьи параметры удовлетворены
метриками сигнала.
"""
import operator
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Set, Tuple

from trade_engine.core.enums import Direction, IndicationType
from trade_engine.pipeline.expander import ConfigurationCandidate
from trade_engine.pipeline.indications.state_machine import Signal

# Параметр кандидата → (метрика сигнала, сравнение metric OP value)
PARAMETER_METRICS: Dict[str, Tuple[str, Callable[[float, float], bool]]] = {
    "range": ("steps", operator.ge),
    "threshold": ("change_pct", operator.ge),
    "activity_ratio": ("change_pct", operator.ge),
    "trend_threshold": ("change_pct", operator.ge),
    "last_part_ratio": ("continuation_ratio", operator.ge),
    "drawdown_ratio": ("drawdown_ratio", operator.le),
}


def accepts(candidate: ConfigurationCandidate, signal: Signal) -> bool:
    """Принимает ли кандидат сигнал."""
    if candidate.symbol != signal.symbol:
        return False
    if candidate.indication_type != signal.indication_type:
        return False
    if candidate.direction != signal.direction:
        return False

    for name, value in candidate.indication_parameters.items():
        rule = PARAMETER_METRICS.get(name)
        if rule is None:
            continue
        metric_name, compare = rule
        metric = signal.metrics.get(metric_name)
        if metric is None or not compare(metric, value):
            return False
    return True


GroupKey = Tuple[str, IndicationType, Direction]


class CandidateRegistry:
    """
    Включённые кандидаты одного connection.

    Владельцы (settings, configuration sets) регистрируют свои кандидаты;
    кандидат активен пока есть хотя бы один владелец.
    """

    def __init__(self):
        self._groups: Dict[GroupKey, Dict[str, ConfigurationCandidate]] = defaultdict(dict)
        self._owners: Dict[str, Set[str]] = defaultdict(set)
        self._listeners: List[Callable[[str, IndicationType], None]] = []

    def __len__(self) -> int:
        return len(self._owners)

    def __contains__(self, candidate_key: str) -> bool:
        return candidate_key in self._owners

    def keys(self) -> List[str]:
        return list(self._owners)

    def on_register(self, listener: Callable[[str, IndicationType], None]) -> None:
        """listener(symbol, type) для каждой зарегистрированной пары."""
        self._listeners.append(listener)

    def register(self, candidates: Iterable[ConfigurationCandidate], owner: str) -> int:
        added = 0
        pairs: Set[Tuple[str, IndicationType]] = set()
        for candidate in candidates:
            if candidate.key not in self._owners:
                added += 1
            self._owners[candidate.key].add(owner)
            group = (candidate.symbol, candidate.indication_type, candidate.direction)
            self._groups[group][candidate.key] = candidate
            pairs.add((candidate.symbol, candidate.indication_type))
        for symbol, indication_type in sorted(pairs):
            for listener in self._listeners:
                listener(symbol, indication_type)
        return added

    def unregister(self, owner: str) -> int:
        """Снять владельца; кандидаты без владельцев удаляются."""
        removed = 0
        for key in [k for k, owners in self._owners.items() if owner in owners]:
            owners = self._owners[key]
            owners.discard(owner)
            if not owners:
                del self._owners[key]
                for group in self._groups.values():
                    group.pop(key, None)
                removed += 1
        return removed

    def owners_of(self, candidate_key: str) -> Set[str]:
        return set(self._owners.get(candidate_key, set()))

    def candidates(self, symbol: str, indication_type: IndicationType) -> List[ConfigurationCandidate]:
        result: List[ConfigurationCandidate] = []
        for direction in Direction:
            result.extend(self._groups.get((symbol, indication_type, direction), {}).values())
        return result

    def matching(self, signal: Signal) -> List[ConfigurationCandidate]:
        group = self._groups.get((signal.symbol, signal.indication_type, signal.direction), {})
        return [c for c in group.values() if accepts(c, signal)]

    def active_types(self, symbol: str) -> Set[IndicationType]:
        return {
            indication_type
            for (sym, indication_type, _), group in self._groups.items()
            if sym == symbol and group
        }
