"""
Unit tests for Parameter Expander
"""

import pytest

from trade_engine.core.enums import Direction, IndicationType
from trade_engine.core.exceptions import RangeValidationError
from trade_engine.pipeline.expander import (
    MAX_CANDIDATES,
    ConfigurationCandidate,
    RangeSpec,
    TrailingSpec,
    build_candidates,
    candidate_key,
    count_variations,
    expand_parameters,
)


def test_range_count_and_values():
    """floor((to - from) / step) + 1 значений"""
    spec = RangeSpec(3, 12, 3)
    assert spec.count == 4
    assert spec.values() == [3, 6, 9, 12]

    # последний шаг не перелезает через to
    assert RangeSpec(2, 10, 4).values() == [2, 6, 10]
    assert RangeSpec(1, 10, 4).values() == [1, 5, 9]


def test_float_range_keeps_last_step():
    """0.1 шаг не теряет последнее значение из-за float"""
    spec = RangeSpec(0.1, 0.3, 0.1)
    assert spec.count == 3
    assert spec.values() == [0.1, 0.2, 0.3]


def test_single_value_range():
    """from == to даёт одно значение"""
    spec = RangeSpec.single(5, name="range")
    assert spec.count == 1
    assert spec.values() == [5]


@pytest.mark.parametrize(
    "start,end,step",
    [
        (1, 10, 0),
        (1, 10, -1),
        (10, 1, 1),
        (float("nan"), 1, 1),
        ("1", 10, 1),
    ],
)
def test_invalid_ranges_rejected(start, end, step):
    """Битые ranges отклоняются до expansion"""
    with pytest.raises(RangeValidationError):
        RangeSpec(start, end, step, name="range")


def test_range_error_names_parameter():
    """Ошибка указывает параметр"""
    with pytest.raises(RangeValidationError) as exc_info:
        RangeSpec(1, 2, 0, name="threshold")
    assert exc_info.value.parameter == "threshold"
    assert "threshold" in str(exc_info.value)


def test_cartesian_product_is_complete_and_unique():
    """Ровно prod(count) уникальных комбинаций"""
    ranges = {"a": RangeSpec(1, 3, 1), "b": RangeSpec(0.5, 1.5, 0.5)}
    combos = expand_parameters(ranges)
    assert len(combos) == 9
    assert len({tuple(sorted(c.items())) for c in combos}) == 9
    assert {"a": 3, "b": 1.5} in combos


def test_empty_ranges_give_single_combination():
    assert expand_parameters({}) == [{}]


def test_trailing_variants():
    """Trailing: вариант без trailing + каждая пара (start, stop)"""
    off = TrailingSpec(enabled=False)
    assert off.multiplier == 1
    assert off.variants() == [{"trailing": False, "trail_start": 0.0, "trail_stop": 0.0}]

    single = TrailingSpec(enabled=True, starts=(0.3,), stops=(0.1,))
    assert single.multiplier == 2
    assert single.variants()[1] == {"trailing": True, "trail_start": 0.3, "trail_stop": 0.1}

    grid = TrailingSpec(enabled=True, starts=(0.3, 0.6), stops=(0.1, 0.2))
    assert grid.multiplier == 5


def test_trailing_rejects_non_positive_values():
    with pytest.raises(RangeValidationError):
        TrailingSpec(enabled=True, starts=(0.0,), stops=(0.1,))


def test_count_variations_matches_build():
    """count_variations совпадает с фактическим числом кандидатов"""
    indication = {"range": RangeSpec(3, 12, 3)}
    position = {
        "takeprofit_factor": RangeSpec(2, 10, 4),
        "stoploss_ratio": RangeSpec(0.5, 1.5, 0.5),
    }
    trailing = TrailingSpec(enabled=True)

    expected = count_variations({**indication, **position}, trailing, directions=2)
    candidates = build_candidates("btcusdt", IndicationType.DIRECTION, indication, position, trailing)

    assert expected == 4 * 3 * 3 * 2 * 2
    assert len(candidates) == expected
    assert len({c.key for c in candidates}) == expected
    assert all(c.symbol == "BTCUSDT" for c in candidates)


def test_build_rejects_overlapping_names():
    with pytest.raises(RangeValidationError):
        build_candidates(
            "BTCUSDT",
            IndicationType.DIRECTION,
            {"range": RangeSpec(3, 6, 3)},
            {"range": RangeSpec(1, 2, 1)},
        )


def test_build_rejects_exploding_space():
    """Пространство больше MAX_CANDIDATES отклоняется до материализации"""
    huge = {"a": RangeSpec(1, 1000, 1), "b": RangeSpec(1, 1000, 1)}
    assert count_variations(huge) > MAX_CANDIDATES
    with pytest.raises(RangeValidationError):
        build_candidates("BTCUSDT", IndicationType.ACTIVE, huge)


def test_candidate_key_is_stable():
    """Ключ не зависит от порядка параметров и int/float формы"""
    key_a = candidate_key("btcusdt", IndicationType.MOVE, {"range": 3, "tp": 2.0}, Direction.LONG)
    key_b = candidate_key("BTCUSDT", "move", {"tp": 2, "range": 3.0}, "long")
    assert key_a == key_b
    assert len(key_a) == 64

    other = candidate_key("BTCUSDT", IndicationType.MOVE, {"range": 3, "tp": 2}, Direction.SHORT)
    assert other != key_a


def test_candidate_accessors():
    candidate = ConfigurationCandidate.create(
        "ethusdt",
        IndicationType.DIRECTION,
        {"range": 6, "takeprofit_factor": 2, "stoploss_ratio": 0.5, "trailing": False},
        Direction.SHORT,
    )
    assert candidate.symbol == "ETHUSDT"
    assert candidate.param("range") == 6
    assert candidate.param("missing", 42) == 42
    assert candidate.indication_parameters == {"range": 6}
    assert candidate.as_dict()["stoploss_ratio"] == 0.5
