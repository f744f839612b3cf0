"""
Unit tests for signal fan-out and candidate registry
"""

from trade_engine.core.enums import Direction, IndicationType
from trade_engine.pipeline.indications.fanout import CandidateRegistry, accepts
from trade_engine.pipeline.indications.state_machine import Signal


def _signal(t0, direction=Direction.LONG, indication_type=IndicationType.DIRECTION, **metrics):
    return Signal(
        connection_id="conn-1",
        symbol="BTCUSDT",
        indication_type=indication_type,
        direction=direction,
        price=100.0,
        at=t0,
        metrics=metrics,
    )


def test_accepts_matches_parameters_to_metrics(make_candidate, t0):
    """range=N принимает сигнал с >= N шагов"""
    signal = _signal(t0, steps=6.0, change_pct=0.4)
    assert accepts(make_candidate(range=3), signal)
    assert accepts(make_candidate(range=6), signal)
    assert not accepts(make_candidate(range=9), signal)


def test_accepts_checks_identity(make_candidate, t0):
    signal = _signal(t0, steps=6.0)
    assert not accepts(make_candidate(direction=Direction.SHORT), signal)
    assert not accepts(make_candidate(symbol="ETHUSDT"), signal)
    assert not accepts(make_candidate(indication_type=IndicationType.MOVE), signal)


def test_accepts_missing_metric_rejects(make_candidate, t0):
    assert not accepts(make_candidate(range=3), _signal(t0))


def test_drawdown_ratio_is_upper_bound(make_candidate, t0):
    signal = _signal(t0, indication_type=IndicationType.OPTIMAL, steps=3.0, drawdown_ratio=0.3)
    low = make_candidate(indication_type=IndicationType.OPTIMAL, range=3, drawdown_ratio=0.1)
    high = make_candidate(indication_type=IndicationType.OPTIMAL, range=3, drawdown_ratio=0.5)
    assert not accepts(low, signal)
    assert accepts(high, signal)


def test_registry_matching(make_candidate, t0):
    registry = CandidateRegistry()
    candidates = [make_candidate(range=r) for r in (3, 6, 9)] + [
        make_candidate(range=3, direction=Direction.SHORT)
    ]
    assert registry.register(candidates, "settings") == 4
    assert len(registry) == 4

    matched = registry.matching(_signal(t0, steps=6.0))
    assert {c.param("range") for c in matched} == {3, 6}
    assert all(c.direction == Direction.LONG for c in matched)
    assert registry.active_types("BTCUSDT") == {IndicationType.DIRECTION}
    assert len(registry.candidates("BTCUSDT", IndicationType.DIRECTION)) == 4


def test_registry_owners(make_candidate):
    """Кандидат живёт пока есть хотя бы один владелец"""
    registry = CandidateRegistry()
    shared = make_candidate(range=3)
    only_set = make_candidate(range=6)

    registry.register([shared], "settings")
    assert registry.register([shared, only_set], "set:1") == 1
    assert registry.owners_of(shared.key) == {"settings", "set:1"}

    assert registry.unregister("set:1") == 1
    assert shared.key in registry
    assert only_set.key not in registry
    assert registry.keys() == [shared.key]


def test_registry_notifies_listeners(make_candidate):
    registry = CandidateRegistry()
    seen = []
    registry.on_register(lambda symbol, indication_type: seen.append((symbol, indication_type)))

    registry.register(
        [make_candidate(range=3), make_candidate(range=6), make_candidate(symbol="ETHUSDT")],
        "settings",
    )
    assert seen == [
        ("BTCUSDT", IndicationType.DIRECTION),
        ("ETHUSDT", IndicationType.DIRECTION),
    ]
