"""
Unit tests for Promotion / Demotion Engine
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from tenacity import wait_none

from trade_engine.core.enums import (
    BaseStatus,
    CloseReason,
    ExchangePositionStatus,
    MainStatus,
    PositionLevel,
    RealStatus,
    TransitionReason,
)
from trade_engine.pipeline.aggregator import BaseAggregator
from trade_engine.pipeline.connector import PaperExchangeConnector
from trade_engine.pipeline.exchange_sync import ExchangeSync
from trade_engine.pipeline.models import (
    ActiveExchangePosition,
    BasePseudoPosition,
    MainPseudoPosition,
    RealPseudoPosition,
)
from trade_engine.pipeline.promotion import PromotionEngine, decide_transition
from trade_engine.pipeline.settings import (
    ConnectionSettings,
    LevelThresholds,
    PromotionSettings,
)
from trade_engine.pipeline.statistics import compute_window_stats

# PF 2.0: 6 × +0.2%, 4 × -0.15%
GOOD = [0.2, -0.15] * 4 + [0.2, 0.2]
# PF 3.0
BETTER = [0.3, -0.15] * 4 + [0.3, 0.3]
# PF 0.33
BAD = [0.1, -0.3] * 5


def _stats(pnls, t0, now=None):
    closed = [t0 + timedelta(minutes=10 * i) for i in range(len(pnls))]
    return compute_window_stats(pnls, closed, now or closed[-1])


def _settings(**promotion):
    return ConnectionSettings(
        connection_id="conn-1",
        symbols=["BTCUSDT", "ETHUSDT"],
        promotion=PromotionSettings(**promotion),
    )


async def _series(aggregator, session, make_trade, candidate, pnls, start):
    for i, pnl in enumerate(pnls):
        trade = make_trade(candidate, pnl, start + timedelta(minutes=10 * i))
        await aggregator.record_close(session, trade, _settings().base)


async def _to_real(engine, aggregator, session, make_trade, candidates, settings, t0, pnls=GOOD):
    """Base → Main (цикл 1), затем Main → Real (цикл 2)."""
    for candidate in candidates:
        await _series(aggregator, session, make_trade, candidate, pnls, t0)
    first = await engine.run_cycle(session, "conn-1", settings, t0 + timedelta(hours=2))
    for candidate in candidates:
        await _series(aggregator, session, make_trade, candidate, pnls, t0 + timedelta(hours=2))
    second = await engine.run_cycle(session, "conn-1", settings, t0 + timedelta(hours=4))
    return first, second


async def _one(session, model):
    return (await session.execute(select(model))).scalars().one()


# =============================================================================
# decide_transition
# =============================================================================


def test_decide_insufficient_trades_holds(t0):
    thresholds = PromotionSettings().main
    decision = decide_transition(PositionLevel.MAIN, None, _stats(GOOD[:9], t0), thresholds)
    assert decision.status is None
    assert decision.reason == TransitionReason.HOLD_INSUFFICIENT_TRADES

    decision = decide_transition(PositionLevel.MAIN, MainStatus.ACTIVE, None, thresholds)
    assert decision.status == MainStatus.ACTIVE.value
    assert decision.reason == TransitionReason.HOLD_INSUFFICIENT_TRADES


def test_decide_promotion(t0):
    """10 сделок, PF 2.0 → PROMOTED"""
    thresholds = PromotionSettings()
    main = decide_transition(PositionLevel.MAIN, None, _stats(GOOD, t0), thresholds.main)
    assert main.status == MainStatus.ACTIVE.value
    assert main.reason == TransitionReason.PROMOTED

    real = decide_transition(PositionLevel.REAL, None, _stats(GOOD, t0), thresholds.real)
    assert real.status == RealStatus.VALIDATED.value

    below = decide_transition(PositionLevel.REAL, None, _stats(BAD, t0), thresholds.real)
    assert below.status is None
    assert below.reason == TransitionReason.HOLD_BELOW_THRESHOLD


def test_decide_demotion_reasons(t0):
    thresholds = PromotionSettings().main
    decision = decide_transition(PositionLevel.MAIN, MainStatus.ACTIVE, _stats(BAD, t0), thresholds)
    assert decision.status == MainStatus.PAUSED.value
    assert decision.reason == TransitionReason.DEMOTED_PROFIT_FACTOR

    # высокий PF, но незакрытый drawdown длиннее 24h
    pnls = [0.2] * 9 + [-0.1]
    stats = _stats(pnls, t0, now=t0 + timedelta(hours=30))
    decision = decide_transition(PositionLevel.MAIN, "active", stats, thresholds)
    assert decision.reason == TransitionReason.DEMOTED_DRAWDOWN_TIME


def test_decide_paused_records(t0):
    """PAUSED возвращается только через RESUMED"""
    thresholds = PromotionSettings().real
    resumed = decide_transition(PositionLevel.REAL, RealStatus.PAUSED, _stats(GOOD, t0), thresholds)
    assert resumed.status == RealStatus.VALIDATED.value
    assert resumed.reason == TransitionReason.RESUMED

    held = decide_transition(PositionLevel.REAL, RealStatus.PAUSED, _stats(BAD, t0), thresholds)
    assert held.status == RealStatus.PAUSED.value
    assert held.reason == TransitionReason.HOLD_BELOW_THRESHOLD


def test_decide_rejects_base_level(t0):
    with pytest.raises(ValueError):
        decide_transition(PositionLevel.BASE, None, _stats(GOOD, t0), PromotionSettings().main)


# =============================================================================
# Engine
# =============================================================================


@pytest.mark.asyncio
async def test_base_promotes_to_main_then_real(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    settings = _settings()
    candidate = make_candidate()

    first, second = await _to_real(engine, aggregator, db_session, make_trade, [candidate], settings, t0)

    assert first.count(TransitionReason.PROMOTED, PositionLevel.MAIN) == 1
    # только что созданный Main не оценивается на Real в том же цикле
    assert first.count(TransitionReason.PROMOTED, PositionLevel.REAL) == 0

    assert second.count(TransitionReason.PROMOTED, PositionLevel.REAL) == 1
    main = await _one(db_session, MainPseudoPosition)
    real = await _one(db_session, RealPseudoPosition)
    assert main.status == MainStatus.ACTIVE.value
    assert main.total_positions == 10
    assert real.status == RealStatus.VALIDATED.value
    assert real.main_id == main.id
    assert real.profit_factor == pytest.approx(2.0)
    assert real.total_positions == 0


@pytest.mark.asyncio
async def test_insufficient_base_window_holds(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    await _series(aggregator, db_session, make_trade, make_candidate(), GOOD[:9], t0)

    report = await engine.run_cycle(db_session, "conn-1", _settings(), t0 + timedelta(hours=2))
    assert report.evaluated == 1
    assert not report.transitions
    assert await db_session.scalar(select(func.count()).select_from(MainPseudoPosition)) == 0


@pytest.mark.asyncio
async def test_real_cap_ranks_by_profit_factor(db_session, events, make_candidate, make_trade, t0):
    """target_positions=1: слот получает кандидат с большим PF"""
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    settings = _settings(target_positions=1)
    btc = make_candidate(symbol="BTCUSDT")
    eth = make_candidate(symbol="ETHUSDT")

    for candidate, pnls in ((btc, GOOD), (eth, BETTER)):
        await _series(aggregator, db_session, make_trade, candidate, pnls, t0)
    await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=2))
    for candidate, pnls in ((btc, GOOD), (eth, BETTER)):
        await _series(aggregator, db_session, make_trade, candidate, pnls, t0 + timedelta(hours=2))
    report = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=4))

    assert report.count(TransitionReason.PROMOTED, PositionLevel.REAL) == 1
    assert report.count(TransitionReason.CAP_REACHED) == 1
    real = await _one(db_session, RealPseudoPosition)
    assert real.symbol == "ETHUSDT"


@pytest.mark.asyncio
async def test_demotion_pauses_real_and_closes_exchange(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    settings = _settings()
    sync = ExchangeSync("conn-1", PaperExchangeConnector(), settings.execution, events=events, retry_wait=wait_none())
    engine = PromotionEngine(exchange_sync=sync, events=events)
    candidate = make_candidate()

    await _to_real(engine, aggregator, db_session, make_trade, [candidate], settings, t0)
    real = await _one(db_session, RealPseudoPosition)
    position = await sync.open_for_real(db_session, real, candidate, 100.0, t0 + timedelta(hours=4))
    assert position is not None

    await _series(aggregator, db_session, make_trade, candidate, BAD, t0 + timedelta(hours=5))
    report = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=7))

    assert report.count(TransitionReason.DEMOTED_PROFIT_FACTOR, PositionLevel.REAL) == 1
    main = await _one(db_session, MainPseudoPosition)
    assert main.status == MainStatus.ACTIVE.value
    assert real.status == RealStatus.PAUSED.value
    assert real.status_reason == TransitionReason.DEMOTED_PROFIT_FACTOR.value
    assert real.total_positions == 10

    assert position.status == ExchangePositionStatus.CLOSED.value
    assert position.close_reason == CloseReason.DEMOTED.value
    assert real.exchange_positions_closed == 1


@pytest.mark.asyncio
async def test_stale_status_write_is_skipped(db_session, events, make_candidate, make_trade, t0):
    """Решение со временем раньше status_changed_at не перезаписывает статус"""
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    settings = _settings()
    candidate = make_candidate()

    await _to_real(engine, aggregator, db_session, make_trade, [candidate], settings, t0)
    await _series(aggregator, db_session, make_trade, candidate, BAD, t0 + timedelta(hours=5))

    stale = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=3))
    real = await _one(db_session, RealPseudoPosition)
    assert stale.count(TransitionReason.DEMOTED_PROFIT_FACTOR) == 0
    assert real.status == RealStatus.VALIDATED.value

    fresh = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=7))
    assert fresh.count(TransitionReason.DEMOTED_PROFIT_FACTOR, PositionLevel.REAL) == 1
    assert real.status == RealStatus.PAUSED.value
    assert real.status_changed_at.replace(tzinfo=None) == (t0 + timedelta(hours=7)).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_paused_main_cascades_to_real(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    settings = _settings(
        main=LevelThresholds(
            min_positions=10, profit_factor_min=0.9, drawdown_time_max_hours=24.0, evaluation_window=50
        ),
        real=LevelThresholds(
            min_positions=10, profit_factor_min=1.0, drawdown_time_max_hours=12.0, evaluation_window=20
        ),
    )
    candidate = make_candidate()

    await _to_real(engine, aggregator, db_session, make_trade, [candidate], settings, t0)
    await _series(aggregator, db_session, make_trade, candidate, BAD, t0 + timedelta(hours=5))
    report = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=7))

    main = await _one(db_session, MainPseudoPosition)
    real = await _one(db_session, RealPseudoPosition)
    assert main.status == MainStatus.PAUSED.value
    assert real.status == RealStatus.PAUSED.value
    assert real.status_reason == TransitionReason.DEMOTED_PROFIT_FACTOR.value
    assert report.count(TransitionReason.DEMOTED_PROFIT_FACTOR) == 2


@pytest.mark.asyncio
async def test_rejected_base_pauses_levels(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    settings = _settings()
    candidate = make_candidate()

    await _to_real(engine, aggregator, db_session, make_trade, [candidate], settings, t0)
    base = await _one(db_session, BasePseudoPosition)
    base.status = BaseStatus.REJECTED.value
    await db_session.flush()

    report = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=5))
    assert report.count(TransitionReason.BASE_REJECTED) == 2
    main = await _one(db_session, MainPseudoPosition)
    real = await _one(db_session, RealPseudoPosition)
    assert main.status == MainStatus.PAUSED.value
    assert real.status == RealStatus.PAUSED.value
    assert real.status_reason == TransitionReason.BASE_REJECTED.value


@pytest.mark.asyncio
async def test_inconsistent_counters_force_pause(db_session, events, make_candidate, make_trade, t0):
    """Рассинхрон счётчиков Real → PAUSED + needs_review"""
    aggregator = BaseAggregator(events=events)
    engine = PromotionEngine(events=events)
    settings = _settings()
    candidate = make_candidate()

    await _to_real(engine, aggregator, db_session, make_trade, [candidate], settings, t0)
    real = await _one(db_session, RealPseudoPosition)
    real.winning_positions = 5
    await db_session.flush()

    report = await engine.run_cycle(db_session, "conn-1", settings, t0 + timedelta(hours=5))
    assert report.errors == 1
    assert real.status == RealStatus.PAUSED.value
    assert real.status_reason == TransitionReason.INVARIANT_VIOLATION.value
    assert real.needs_review
