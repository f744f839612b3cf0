"""
Unit tests for Base Level Aggregator
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from trade_engine.core.enums import (
    BasePhase,
    BaseStatus,
    EventType,
    MainStatus,
    PositionLevel,
    TradeSource,
)
from trade_engine.pipeline.aggregator import (
    BaseAggregator,
    evaluate_base_phase,
    prune_trades,
    window_stats,
    window_trades,
)
from trade_engine.pipeline.models import MainPseudoPosition, PipelineEvent, PseudoTrade
from trade_engine.pipeline.settings import BaseEvaluationSettings


async def _record_series(aggregator, session, make_trade, candidate, pnls, t0, **kwargs):
    outcome = None
    for i, pnl in enumerate(pnls):
        trade = make_trade(candidate, pnl, t0 + timedelta(minutes=i), **kwargs)
        outcome = await aggregator.record_close(session, trade, BaseEvaluationSettings())
    return outcome


@pytest.mark.asyncio
async def test_get_or_create_base_is_idempotent(db_session, events, make_candidate):
    """Один Base на candidate_key"""
    aggregator = BaseAggregator(events=events)
    candidate = make_candidate()

    first = await aggregator.get_or_create_base(db_session, candidate)
    second = await aggregator.get_or_create_base(db_session, candidate)

    assert first.id == second.id
    assert first.status == BaseStatus.EVALUATING.value
    assert first.phase == BasePhase.INITIAL.value
    assert first.parameters["range"] == 3


@pytest.mark.asyncio
async def test_record_close_updates_base(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    candidate = make_candidate()

    outcome = await _record_series(aggregator, db_session, make_trade, candidate, [0.2, -0.1, 0.2], t0)

    base = outcome.base
    assert base.total_positions == 3
    assert base.winning_positions == 2
    assert base.losing_positions == 1
    assert base.win_rate == pytest.approx(2 / 3)
    assert outcome.main is None and outcome.real is None

    trades = await window_trades(db_session, base.id)
    assert [t.pnl_pct for t in trades] == [0.2, -0.1, 0.2]


@pytest.mark.asyncio
async def test_initial_phase_rejects_low_win_rate(db_session, events, make_candidate, make_trade, t0):
    """3 из 10 прибыльных (< 0.40) → REJECTED"""
    aggregator = BaseAggregator(events=events)
    candidate = make_candidate()
    pnls = [0.2, 0.2, 0.2] + [-0.1] * 7

    outcome = await _record_series(aggregator, db_session, make_trade, candidate, pnls, t0)

    assert outcome.base.status == BaseStatus.REJECTED.value
    assert outcome.base.status_reason == "initial_win_rate"
    assert not await aggregator.can_open(db_session, candidate)

    count = await db_session.scalar(
        select(func.count()).select_from(PipelineEvent).where(
            PipelineEvent.event_type == EventType.BASE_STATUS_CHANGED.value
        )
    )
    assert count == 1


@pytest.mark.asyncio
async def test_initial_phase_advances_to_expanded(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    candidate = make_candidate()
    outcome = await _record_series(
        aggregator, db_session, make_trade, candidate, [0.2, -0.1] * 5, t0
    )
    assert outcome.base.status == BaseStatus.EVALUATING.value
    assert outcome.base.phase == BasePhase.EXPANDED.value
    assert await aggregator.can_open(db_session, candidate)


def test_phase_rules():
    """Expanded: win_rate >= 0.45 и profit ratio >= 1.2 → ACTIVE"""
    settings = BaseEvaluationSettings()

    class _Base:
        status = BaseStatus.EVALUATING.value
        phase = BasePhase.EXPANDED.value
        total_positions = 50
        win_rate = 0.5
        avg_profit = 0.3
        avg_loss = -0.2

    transition = evaluate_base_phase(_Base, settings)
    assert transition.status == BaseStatus.ACTIVE
    assert transition.phase == BasePhase.PRODUCTION

    _Base.avg_profit = 0.2
    assert evaluate_base_phase(_Base, settings).status == BaseStatus.REJECTED

    _Base.status = BaseStatus.ACTIVE.value
    _Base.phase = BasePhase.PRODUCTION.value
    _Base.win_rate = 0.37
    assert evaluate_base_phase(_Base, settings).reason == "production_win_rate"

    _Base.win_rate = 0.40
    assert evaluate_base_phase(_Base, settings) is None


@pytest.mark.asyncio
async def test_live_trades_count_on_main(db_session, events, make_candidate, make_trade, t0):
    """LIVE сделки connection засчитываются в Main; REPLAY - только в Base"""
    aggregator = BaseAggregator(events=events)
    candidate = make_candidate()
    base = await aggregator.get_or_create_base(db_session, candidate)
    main = MainPseudoPosition(
        connection_id="conn-1",
        base_id=base.id,
        symbol=base.symbol,
        indication_type=base.indication_type,
        status=MainStatus.PAUSED.value,
    )
    db_session.add(main)
    await db_session.flush()

    outcome = await aggregator.record_close(
        db_session, make_trade(candidate, 0.2, t0), BaseEvaluationSettings()
    )
    assert outcome.main is not None
    assert outcome.main.total_positions == 1
    assert outcome.trade.counted_main

    replay = await aggregator.record_close(
        db_session,
        make_trade(candidate, 0.2, t0 + timedelta(minutes=1), source=TradeSource.REPLAY),
        BaseEvaluationSettings(),
    )
    assert replay.main is None
    assert not replay.trade.counted_main
    assert replay.base.total_positions == 2

    other = await aggregator.record_close(
        db_session,
        make_trade(candidate, 0.2, t0 + timedelta(minutes=2), connection_id="conn-2"),
        BaseEvaluationSettings(),
    )
    assert other.main is None

    main_trades = await window_trades(db_session, base.id, PositionLevel.MAIN, "conn-1")
    assert len(main_trades) == 1
    stats = await window_stats(db_session, base.id, PositionLevel.BASE, limit=2)
    assert stats.total == 2


@pytest.mark.asyncio
async def test_prune_trades_keeps_latest(db_session, events, make_candidate, t0):
    """Больше 300 сделок на (base, connection) → остаются последние 250"""
    aggregator = BaseAggregator(events=events)
    base = await aggregator.get_or_create_base(db_session, make_candidate())
    for i in range(310):
        db_session.add(PseudoTrade(
            base_id=base.id,
            connection_id="conn-1",
            symbol=base.symbol,
            direction=base.direction,
            entry_price=100.0,
            exit_price=100.1,
            pnl_pct=0.1,
            is_win=True,
            close_reason="take_profit",
            source="live",
            opened_at=t0 + timedelta(minutes=i),
            closed_at=t0 + timedelta(minutes=i, seconds=30),
        ))
    await db_session.flush()

    deleted = await prune_trades(db_session)
    assert deleted == 60

    oldest = await db_session.scalar(
        select(func.min(PseudoTrade.closed_at)).where(PseudoTrade.base_id == base.id)
    )
    assert oldest.replace(tzinfo=None) == (t0 + timedelta(minutes=60, seconds=30)).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_prune_trades_below_threshold(db_session, events, make_candidate, make_trade, t0):
    aggregator = BaseAggregator(events=events)
    await _record_series(aggregator, db_session, make_trade, make_candidate(), [0.1] * 5, t0)
    assert await prune_trades(db_session) == 0
