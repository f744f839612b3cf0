"""
Unit tests for Pipeline Scheduler
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from trade_engine.core.enums import EventType
from trade_engine.database.models import utcnow
from trade_engine.pipeline.connector import PaperExchangeConnector
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.feed import InMemoryFeed
from trade_engine.pipeline.models import PipelineEvent
from trade_engine.pipeline.runtime import ConnectionRuntime
from trade_engine.pipeline.scheduler import LOCK_PREFIX, PipelineScheduler
from trade_engine.pipeline.settings import ConnectionSettings


@pytest.fixture
def runtime(session_maker, events):
    settings = ConnectionSettings(connection_id="conn-1", symbols=["BTCUSDT"])
    return ConnectionRuntime(settings, InMemoryFeed(), PaperExchangeConnector(), session_maker, events=events)


@pytest.fixture
def scheduler(session_maker, events, runtime):
    scheduler = PipelineScheduler(
        session_maker=session_maker,
        coordination=PresetCoordinationEngine(events=events),
        use_locks=False,
    )
    scheduler.register(runtime)
    return scheduler


@pytest.mark.asyncio
async def test_trigger_promotion(scheduler):
    results = await scheduler.trigger_promotion()

    assert set(results) == {"conn-1"}
    assert results["conn-1"]["evaluated"] == 0
    assert results["conn-1"]["promoted_main"] == 0


@pytest.mark.asyncio
async def test_promotion_skipped_when_lock_held(session_maker, runtime):
    redis_client = AsyncMock()
    redis_client.set.return_value = None
    scheduler = PipelineScheduler(session_maker=session_maker, redis_client=redis_client, use_locks=True)
    scheduler.register(runtime)

    assert await scheduler.trigger_promotion() == {}
    redis_client.set.assert_awaited_once()
    assert redis_client.set.await_args.args[0] == LOCK_PREFIX + "promotion"
    redis_client.delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_lock_released_after_job(session_maker, runtime):
    redis_client = AsyncMock()

    def _store(key, token, **kwargs):
        redis_client.get.return_value = token
        return True

    redis_client.set.side_effect = _store
    scheduler = PipelineScheduler(session_maker=session_maker, redis_client=redis_client, use_locks=True)
    scheduler.register(runtime)

    await scheduler.trigger_promotion()

    redis_client.get.assert_awaited_once_with(LOCK_PREFIX + "promotion")
    redis_client.delete.assert_awaited_once_with(LOCK_PREFIX + "promotion")


@pytest.mark.asyncio
async def test_redis_unavailable_runs_without_lock(session_maker, runtime):
    redis_client = AsyncMock()
    redis_client.set.side_effect = RedisConnectionError("connection refused")
    scheduler = PipelineScheduler(session_maker=session_maker, redis_client=redis_client, use_locks=True)
    scheduler.register(runtime)

    results = await scheduler.trigger_promotion()
    assert set(results) == {"conn-1"}


@pytest.mark.asyncio
async def test_sync_skips_stopped_runtime(scheduler, runtime):
    runtime.reconcile = AsyncMock()
    await scheduler._run_sync()
    runtime.reconcile.assert_not_awaited()


@pytest.mark.asyncio
async def test_retention(scheduler, session_maker, events):
    now = utcnow()
    async with session_maker() as session:
        await events.emit(session, EventType.PROMOTED, "old", now=now - timedelta(days=40))
        await events.emit(session, EventType.PROMOTED, "fresh", now=now)
        await session.commit()

    await scheduler._run_retention()

    async with session_maker() as session:
        remaining = await session.scalar(select(func.count()).select_from(PipelineEvent))
    assert remaining == 1


@pytest.mark.asyncio
async def test_start_stop(scheduler):
    assert scheduler.get_status() == {"running": False, "jobs": [], "connections": ["conn-1"]}

    scheduler.start()
    try:
        status = scheduler.get_status()
        assert status["running"]
        assert {job["id"] for job in status["jobs"]} == {
            "promotion",
            "exchange_sync",
            "set_evaluation",
            "retention",
        }
    finally:
        scheduler.stop()

    assert not scheduler.get_status()["running"]

    scheduler.unregister("conn-1")
    assert scheduler.runtimes == {}
