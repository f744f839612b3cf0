"""
Pipeline Scheduler

Периодические jobs pipeline на APScheduler:
- Promotion cycle: каждый час (redis lock)
- Exchange sync poll: каждые 2.5 секунды
- Configuration set re-evaluation: каждый час (redis lock)
- Trade / event retention: раз в сутки

Lock держит только один процесс; если Redis недоступен, job
выполняется без лока.
"""
import uuid
from typing import Dict, Optional

import redis.asyncio as redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import REDIS_LOCK_ENABLED, REDIS_URL
from trade_engine.database.engine import get_session_maker
from trade_engine.pipeline.aggregator import prune_trades
from trade_engine.pipeline.config import get_config
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.events import prune_events
from trade_engine.pipeline.runtime import ConnectionRuntime

LOCK_PREFIX = "trade_engine:lock:"


class PipelineScheduler:
    """
    Scheduler периодических задач всех connection runtimes.

    Jobs:
    - promotion: Base → Main → Real пересмотр
    - exchange_sync: reconcile + invariants
    - set_evaluation: configuration sets
    - retention: чистка pseudo_trades и pipeline_events
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        coordination: Optional[PresetCoordinationEngine] = None,
        redis_client: Optional[redis.Redis] = None,
        use_locks: bool = REDIS_LOCK_ENABLED,
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._session_maker = session_maker
        self.coordination = coordination
        self.runtimes: Dict[str, ConnectionRuntime] = {}
        self._redis = redis_client
        self._use_locks = use_locks
        self._lock_tokens: Dict[str, str] = {}

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_session_maker()
        return self._session_maker

    def register(self, runtime: ConnectionRuntime) -> None:
        self.runtimes[runtime.connection_id] = runtime

    def unregister(self, connection_id: str) -> None:
        self.runtimes.pop(connection_id, None)

    def start(self):
        """Запустить scheduler с интервалами из PipelineConfig.schedule."""
        if self._running:
            logger.warning("Pipeline scheduler already running")
            return

        schedule = get_config().schedule
        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._run_promotion,
            trigger=IntervalTrigger(hours=schedule.promotion_interval_hours),
            id="promotion",
            name="Promotion Cycle",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._run_sync,
            trigger=IntervalTrigger(seconds=schedule.sync_poll_interval_sec),
            id="exchange_sync",
            name="Exchange Position Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self._run_set_evaluation,
            trigger=IntervalTrigger(hours=schedule.set_evaluation_interval_hours),
            id="set_evaluation",
            name="Configuration Set Evaluation",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._run_retention,
            trigger=IntervalTrigger(hours=schedule.retention_interval_hours),
            id="retention",
            name="Trade Retention",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True

        logger.info(
            f"Pipeline scheduler started: "
            f"promotion every {schedule.promotion_interval_hours}h, "
            f"sync every {schedule.sync_poll_interval_sec}s, "
            f"sets every {schedule.set_evaluation_interval_hours}h"
        )

    def stop(self):
        """Остановить scheduler."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Pipeline scheduler stopped")

    async def trigger_promotion(self) -> Dict[str, dict]:
        """
        Немедленно прогнать promotion по всем connections.

        Returns:
            {connection_id: CycleReport.to_dict()}
        """
        logger.info("Manual promotion cycle triggered")
        return await self._run_promotion()

    # =========================================================================
    # Jobs
    # =========================================================================

    async def _run_promotion(self) -> Dict[str, dict]:
        results: Dict[str, dict] = {}
        if not await self._acquire_lock("promotion", get_config().locks.promotion_lock_ttl_sec):
            logger.debug("Promotion cycle skipped: lock held by another process")
            return results
        try:
            for connection_id, runtime in list(self.runtimes.items()):
                try:
                    report = await runtime.run_promotion()
                    results[connection_id] = report.to_dict()
                except Exception as e:
                    logger.error(f"Promotion cycle failed for {connection_id}: {e}")
        finally:
            await self._release_lock("promotion")
        return results

    async def _run_sync(self) -> None:
        for connection_id, runtime in list(self.runtimes.items()):
            if not runtime.running or not runtime.settings.execution.enabled:
                continue
            try:
                await runtime.reconcile()
            except Exception as e:
                logger.error(f"Exchange sync failed for {connection_id}: {e}")

    async def _run_set_evaluation(self) -> None:
        if self.coordination is None:
            return
        if not await self._acquire_lock("set_evaluation", get_config().locks.evaluation_lock_ttl_sec):
            logger.debug("Set evaluation skipped: lock held by another process")
            return
        try:
            async with self.session_maker() as session:
                evaluated = await self.coordination.evaluate_all(session)
                await session.commit()
            logger.info(f"Set evaluation complete: {len(evaluated)} sets evaluated")
        except Exception as e:
            logger.error(f"Set evaluation failed: {e}")
        finally:
            await self._release_lock("set_evaluation")

    async def _run_retention(self) -> None:
        try:
            async with self.session_maker() as session:
                trades = await prune_trades(session)
                events = await prune_events(session, get_config().retention.events_days)
                await session.commit()
            logger.info(f"Retention complete: {trades} trades, {events} events removed")
        except Exception as e:
            logger.error(f"Retention failed: {e}")

    # =========================================================================
    # Distributed lock
    # =========================================================================

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(REDIS_URL, decode_responses=True)
        return self._redis

    async def _acquire_lock(self, name: str, ttl_sec: int) -> bool:
        """
        SET NX EX на LOCK_PREFIX + name.

        Returns:
            False только если лок держит другой процесс
        """
        if not self._use_locks:
            return True
        token = uuid.uuid4().hex
        try:
            client = await self._get_redis()
            acquired = await client.set(LOCK_PREFIX + name, token, nx=True, ex=ttl_sec)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis unavailable, running {name} without lock: {e}")
            return True
        if acquired:
            self._lock_tokens[name] = token
            return True
        return False

    async def _release_lock(self, name: str) -> None:
        token = self._lock_tokens.pop(name, None)
        if token is None:
            return
        try:
            client = await self._get_redis()
            if await client.get(LOCK_PREFIX + name) == token:
                await client.delete(LOCK_PREFIX + name)
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to release lock {name}: {e}")

    def get_status(self) -> dict:
        """Получить статус scheduler."""
        if not self.scheduler or not self._running:
            return {
                "running": False,
                "jobs": [],
                "connections": list(self.runtimes),
            }

        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            })

        return {
            "running": True,
            "jobs": jobs,
            "connections": list(self.runtimes),
        }


# Singleton instance
_pipeline_scheduler: Optional[PipelineScheduler] = None


def get_pipeline_scheduler() -> PipelineScheduler:
    """Получить scheduler (lazy singleton)."""
    global _pipeline_scheduler
    if _pipeline_scheduler is None:
        _pipeline_scheduler = PipelineScheduler()
    return _pipeline_scheduler
