"""
Trade Engine entry point

Поднимает pipeline для всех включённых connections из settings snapshot
(JSON файл PIPELINE_SETTINGS_PATH) и крутится до SIGINT/SIGTERM.

Без внешнего feed/коннектора работает на InMemoryFeed + paper connector.
"""
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import PIPELINE_SETTINGS_PATH, validate_config
from config.logging import setup_logging
from config.sentry import init_sentry, set_connection_context
from trade_engine.database.engine import dispose_engine, get_session_maker, init_db
from trade_engine.pipeline.aggregator import BaseAggregator
from trade_engine.pipeline.connector import ExchangeConnector, PaperExchangeConnector
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.feed import InMemoryFeed, MarketDataFeed
from trade_engine.pipeline.runtime import ConnectionRuntime
from trade_engine.pipeline.scheduler import PipelineScheduler
from trade_engine.pipeline.settings import ConnectionSettings, PipelineSettings, normalize_settings

ConnectorFactory = Callable[[ConnectionSettings], ExchangeConnector]


def load_snapshot(path: str) -> Dict[str, Any]:
    """Прочитать snapshot; нет файла - пустой snapshot (без connections)."""
    file = Path(path)
    if not file.exists():
        logger.warning(f"Settings snapshot {path} not found, starting without connections")
        return {}
    return json.loads(file.read_text(encoding="utf-8"))


def build_runtimes(
    settings: PipelineSettings,
    feed: MarketDataFeed,
    session_maker: async_sessionmaker[AsyncSession],
    coordination: PresetCoordinationEngine,
    connector_factory: Optional[ConnectorFactory] = None,
) -> List[ConnectionRuntime]:
    """ConnectionRuntime на каждый включённый connection (общий aggregator)."""
    connector_factory = connector_factory or (lambda _settings: PaperExchangeConnector())
    runtimes = []
    for connection in settings.connections.values():
        if not connection.is_enabled:
            logger.info(f"Connection {connection.connection_id} disabled, skipping")
            continue
        runtimes.append(ConnectionRuntime(
            connection,
            feed,
            connector_factory(connection),
            session_maker,
            aggregator=coordination.aggregator,
            coordination=coordination,
        ))
    return runtimes


async def run(snapshot: Mapping[str, Any], stop_event: asyncio.Event) -> None:
    """Запустить runtimes и scheduler, дождаться stop_event."""
    settings = normalize_settings(snapshot)
    await init_db()

    session_maker = get_session_maker()
    feed = InMemoryFeed()
    coordination = PresetCoordinationEngine(aggregator=BaseAggregator(), feed=feed)
    scheduler = PipelineScheduler(session_maker=session_maker, coordination=coordination)

    runtimes = build_runtimes(settings, feed, session_maker, coordination)
    for runtime in runtimes:
        set_connection_context(runtime.connection_id, runtime.settings.exchange)
        await runtime.start()
        scheduler.register(runtime)

    scheduler.start()
    logger.info(f"Trade engine running: {len(runtimes)} connections")

    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        for runtime in runtimes:
            try:
                await runtime.stop()
            except Exception as e:
                logger.error(f"Failed to stop connection {runtime.connection_id}: {e}")
        await feed.close()
        await dispose_engine()


async def main() -> None:
    """Main entry point"""
    setup_logging()
    init_sentry()

    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    await run(load_snapshot(PIPELINE_SETTINGS_PATH), stop_event)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Trade engine stopped by user (KeyboardInterrupt)")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
