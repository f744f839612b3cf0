"""
Pytest configuration and fixtures for Trade Engine tests
"""

from datetime import datetime, timedelta, UTC
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from trade_engine.core.enums import CloseReason, Direction, IndicationType, TradeSource
from trade_engine.database.models import Base
from trade_engine.pipeline import models  # noqa: F401  (регистрация таблиц)
from trade_engine.pipeline.events import EventEmitter
from trade_engine.pipeline.expander import ConfigurationCandidate
from trade_engine.pipeline.simulator import ClosedTrade


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="function")
async def test_db_engine(tmp_path):
    """
    Create test database engine

    Файловая SQLite в tmp_path: при инвалидировании соединения (отмена задачи
    посреди запроса) переподключение видит те же таблицы, в отличие от :memory:.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    """Session maker поверх тестовой БД (для runtime / scheduler)"""
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def events() -> EventEmitter:
    """Изолированный emitter (без подписчиков singleton'а)"""
    return EventEmitter()


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def make_candidate():
    """Фабрика ConfigurationCandidate с exit-параметрами по умолчанию"""

    def _make(
        symbol: str = "BTCUSDT",
        indication_type: IndicationType = IndicationType.DIRECTION,
        direction: Direction = Direction.LONG,
        **params,
    ) -> ConfigurationCandidate:
        parameters = {
            "range": 3,
            "takeprofit_factor": 2,
            "stoploss_ratio": 1.0,
            "trailing": False,
            "trail_start": 0.0,
            "trail_stop": 0.0,
        }
        if indication_type != IndicationType.DIRECTION:
            parameters.pop("range")
        parameters.update(params)
        return ConfigurationCandidate.create(symbol, indication_type, parameters, direction)

    return _make


@pytest.fixture
def make_trade():
    """Фабрика закрытых симулированных сделок"""

    def _make(
        candidate: ConfigurationCandidate,
        pnl_pct: float,
        closed_at: datetime,
        connection_id: str = "conn-1",
        source: TradeSource = TradeSource.LIVE,
    ) -> ClosedTrade:
        entry = 100.0
        exit_price = entry * (1 + candidate.direction.sign * pnl_pct / 100.0)
        return ClosedTrade(
            candidate=candidate,
            connection_id=connection_id,
            entry_price=entry,
            exit_price=exit_price,
            pnl_pct=pnl_pct,
            close_reason=CloseReason.TAKE_PROFIT if pnl_pct > 0 else CloseReason.STOP_LOSS,
            opened_at=closed_at - timedelta(minutes=5),
            closed_at=closed_at,
            source=source,
        )

    return _make
