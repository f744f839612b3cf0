"""
Query Service

Read-only доступ к состоянию pipeline для UI / внешних клиентов.
Start/stop configuration sets - через PresetCoordinationEngine.
"""
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trade_engine.core.enums import EventType, IndicationType, PositionLevel
from trade_engine.database.models import utcnow
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.models import (
    BasePseudoPosition,
    MainPseudoPosition,
    MarketActivityRecord,
    PipelineEvent,
    RealPseudoPosition,
)
from trade_engine.pipeline.schemas import (
    EventResponse,
    LevelStatisticsResponse,
    MarketActivityResponse,
    SetStatusResponse,
)
from trade_engine.pipeline.statistics import level_drawdown_hours, level_profit_factor

LevelModel = Union[BasePseudoPosition, MainPseudoPosition, RealPseudoPosition]

_LEVEL_MODELS = {
    PositionLevel.BASE: BasePseudoPosition,
    PositionLevel.MAIN: MainPseudoPosition,
    PositionLevel.REAL: RealPseudoPosition,
}


def level_response(level: PositionLevel, record: LevelModel, now: datetime) -> LevelStatisticsResponse:
    """Собрать LevelStatisticsResponse из записи любого уровня."""
    base = record if isinstance(record, BasePseudoPosition) else record.base
    return LevelStatisticsResponse(
        level=level.value,
        record_id=record.id,
        connection_id=getattr(record, "connection_id", None),
        candidate_key=base.candidate_key,
        symbol=record.symbol,
        indication_type=record.indication_type,
        direction=base.direction,
        parameters=dict(base.parameters or {}),
        status=record.status,
        status_reason=record.status_reason,
        total_positions=record.total_positions,
        winning_positions=record.winning_positions,
        losing_positions=record.losing_positions,
        win_rate=record.win_rate,
        total_pnl=record.total_pnl,
        avg_profit=record.avg_profit,
        avg_loss=record.avg_loss,
        profit_factor=level_profit_factor(record),
        max_drawdown=record.max_drawdown,
        drawdown_time_hours=level_drawdown_hours(record, now),
        needs_review=getattr(record, "needs_review", False),
        exchange_positions_closed=getattr(record, "exchange_positions_closed", 0),
        exchange_realized_pnl=getattr(record, "exchange_realized_pnl", 0.0),
        updated_at=record.updated_at,
    )


class QueryService:
    """Query contract pipeline."""

    def __init__(self, coordination: Optional[PresetCoordinationEngine] = None):
        self.coordination = coordination or PresetCoordinationEngine()

    async def get_market_activity(
        self,
        session: AsyncSession,
        connection_id: str,
        symbol: Optional[str] = None,
    ) -> List[MarketActivityResponse]:
        query = select(MarketActivityRecord).where(MarketActivityRecord.connection_id == connection_id)
        if symbol:
            query = query.where(MarketActivityRecord.symbol == symbol.upper())
        result = await session.execute(query.order_by(MarketActivityRecord.symbol))
        return [MarketActivityResponse.model_validate(r) for r in result.scalars()]

    async def get_level_statistics(
        self,
        session: AsyncSession,
        level: PositionLevel,
        connection_id: Optional[str] = None,
        symbol: Optional[str] = None,
        indication_type: Optional[IndicationType] = None,
        status: Optional[str] = None,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> List[LevelStatisticsResponse]:
        """
        Статистика записей уровня.

        Base не привязан к connection: connection_id для него игнорируется.

        Raises:
            ValueError: level EXCHANGE (не pseudo уровень)
        """
        level = PositionLevel(level)
        model = _LEVEL_MODELS.get(level)
        if model is None:
            raise ValueError(f"No statistics for level {level.value}")

        query = select(model)
        if connection_id is not None and model is not BasePseudoPosition:
            query = query.where(model.connection_id == connection_id)
        if symbol:
            query = query.where(model.symbol == symbol.upper())
        if indication_type is not None:
            query = query.where(model.indication_type == IndicationType(indication_type).value)
        if status:
            query = query.where(model.status == status)

        result = await session.execute(query.order_by(model.id).limit(limit))
        now = now or utcnow()
        return [level_response(level, record, now) for record in result.scalars().unique()]

    async def get_set_status(self, session: AsyncSession, set_id: int) -> SetStatusResponse:
        return await self.coordination.get_status(session, set_id)

    async def list_events(
        self,
        session: AsyncSession,
        connection_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        candidate_key: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[EventResponse]:
        """Последние события (новые первыми)."""
        query = select(PipelineEvent)
        if connection_id is not None:
            query = query.where(PipelineEvent.connection_id == connection_id)
        if event_type is not None:
            query = query.where(PipelineEvent.event_type == EventType(event_type).value)
        if candidate_key is not None:
            query = query.where(PipelineEvent.candidate_key == candidate_key)
        if since is not None:
            query = query.where(PipelineEvent.created_at >= since)
        result = await session.execute(
            query.order_by(PipelineEvent.created_at.desc(), PipelineEvent.id.desc()).limit(limit)
        )
        return [EventResponse.model_validate(e) for e in result.scalars()]
