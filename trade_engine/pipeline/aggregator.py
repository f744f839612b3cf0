"""
Base Level Aggregator

Закрытые симулированные сделки → счётчики Base / Main / Real.

- Base: одна запись на кандидата, connection-agnostic
- Main/Real: сделка засчитывается на уровне connection независимо от
  статуса записи (PAUSED тоже копит статистику для resume)
- Фазы оценки Base: initial (10) → expanded (50) → production

Все read-modify-write под per-candidate asyncio.Lock.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trade_engine.core.enums import (
    BasePhase,
    BaseStatus,
    EventType,
    PositionLevel,
    TradeSource,
)
from trade_engine.pipeline.config import get_config
from trade_engine.pipeline.events import EventEmitter, event_emitter
from trade_engine.pipeline.expander import ConfigurationCandidate
from trade_engine.pipeline.models import (
    BasePseudoPosition,
    MainPseudoPosition,
    PseudoTrade,
    RealPseudoPosition,
)
from trade_engine.pipeline.settings import BaseEvaluationSettings
from trade_engine.pipeline.simulator import ClosedTrade
from trade_engine.pipeline.statistics import (
    WindowStats,
    apply_close,
    compute_window_stats,
    level_profit_ratio,
)


class LockRegistry:
    """Per-candidate asyncio.Lock (single writer на статистику кандидата)."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class BaseTransition:
    """Смена статуса/фазы Base записи."""
    status: BaseStatus
    phase: BasePhase
    reason: Optional[str] = None


@dataclass
class CloseOutcome:
    """Результат record_close."""
    base: BasePseudoPosition
    trade: PseudoTrade
    main: Optional[MainPseudoPosition] = None
    real: Optional[RealPseudoPosition] = None
    base_transition: Optional[BaseTransition] = None


def evaluate_base_phase(
    base: BasePseudoPosition,
    settings: BaseEvaluationSettings,
) -> Optional[BaseTransition]:
    """
    Фазовая оценка Base.

    Phase 1 (initial): на initial_positions сделок win_rate < 0.40 → REJECTED,
        иначе переход в phase 2.
    Phase 2 (expanded): на expanded_positions сделок win_rate >= 0.45 и
        profit ratio >= 1.2 → ACTIVE (phase 3), иначе REJECTED.
    Phase 3 (production): win_rate < 0.38 → REJECTED.

    Returns:
        BaseTransition или None если ничего не меняется
    """
    if base.status == BaseStatus.REJECTED.value:
        return None

    total = base.total_positions or 0
    win_rate = base.win_rate or 0.0
    phase = BasePhase(base.phase)

    if phase == BasePhase.INITIAL:
        if total < settings.initial_positions:
            return None
        if win_rate < settings.initial_min_win_rate:
            return BaseTransition(BaseStatus.REJECTED, phase, "initial_win_rate")
        return BaseTransition(BaseStatus.EVALUATING, BasePhase.EXPANDED)

    if phase == BasePhase.EXPANDED:
        if total < settings.expanded_positions:
            return None
        if win_rate < settings.expanded_min_win_rate:
            return BaseTransition(BaseStatus.REJECTED, phase, "expanded_win_rate")
        if level_profit_ratio(base) < settings.expanded_min_profit_ratio:
            return BaseTransition(BaseStatus.REJECTED, phase, "expanded_profit_ratio")
        return BaseTransition(BaseStatus.ACTIVE, BasePhase.PRODUCTION)

    if win_rate < settings.production_min_win_rate:
        return BaseTransition(BaseStatus.REJECTED, phase, "production_win_rate")
    return None


class BaseAggregator:
    """Агрегатор закрытых сделок по уровням."""

    def __init__(
        self,
        locks: Optional[LockRegistry] = None,
        events: EventEmitter = event_emitter,
    ):
        self.locks = locks or LockRegistry()
        self.events = events

    async def get_or_create_base(
        self,
        session: AsyncSession,
        candidate: ConfigurationCandidate,
    ) -> BasePseudoPosition:
        """Найти Base по candidate_key или создать (race → повторный select)."""
        base = await self._load_base(session, candidate.key)
        if base is not None:
            return base

        base = BasePseudoPosition(
            candidate_key=candidate.key,
            symbol=candidate.symbol,
            indication_type=candidate.indication_type.value,
            direction=candidate.direction.value,
            parameters=candidate.as_dict(),
            status=BaseStatus.EVALUATING.value,
            phase=BasePhase.INITIAL.value,
        )
        try:
            async with session.begin_nested():
                session.add(base)
        except IntegrityError:
            logger.debug(f"Base {candidate.key[:12]} created concurrently, reloading")
            base = await self._load_base(session, candidate.key)
            if base is None:
                raise
        return base

    async def can_open(self, session: AsyncSession, candidate: ConfigurationCandidate) -> bool:
        """Открывает ли кандидат новые симулированные позиции (не REJECTED)."""
        status = await session.scalar(
            select(BasePseudoPosition.status).where(
                BasePseudoPosition.candidate_key == candidate.key
            )
        )
        return status is None or BaseStatus(status).accepts_positions()

    async def record_close(
        self,
        session: AsyncSession,
        trade: ClosedTrade,
        settings: BaseEvaluationSettings,
    ) -> CloseOutcome:
        """
        Засчитать закрытую сделку.

        Base всегда; Main/Real connection'а - если запись существует
        (replay сделки идут только в Base).
        """
        candidate = trade.candidate
        async with self.locks.get(candidate.key):
            base = await self.get_or_create_base(session, candidate)
            apply_close(base, trade.pnl_pct, trade.closed_at)
            base.touch(trade.closed_at)

            main = real = None
            if trade.connection_id and trade.source == TradeSource.LIVE:
                main, real = await self._load_levels(session, trade.connection_id, base.id)
                for record in (main, real):
                    if record is not None:
                        apply_close(record, trade.pnl_pct, trade.closed_at)
                        record.touch(trade.closed_at)

            row = PseudoTrade(
                base_id=base.id,
                connection_id=trade.connection_id,
                symbol=candidate.symbol,
                direction=candidate.direction.value,
                entry_price=trade.entry_price,
                exit_price=trade.exit_price,
                pnl_pct=trade.pnl_pct,
                is_win=trade.is_win,
                close_reason=trade.close_reason.value,
                source=trade.source.value,
                counted_main=main is not None,
                counted_real=real is not None,
                opened_at=trade.opened_at,
                closed_at=trade.closed_at,
            )
            session.add(row)

            transition = evaluate_base_phase(base, settings)
            if transition is not None:
                await self._apply_transition(session, base, transition, trade)

            await session.flush()

        return CloseOutcome(
            base=base, trade=row, main=main, real=real, base_transition=transition
        )

    async def _apply_transition(
        self,
        session: AsyncSession,
        base: BasePseudoPosition,
        transition: BaseTransition,
        trade: ClosedTrade,
    ) -> None:
        previous = base.status
        base.status = transition.status.value
        base.phase = transition.phase.value
        if transition.reason:
            base.status_reason = transition.reason

        if previous == base.status:
            logger.debug(
                f"Base {base.candidate_key[:12]} moved to phase {transition.phase.value} "
                f"after {base.total_positions} trades"
            )
            return

        await self.events.emit(
            session,
            EventType.BASE_STATUS_CHANGED,
            f"Base {base.symbol}/{base.indication_type}/{base.direction} "
            f"{previous} → {base.status} (wr={base.win_rate:.2f}, trades={base.total_positions})",
            connection_id=trade.connection_id,
            symbol=base.symbol,
            candidate_key=base.candidate_key,
            level=PositionLevel.BASE,
            payload={
                "from": previous,
                "to": base.status,
                "phase": base.phase,
                "reason": transition.reason,
                "win_rate": base.win_rate,
                "total_positions": base.total_positions,
            },
            now=trade.closed_at,
        )

    async def _load_base(self, session: AsyncSession, key: str) -> Optional[BasePseudoPosition]:
        result = await session.execute(
            select(BasePseudoPosition)
            .where(BasePseudoPosition.candidate_key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_levels(
        self,
        session: AsyncSession,
        connection_id: str,
        base_id: int,
    ) -> Tuple[Optional[MainPseudoPosition], Optional[RealPseudoPosition]]:
        main = (await session.execute(
            select(MainPseudoPosition)
            .where(
                MainPseudoPosition.connection_id == connection_id,
                MainPseudoPosition.base_id == base_id,
            )
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        real = (await session.execute(
            select(RealPseudoPosition)
            .where(
                RealPseudoPosition.connection_id == connection_id,
                RealPseudoPosition.base_id == base_id,
            )
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        return main, real


# =============================================================================
# Trailing window / retention
# =============================================================================


async def window_trades(
    session: AsyncSession,
    base_id: int,
    level: PositionLevel = PositionLevel.BASE,
    connection_id: Optional[str] = None,
    limit: int = 50,
) -> List[PseudoTrade]:
    """Последние limit сделок уровня в хронологическом порядке."""
    query = select(PseudoTrade).where(PseudoTrade.base_id == base_id)
    if level == PositionLevel.MAIN:
        query = query.where(
            PseudoTrade.connection_id == connection_id, PseudoTrade.counted_main.is_(True)
        )
    elif level == PositionLevel.REAL:
        query = query.where(
            PseudoTrade.connection_id == connection_id, PseudoTrade.counted_real.is_(True)
        )
    result = await session.execute(
        query.order_by(PseudoTrade.closed_at.desc(), PseudoTrade.id.desc()).limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def window_stats(
    session: AsyncSession,
    base_id: int,
    level: PositionLevel = PositionLevel.BASE,
    connection_id: Optional[str] = None,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> WindowStats:
    """WindowStats по последним limit сделкам уровня."""
    trades = await window_trades(session, base_id, level, connection_id, limit)
    return compute_window_stats(
        [t.pnl_pct for t in trades],
        [t.closed_at for t in trades],
        now=now,
    )


async def prune_trades(session: AsyncSession) -> int:
    """
    Retention: на (base, connection) держим последние trades_per_candidate
    сделок, чистим когда лимит превышен на threshold_pct.

    Returns:
        Количество удалённых сделок
    """
    retention = get_config().retention
    keep = retention.trades_per_candidate
    threshold = int(keep * (1 + retention.threshold_pct / 100.0))

    result = await session.execute(
        select(PseudoTrade.base_id, PseudoTrade.connection_id, func.count())
        .group_by(PseudoTrade.base_id, PseudoTrade.connection_id)
        .having(func.count() > threshold)
    )
    groups = result.all()

    deleted = 0
    for base_id, connection_id, count in groups:
        scope = [PseudoTrade.base_id == base_id]
        if connection_id is None:
            scope.append(PseudoTrade.connection_id.is_(None))
        else:
            scope.append(PseudoTrade.connection_id == connection_id)

        stale_ids = (
            select(PseudoTrade.id)
            .where(*scope)
            .order_by(PseudoTrade.closed_at.desc(), PseudoTrade.id.desc())
            .offset(keep)
        )
        ids = list((await session.execute(stale_ids)).scalars().all())
        if not ids:
            continue
        await session.execute(delete(PseudoTrade).where(PseudoTrade.id.in_(ids)))
        deleted += len(ids)
        logger.debug(f"Pruned {len(ids)} trades for base {base_id} / {connection_id}")

    if deleted:
        logger.info(f"Trade retention: pruned {deleted} trades in {len(groups)} groups")
    return deleted
