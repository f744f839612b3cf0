"""
Promotion / Demotion Engine

Base → Main → Real по trailing-window статистике.

Решения принимает чистая функция decide_transition(level, status, stats,
thresholds) → Decision(status, reason); движок только применяет их.

Правила:
- Base → Main: Base не REJECTED, окно Base >= main.min_positions,
  PF >= main.profit_factor_min, drawdown time <= main.drawdown_time_max_hours
- Main → Real: те же проверки с порогами real на собственном окне Main
- Demotion: окно уровня упало ниже порогов → PAUSED (запись остаётся,
  продолжает копить статистику и возвращается через RESUMED)
- Real cap: target_positions на connection, max_concurrent_indications
  на (connection, symbol); новые кандидаты ранжируются PF desc →
  drawdown time asc → trades desc
- Запись статуса: last-writer-wins с монотонным status_changed_at
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple, Type, Union

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trade_engine.core.enums import (
    BaseStatus,
    CloseReason,
    EventType,
    MainStatus,
    PositionLevel,
    RealStatus,
    TransitionReason,
)
from trade_engine.core.exceptions import InvariantViolation, StatisticalInsufficiencyError
from trade_engine.database.models import utcnow
from trade_engine.pipeline.aggregator import window_stats
from trade_engine.pipeline.events import EventEmitter, event_emitter
from trade_engine.pipeline.models import (
    BasePseudoPosition,
    MainPseudoPosition,
    RealPseudoPosition,
)
from trade_engine.pipeline.settings import ConnectionSettings, LevelThresholds
from trade_engine.pipeline.statistics import WindowStats, counters_consistent, rank_key

if TYPE_CHECKING:
    from trade_engine.pipeline.exchange_sync import ExchangeSync

LevelRecord = Union[MainPseudoPosition, RealPseudoPosition]
_REASONS = {reason.value for reason in TransitionReason}


# =============================================================================
# Transition function
# =============================================================================


@dataclass(frozen=True)
class Decision:
    """
    Результат decide_transition.

    status=None - записи уровня нет и создавать её не нужно.
    """
    status: Optional[str]
    reason: TransitionReason


def _active_status(level: PositionLevel) -> str:
    if level == PositionLevel.MAIN:
        return MainStatus.ACTIVE.value
    if level == PositionLevel.REAL:
        return RealStatus.VALIDATED.value
    raise ValueError(f"Level {level} has no promotion status")


def _paused_status(level: PositionLevel) -> str:
    return MainStatus.PAUSED.value if level == PositionLevel.MAIN else RealStatus.PAUSED.value


def compute_level_stats(
    stats: WindowStats,
    thresholds: LevelThresholds,
) -> WindowStats:
    """
    Проверить что окна хватает для решения.

    Raises:
        StatisticalInsufficiencyError: сделок меньше min_positions
    """
    if stats.total < thresholds.min_positions:
        raise StatisticalInsufficiencyError(stats.total, thresholds.min_positions)
    return stats


def threshold_failure(stats: WindowStats, thresholds: LevelThresholds) -> Optional[TransitionReason]:
    """Первый нарушенный порог или None."""
    if stats.profit_factor < thresholds.profit_factor_min:
        return TransitionReason.DEMOTED_PROFIT_FACTOR
    if stats.drawdown_time_hours > thresholds.drawdown_time_max_hours:
        return TransitionReason.DEMOTED_DRAWDOWN_TIME
    return None


def decide_transition(
    level: PositionLevel,
    status: Optional[Union[str, MainStatus, RealStatus]],
    stats: Optional[WindowStats],
    thresholds: LevelThresholds,
) -> Decision:
    """
    Решение для записи уровня level.

    Args:
        level: MAIN или REAL
        status: Текущий статус записи (None - записи ещё нет)
        stats: Trailing-window статистика
        thresholds: Пороги уровня

    Returns:
        Decision(new_status, reason)
    """
    level = PositionLevel(level)
    active = _active_status(level)
    paused = _paused_status(level)
    if isinstance(status, Enum):
        status = status.value

    try:
        if stats is None:
            raise StatisticalInsufficiencyError(0, thresholds.min_positions)
        compute_level_stats(stats, thresholds)
    except StatisticalInsufficiencyError:
        return Decision(status, TransitionReason.HOLD_INSUFFICIENT_TRADES)

    failure = threshold_failure(stats, thresholds)

    if status is None:
        if failure is not None:
            return Decision(None, TransitionReason.HOLD_BELOW_THRESHOLD)
        return Decision(active, TransitionReason.PROMOTED)

    if status == active:
        if failure is not None:
            return Decision(paused, failure)
        return Decision(active, TransitionReason.UNCHANGED)

    if failure is not None:
        return Decision(paused, TransitionReason.HOLD_BELOW_THRESHOLD)
    return Decision(active, TransitionReason.RESUMED)


# =============================================================================
# Engine
# =============================================================================


@dataclass
class TransitionRecord:
    """Одно применённое решение (для отчёта цикла)."""
    candidate_key: str
    symbol: str
    level: PositionLevel
    status: Optional[str]
    reason: TransitionReason


@dataclass
class CycleReport:
    """Итог одного promotion цикла."""
    connection_id: str
    evaluated: int = 0
    transitions: List[TransitionRecord] = field(default_factory=list)
    errors: int = 0

    def count(self, reason: TransitionReason, level: Optional[PositionLevel] = None) -> int:
        return sum(
            1 for t in self.transitions
            if t.reason == reason and (level is None or t.level == level)
        )

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "evaluated": self.evaluated,
            "promoted_main": self.count(TransitionReason.PROMOTED, PositionLevel.MAIN),
            "promoted_real": self.count(TransitionReason.PROMOTED, PositionLevel.REAL),
            "resumed": self.count(TransitionReason.RESUMED),
            "demoted": sum(1 for t in self.transitions if t.reason.is_demotion()),
            "cap_reached": self.count(TransitionReason.CAP_REACHED),
            "errors": self.errors,
        }


@dataclass
class _RealCandidate:
    base: BasePseudoPosition
    main: MainPseudoPosition
    real: Optional[RealPseudoPosition]
    stats: WindowStats
    decision: Decision

    @property
    def rank(self) -> Tuple[float, float, int]:
        return rank_key(self.stats.profit_factor, self.stats.drawdown_time_hours, self.stats.total)


class PromotionEngine:
    """Применяет decide_transition к Base/Main/Real записям connection."""

    def __init__(
        self,
        exchange_sync: Optional["ExchangeSync"] = None,
        events: EventEmitter = event_emitter,
    ):
        self.exchange_sync = exchange_sync
        self.events = events

    async def run_cycle(
        self,
        session: AsyncSession,
        connection_id: str,
        settings: ConnectionSettings,
        now: Optional[datetime] = None,
        candidate_keys: Optional[Iterable[str]] = None,
    ) -> CycleReport:
        """
        Один цикл promotion для connection.

        Args:
            candidate_keys: Ограничить цикл кандидатами (None = все Base
                записи symbols/types connection и уже продвинутые в Main)
        """
        now = now or utcnow()
        report = CycleReport(connection_id=connection_id)
        bases = await self._load_bases(session, connection_id, settings, candidate_keys)
        mains, reals = await self._load_levels(session, connection_id)
        promoted: Set[Tuple[str, int]] = set()
        real_candidates: List[_RealCandidate] = []

        for base in bases:
            report.evaluated += 1
            try:
                candidate = await self._evaluate_base(
                    session, base, mains, reals, settings, now, promoted, report
                )
                if candidate is not None:
                    real_candidates.append(candidate)
            except InvariantViolation as e:
                report.errors += 1
                real = reals.get(base.id)
                if real is not None:
                    await self.handle_violation(session, real, e, now)
            except Exception as e:
                report.errors += 1
                logger.error(
                    f"Promotion failed for {base.candidate_key[:12]} "
                    f"({base.symbol}/{base.indication_type}) on {connection_id} at {now.isoformat()}: {e}"
                )

        await self._fill_real_slots(session, connection_id, real_candidates, reals, settings, now, promoted, report)
        await session.flush()

        summary = report.to_dict()
        if report.transitions or report.errors:
            logger.info(f"Promotion cycle {connection_id}: {summary}")
        return report

    async def evaluate_candidate(
        self,
        session: AsyncSession,
        connection_id: str,
        settings: ConnectionSettings,
        candidate_key: str,
        now: Optional[datetime] = None,
    ) -> CycleReport:
        """Оценка одного кандидата (на каждом simulated close)."""
        return await self.run_cycle(session, connection_id, settings, now, [candidate_key])

    # =========================================================================
    # Per-candidate
    # =========================================================================

    async def _evaluate_base(
        self,
        session: AsyncSession,
        base: BasePseudoPosition,
        mains: Dict[int, MainPseudoPosition],
        reals: Dict[int, RealPseudoPosition],
        settings: ConnectionSettings,
        now: datetime,
        promoted: Set[Tuple[str, int]],
        report: CycleReport,
    ) -> Optional[_RealCandidate]:
        connection_id = report.connection_id
        thresholds = settings.promotion
        main = mains.get(base.id)
        real = reals.get(base.id)

        for record in (main, real):
            if record is not None and not counters_consistent(record):
                raise InvariantViolation(
                    f"Counters inconsistent: {record.winning_positions}+{record.losing_positions}"
                    f" != {record.total_positions}",
                    candidate_key=base.candidate_key,
                    level=PositionLevel.MAIN.value if record is main else PositionLevel.REAL.value,
                )

        # === BASE REJECTED → pause всё выше ===
        if base.status == BaseStatus.REJECTED.value:
            for level, record in ((PositionLevel.REAL, real), (PositionLevel.MAIN, main)):
                if record is not None and record.status == _active_status(level):
                    decision = Decision(_paused_status(level), TransitionReason.BASE_REJECTED)
                    await self._apply(session, level, base, record, decision, None, now, report)
            return None

        # === BASE → MAIN ===
        if main is None:
            stats = await window_stats(
                session, base.id, PositionLevel.BASE, limit=thresholds.main.evaluation_window, now=now
            )
            decision = decide_transition(PositionLevel.MAIN, None, stats, thresholds.main)
            if decision.status is None:
                return None
            main = await self._create_main(session, connection_id, base, now)
            mains[base.id] = main
            promoted.add((PositionLevel.MAIN.value, base.id))
            await self._record(session, PositionLevel.MAIN, base, main, decision, stats, now, report)
            return None

        main_stats = await window_stats(
            session, base.id, PositionLevel.MAIN, connection_id,
            limit=thresholds.main.evaluation_window, now=now,
        )
        if (PositionLevel.MAIN.value, base.id) not in promoted:
            decision = decide_transition(PositionLevel.MAIN, main.status, main_stats, thresholds.main)
            await self._apply(session, PositionLevel.MAIN, base, main, decision, main_stats, now, report)

        # === MAIN PAUSED → Real следом ===
        if main.status != MainStatus.ACTIVE.value:
            if real is not None and real.status == RealStatus.VALIDATED.value:
                reason = TransitionReason(main.status_reason) if main.status_reason in _REASONS \
                    else TransitionReason.HOLD_BELOW_THRESHOLD
                decision = Decision(RealStatus.PAUSED.value, reason)
                await self._apply(session, PositionLevel.REAL, base, real, decision, None, now, report)
            return None

        # === MAIN → REAL ===
        if real is None:
            stats = await window_stats(
                session, base.id, PositionLevel.MAIN, connection_id,
                limit=thresholds.real.evaluation_window, now=now,
            )
        else:
            stats = await window_stats(
                session, base.id, PositionLevel.REAL, connection_id,
                limit=thresholds.real.evaluation_window, now=now,
            )
            real.profit_factor = stats.profit_factor
            real.drawdown_time_hours = stats.drawdown_time_hours

        decision = decide_transition(
            PositionLevel.REAL, real.status if real is not None else None, stats, thresholds.real
        )
        if decision.reason in (TransitionReason.PROMOTED, TransitionReason.RESUMED):
            if real is not None and real.needs_review:
                return None
            return _RealCandidate(base=base, main=main, real=real, stats=stats, decision=decision)

        if real is not None and (PositionLevel.REAL.value, base.id) not in promoted:
            await self._apply(session, PositionLevel.REAL, base, real, decision, stats, now, report)
        return None

    async def _fill_real_slots(
        self,
        session: AsyncSession,
        connection_id: str,
        candidates: List[_RealCandidate],
        reals: Dict[int, RealPseudoPosition],
        settings: ConnectionSettings,
        now: datetime,
        promoted: Set[Tuple[str, int]],
        report: CycleReport,
    ) -> None:
        """Новые/возобновлённые Real по рангу в свободные слоты."""
        if not candidates:
            return

        cap = settings.promotion.target_positions
        per_symbol_cap = settings.promotion.max_concurrent_indications
        validated = [r for r in reals.values() if r.status == RealStatus.VALIDATED.value]
        used = len(validated)
        per_symbol: Dict[str, int] = {}
        for record in validated:
            per_symbol[record.symbol] = per_symbol.get(record.symbol, 0) + 1

        for candidate in sorted(candidates, key=lambda c: c.rank):
            base = candidate.base
            if used >= cap or per_symbol.get(base.symbol, 0) >= per_symbol_cap:
                decision = Decision(
                    candidate.real.status if candidate.real is not None else None,
                    TransitionReason.CAP_REACHED,
                )
                report.transitions.append(TransitionRecord(
                    base.candidate_key, base.symbol, PositionLevel.REAL, decision.status, decision.reason
                ))
                if candidate.real is not None:
                    candidate.real.status_reason = TransitionReason.CAP_REACHED.value
                logger.debug(f"Real slot unavailable for {base.candidate_key[:12]} on {connection_id}")
                continue

            if candidate.real is None:
                real = await self._create_real(session, connection_id, base, candidate.main, candidate.stats, now)
                reals[base.id] = real
                promoted.add((PositionLevel.REAL.value, base.id))
                await self._record(
                    session, PositionLevel.REAL, base, real, candidate.decision, candidate.stats, now, report
                )
            else:
                applied = await self._apply(
                    session, PositionLevel.REAL, base, candidate.real,
                    candidate.decision, candidate.stats, now, report,
                )
                if not applied:
                    continue
            used += 1
            per_symbol[base.symbol] = per_symbol.get(base.symbol, 0) + 1

    # =========================================================================
    # Writes
    # =========================================================================

    async def _apply(
        self,
        session: AsyncSession,
        level: PositionLevel,
        base: BasePseudoPosition,
        record: LevelRecord,
        decision: Decision,
        stats: Optional[WindowStats],
        now: datetime,
        report: CycleReport,
    ) -> bool:
        """Применить решение к существующей записи. False если запись новее."""
        if decision.status is None or decision.status == record.status:
            if decision.reason not in (TransitionReason.UNCHANGED, TransitionReason.HOLD_INSUFFICIENT_TRADES):
                record.status_reason = decision.reason.value
            return False

        if not await write_status(session, record, decision.status, decision.reason, now):
            logger.debug(
                f"Stale status write skipped for {level.value} {base.candidate_key[:12]} at {now.isoformat()}"
            )
            return False

        await self._record(session, level, base, record, decision, stats, now, report)

        if level == PositionLevel.REAL and decision.status == RealStatus.PAUSED.value:
            await self._close_exchange(session, record, now)
        return True

    async def _record(
        self,
        session: AsyncSession,
        level: PositionLevel,
        base: BasePseudoPosition,
        record: LevelRecord,
        decision: Decision,
        stats: Optional[WindowStats],
        now: datetime,
        report: CycleReport,
    ) -> None:
        report.transitions.append(TransitionRecord(
            base.candidate_key, base.symbol, level, decision.status, decision.reason
        ))

        if decision.reason == TransitionReason.PROMOTED:
            event_type = EventType.PROMOTED
        elif decision.reason == TransitionReason.RESUMED:
            event_type = EventType.RESUMED
        else:
            event_type = EventType.DEMOTED

        payload = {"status": decision.status, "reason": decision.reason, "record_id": record.id}
        if stats is not None:
            payload.update({
                "profit_factor": stats.profit_factor,
                "drawdown_time_hours": stats.drawdown_time_hours,
                "trades": stats.total,
                "win_rate": stats.win_rate,
            })

        await self.events.emit(
            session,
            event_type,
            f"{level.value.upper()} {base.symbol}/{base.indication_type}/{base.direction} "
            f"→ {decision.status} ({decision.reason.value})",
            connection_id=record.connection_id,
            symbol=base.symbol,
            candidate_key=base.candidate_key,
            level=level,
            payload=payload,
            now=now,
        )

    async def _create_main(
        self,
        session: AsyncSession,
        connection_id: str,
        base: BasePseudoPosition,
        now: datetime,
    ) -> MainPseudoPosition:
        main = MainPseudoPosition(
            connection_id=connection_id,
            base_id=base.id,
            symbol=base.symbol,
            indication_type=base.indication_type,
            status=MainStatus.ACTIVE.value,
            status_reason=TransitionReason.PROMOTED.value,
            status_changed_at=now,
            promoted_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(main)
        await session.flush()
        return main

    async def _create_real(
        self,
        session: AsyncSession,
        connection_id: str,
        base: BasePseudoPosition,
        main: MainPseudoPosition,
        stats: WindowStats,
        now: datetime,
    ) -> RealPseudoPosition:
        real = RealPseudoPosition(
            connection_id=connection_id,
            base_id=base.id,
            main_id=main.id,
            symbol=base.symbol,
            indication_type=base.indication_type,
            status=RealStatus.VALIDATED.value,
            status_reason=TransitionReason.PROMOTED.value,
            status_changed_at=now,
            promoted_at=now,
            profit_factor=stats.profit_factor,
            drawdown_time_hours=stats.drawdown_time_hours,
            created_at=now,
            updated_at=now,
        )
        session.add(real)
        await session.flush()
        return real

    async def _close_exchange(self, session: AsyncSession, real: RealPseudoPosition, now: datetime) -> None:
        if self.exchange_sync is None:
            return
        try:
            await self.exchange_sync.close_for_real(session, real, CloseReason.DEMOTED, now)
        except Exception as e:
            logger.error(f"Failed to close exchange positions of demoted real {real.id}: {e}")

    async def handle_violation(
        self,
        session: AsyncSession,
        real: RealPseudoPosition,
        violation: InvariantViolation,
        now: Optional[datetime] = None,
    ) -> None:
        """Force-pause Real, пометить для оператора, CRITICAL event."""
        await force_pause_real(session, real, violation, self.events, now)
        await self._close_exchange(session, real, now or utcnow())

    # =========================================================================
    # Loads
    # =========================================================================

    async def _load_bases(
        self,
        session: AsyncSession,
        connection_id: str,
        settings: ConnectionSettings,
        candidate_keys: Optional[Iterable[str]],
    ) -> List[BasePseudoPosition]:
        query = select(BasePseudoPosition)
        if candidate_keys is not None:
            keys = list(candidate_keys)
            if not keys:
                return []
            query = query.where(BasePseudoPosition.candidate_key.in_(keys))
        else:
            types = [t.value for t in settings.indications.enabled_types()]
            promoted = select(MainPseudoPosition.base_id).where(
                MainPseudoPosition.connection_id == connection_id
            )
            query = query.where(or_(
                and_(
                    BasePseudoPosition.symbol.in_(settings.symbols),
                    BasePseudoPosition.indication_type.in_(types),
                ),
                BasePseudoPosition.id.in_(promoted),
            ))
        result = await session.execute(query.order_by(BasePseudoPosition.id))
        return list(result.scalars().all())

    async def _load_levels(
        self,
        session: AsyncSession,
        connection_id: str,
    ) -> Tuple[Dict[int, MainPseudoPosition], Dict[int, RealPseudoPosition]]:
        mains = (await session.execute(
            select(MainPseudoPosition)
            .where(MainPseudoPosition.connection_id == connection_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        reals = (await session.execute(
            select(RealPseudoPosition)
            .where(RealPseudoPosition.connection_id == connection_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        return {m.base_id: m for m in mains}, {r.base_id: r for r in reals}


async def write_status(
    session: AsyncSession,
    record: LevelRecord,
    status: str,
    reason: TransitionReason,
    now: datetime,
) -> bool:
    """
    Last-writer-wins запись статуса Main/Real.

    UPDATE проходит только если status_changed_at записи не новее now.

    Returns:
        False если в базе уже более поздний переход
    """
    model: Type[LevelRecord] = type(record)
    result = await session.execute(
        update(model)
        .where(
            model.id == record.id,
            or_(model.status_changed_at.is_(None), model.status_changed_at <= now),
        )
        .values(status=status, status_reason=TransitionReason(reason).value, status_changed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    record.status = status
    record.status_reason = TransitionReason(reason).value
    record.status_changed_at = now
    record.touch(now)
    return True


async def force_pause_real(
    session: AsyncSession,
    real: RealPseudoPosition,
    violation: InvariantViolation,
    events: EventEmitter = event_emitter,
    now: Optional[datetime] = None,
) -> None:
    """InvariantViolation: Real → PAUSED, needs_review, CRITICAL event."""
    now = now or utcnow()
    real.status = RealStatus.PAUSED.value
    real.status_reason = TransitionReason.INVARIANT_VIOLATION.value
    real.needs_review = True
    if real.status_changed_at is None or now > real.status_changed_at:
        real.status_changed_at = now
    real.touch(now)

    await events.emit(
        session,
        EventType.INVARIANT_VIOLATION,
        f"Invariant violation on real {real.id} ({real.symbol}): {violation}",
        connection_id=real.connection_id,
        symbol=real.symbol,
        candidate_key=violation.candidate_key,
        level=violation.level or PositionLevel.REAL,
        payload={"real_id": real.id, **violation.context},
        now=now,
    )
