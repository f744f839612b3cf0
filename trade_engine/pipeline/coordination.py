"""
Preset Coordination Engine

Configuration sets (presets): именованный набор ranges одной индикации
на connection. Кандидаты set'а идут через тот же Base/Main/Real pipeline.

Lifecycle:
    IDLE → TESTING (replay истории, testing_progress 0-100) → LIVE
    LIVE → DISABLED (PF ниже порога на evaluate или stop_set)

Base статистика при stop/disable не трогается.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trade_engine.core.enums import (
    BaseStatus,
    ConfigurationSetStatus,
    Direction,
    EventType,
    ExchangePositionStatus,
    IndicationType,
    MainStatus,
    RealStatus,
    TradeSource,
)
from trade_engine.core.exceptions import PipelineError, RangeValidationError
from trade_engine.database.models import utcnow
from trade_engine.pipeline.aggregator import BaseAggregator
from trade_engine.pipeline.config import get_config
from trade_engine.pipeline.events import EventEmitter, event_emitter
from trade_engine.pipeline.expander import (
    MAX_CANDIDATES,
    ConfigurationCandidate,
    build_candidates,
    count_variations,
)
from trade_engine.pipeline.feed import MarketDataFeed, PriceBuffer, PriceTick
from trade_engine.pipeline.indications.detectors import build_detector
from trade_engine.pipeline.indications.fanout import CandidateRegistry, accepts
from trade_engine.pipeline.indications.state_machine import IndicationStateMachine
from trade_engine.pipeline.models import (
    ActiveExchangePosition,
    BasePseudoPosition,
    ConfigurationSet,
    ConfigurationSetMember,
    MainPseudoPosition,
    PseudoTrade,
    RealPseudoPosition,
)
from trade_engine.pipeline.schemas import LevelCounts, SetMetrics, SetStatusResponse
from trade_engine.pipeline.settings import ConnectionSettings, RangeModel, TrailingModel
from trade_engine.pipeline.simulator import PositionSimulator
from trade_engine.pipeline.statistics import compute_window_stats, profit_factor

ProgressCallback = Callable[[int], Any]


def set_owner(set_id: int) -> str:
    """Владелец кандидатов set'а в CandidateRegistry."""
    return f"set:{set_id}"


def parse_ranges(raw: Mapping[str, Any]) -> Dict[str, RangeModel]:
    """
    {"name": {"from", "to", "step"}} → RangeModel.

    Raises:
        RangeValidationError: битый range
    """
    ranges = {}
    for name, spec in (raw or {}).items():
        try:
            ranges[name] = RangeModel.model_validate(spec)
        except ValidationError as e:
            raise RangeValidationError(str(e.errors()[0]["msg"]), parameter=name) from e
    return ranges


def set_candidates(config_set: ConfigurationSet) -> List[ConfigurationCandidate]:
    """Развернуть set в кандидатов (все symbols × directions)."""
    indication = {n: m.to_spec(n) for n, m in parse_ranges(config_set.indication_ranges).items()}
    position = {n: m.to_spec(n) for n, m in parse_ranges(config_set.position_ranges).items()}
    trailing = TrailingModel.model_validate(config_set.trailing or {"enabled": False}).to_spec()
    indication_type = IndicationType(config_set.indication_type)

    candidates: List[ConfigurationCandidate] = []
    for symbol in config_set.symbols:
        candidates.extend(build_candidates(symbol, indication_type, indication, position, trailing))
    return candidates


# =============================================================================
# Replay
# =============================================================================


async def replay_history(
    session: AsyncSession,
    connection_id: str,
    symbol: str,
    indication_type: IndicationType,
    settings: ConnectionSettings,
    candidates: Sequence[ConfigurationCandidate],
    ticks: Sequence[PriceTick],
    aggregator: BaseAggregator,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """
    Прогнать исторические тики через detector → state machine →
    simulator → Base aggregator.

    Main/Real не затрагиваются (сделки с source=REPLAY).

    Returns:
        Количество закрытых сделок
    """
    if not ticks or not candidates:
        return 0

    type_settings = settings.indications.for_type(indication_type)
    detector = build_detector(indication_type, type_settings)
    machine = IndicationStateMachine(connection_id, symbol, indication_type, type_settings)
    simulator = PositionSimulator(
        connection_id,
        tp_unit_pct=settings.positions.tp_unit_pct,
        max_open_per_candidate=settings.base.max_open_per_candidate,
        source=TradeSource.REPLAY,
    )
    buffer_config = get_config().buffer
    buffer = PriceBuffer(buffer_config.max_samples, buffer_config.max_age_sec)
    interval = timedelta(milliseconds=type_settings.interval_ms)
    next_evaluation: Optional[datetime] = None
    step = max(1, get_config().replay.progress_step_pct)
    reported = 0
    closed = 0

    for index, tick in enumerate(ticks, start=1):
        if not buffer.append(tick):
            continue

        for trade in simulator.on_price(symbol, tick.price, tick.timestamp):
            await aggregator.record_close(session, trade, settings.base)
            closed += 1

        if next_evaluation is None or tick.timestamp >= next_evaluation:
            next_evaluation = tick.timestamp + interval
            result = machine.evaluate(detector.detect(buffer, tick.timestamp), tick.price, tick.timestamp)
            if result.signal is not None:
                for candidate in candidates:
                    if accepts(candidate, result.signal) and await aggregator.can_open(session, candidate):
                        simulator.open(candidate, tick.price, tick.timestamp)

        progress = index * 100 // len(ticks)
        if on_progress is not None and progress >= reported + step:
            reported = progress - progress % step
            await on_progress(reported)

    discarded = simulator.discard()
    if discarded:
        logger.debug(f"Replay {symbol}/{indication_type.value}: {discarded} positions left open")
    return closed


# =============================================================================
# Engine
# =============================================================================


class PresetCoordinationEngine:
    """Configuration sets всех connections процесса."""

    def __init__(
        self,
        aggregator: Optional[BaseAggregator] = None,
        feed: Optional[MarketDataFeed] = None,
        events: EventEmitter = event_emitter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.aggregator = aggregator or BaseAggregator()
        self.feed = feed
        self.events = events
        self.clock = clock
        self._registries: Dict[str, CandidateRegistry] = {}

    def attach(self, connection_id: str, registry: CandidateRegistry) -> None:
        """Подключить registry запущенного connection."""
        self._registries[connection_id] = registry

    def detach(self, connection_id: str) -> None:
        self._registries.pop(connection_id, None)

    async def restore_sets(self, session: AsyncSession, connection_id: str) -> int:
        """Перерегистрировать кандидатов включённых sets (после рестарта connection)."""
        registry = self._registries.get(connection_id)
        if registry is None:
            return 0
        sets = (await session.execute(
            select(ConfigurationSet).where(
                ConfigurationSet.connection_id == connection_id,
                ConfigurationSet.is_enabled.is_(True),
            )
        )).scalars().all()
        for config_set in sets:
            registry.register(set_candidates(config_set), set_owner(config_set.id))
        return len(sets)

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_set(
        self,
        session: AsyncSession,
        connection_id: str,
        name: str,
        indication_type: IndicationType,
        symbols: Sequence[str],
        indication_ranges: Mapping[str, Any],
        position_ranges: Optional[Mapping[str, Any]] = None,
        trailing: Optional[Mapping[str, Any]] = None,
        profit_factor_min: float = 1.0,
        drawdown_time_max_hours: float = 12.0,
        min_positions: int = 25,
        evaluation_window: int = 50,
        evaluation_interval_hours: int = 1,
    ) -> ConfigurationSet:
        """
        Создать set (ranges валидируются сразу).

        Raises:
            RangeValidationError: битые ranges или слишком большое пространство
        """
        indication = parse_ranges(indication_ranges)
        position = parse_ranges(position_ranges or {})
        trailing_model = TrailingModel.model_validate(trailing or {"enabled": False})
        symbols = [s.strip().upper() for s in symbols if s and s.strip()]
        if not symbols:
            raise RangeValidationError("at least one symbol is required", parameter="symbols")

        total = count_variations(
            {**{n: m.to_spec(n) for n, m in indication.items()},
             **{n: m.to_spec(n) for n, m in position.items()}},
            trailing_model.to_spec(),
            directions=len(Direction),
        ) * len(symbols)
        if total > MAX_CANDIDATES:
            raise RangeValidationError(f"expansion produces {total} candidates (limit {MAX_CANDIDATES})")

        config_set = ConfigurationSet(
            connection_id=connection_id,
            name=name,
            indication_type=IndicationType(indication_type).value,
            symbols=symbols,
            indication_ranges={n: m.model_dump(by_alias=True) for n, m in indication.items()},
            position_ranges={n: m.model_dump(by_alias=True) for n, m in position.items()},
            trailing=trailing_model.model_dump(),
            profit_factor_min=profit_factor_min,
            drawdown_time_max_hours=drawdown_time_max_hours,
            min_positions=min_positions,
            evaluation_window=evaluation_window,
            evaluation_interval_hours=evaluation_interval_hours,
            status=ConfigurationSetStatus.IDLE.value,
            is_enabled=False,
            candidates_count=total,
        )
        session.add(config_set)
        await session.flush()
        logger.info(f"Configuration set '{name}' created for {connection_id}: {total} candidates")
        return config_set

    async def get_set(self, session: AsyncSession, set_id: int) -> ConfigurationSet:
        config_set = await session.get(ConfigurationSet, set_id)
        if config_set is None:
            raise PipelineError(f"Configuration set {set_id} not found")
        return config_set

    # =========================================================================
    # Start / stop
    # =========================================================================

    async def start_set(
        self,
        session: AsyncSession,
        set_id: int,
        settings: ConnectionSettings,
        now: Optional[datetime] = None,
    ) -> ConfigurationSet:
        """
        Включить set: members → registry → replay истории → LIVE.

        testing_progress обновляется по ходу replay.
        """
        now = now or self.clock()
        config_set = await self.get_set(session, set_id)
        candidates = set_candidates(config_set)

        await self._store_members(session, config_set, candidates)
        config_set.status = ConfigurationSetStatus.TESTING.value
        config_set.is_enabled = True
        config_set.disabled_reason = None
        config_set.testing_progress = 0
        config_set.candidates_count = len(candidates)
        config_set.touch(now)

        registry = self._registries.get(config_set.connection_id)
        if registry is not None:
            registry.register(candidates, set_owner(config_set.id))

        await self.events.emit(
            session,
            EventType.SET_STARTED,
            f"Configuration set '{config_set.name}' started: {len(candidates)} candidates",
            connection_id=config_set.connection_id,
            payload={"set_id": config_set.id, "candidates": len(candidates)},
            now=now,
        )

        closed = await self._replay(session, config_set, candidates, settings, now)

        config_set.status = ConfigurationSetStatus.LIVE.value
        config_set.testing_progress = 100
        config_set.touch(now)
        await session.flush()
        logger.info(f"Configuration set '{config_set.name}' live after replay ({closed} trades)")
        return config_set

    async def _replay(
        self,
        session: AsyncSession,
        config_set: ConfigurationSet,
        candidates: List[ConfigurationCandidate],
        settings: ConnectionSettings,
        now: datetime,
    ) -> int:
        if self.feed is None:
            return 0

        since = now - timedelta(hours=get_config().replay.history_hours)
        indication_type = IndicationType(config_set.indication_type)
        symbols = list(config_set.symbols)
        closed = 0

        for position, symbol in enumerate(symbols):
            ticks = await self.feed.history(config_set.connection_id, symbol, since, now)
            symbol_candidates = [c for c in candidates if c.symbol == symbol]

            async def on_progress(pct: int, _position: int = position) -> None:
                overall = (_position * 100 + pct) // len(symbols)
                config_set.testing_progress = min(overall, 99)
                await self.events.emit(
                    session,
                    EventType.SET_PROGRESS,
                    f"Configuration set '{config_set.name}' testing {config_set.testing_progress}%",
                    connection_id=config_set.connection_id,
                    symbol=symbol,
                    payload={"set_id": config_set.id, "progress": config_set.testing_progress},
                    now=now,
                )
                await session.flush()

            closed += await replay_history(
                session,
                config_set.connection_id,
                symbol,
                indication_type,
                settings,
                symbol_candidates,
                ticks,
                self.aggregator,
                on_progress,
            )
        return closed

    async def stop_set(
        self,
        session: AsyncSession,
        set_id: int,
        reason: str = "stopped",
        now: Optional[datetime] = None,
    ) -> ConfigurationSet:
        """Выключить set. Base записи кандидатов не трогаются."""
        now = now or self.clock()
        config_set = await self.get_set(session, set_id)
        await self._disable(session, config_set, reason, EventType.SET_STOPPED, now)
        return config_set

    async def _disable(
        self,
        session: AsyncSession,
        config_set: ConfigurationSet,
        reason: str,
        event_type: EventType,
        now: datetime,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> None:
        config_set.is_enabled = False
        config_set.status = ConfigurationSetStatus.DISABLED.value
        config_set.disabled_reason = reason
        config_set.touch(now)

        registry = self._registries.get(config_set.connection_id)
        removed = registry.unregister(set_owner(config_set.id)) if registry is not None else 0

        await self.events.emit(
            session,
            event_type,
            f"Configuration set '{config_set.name}' disabled: {reason}",
            connection_id=config_set.connection_id,
            payload={"set_id": config_set.id, "reason": reason, "unregistered": removed, **(metrics or {})},
            now=now,
        )
        await session.flush()

    async def _store_members(
        self,
        session: AsyncSession,
        config_set: ConfigurationSet,
        candidates: Sequence[ConfigurationCandidate],
    ) -> int:
        existing = set((await session.execute(
            select(ConfigurationSetMember.candidate_key).where(
                ConfigurationSetMember.set_id == config_set.id
            )
        )).scalars().all())
        added = 0
        for candidate in candidates:
            if candidate.key in existing:
                continue
            session.add(ConfigurationSetMember(
                set_id=config_set.id,
                candidate_key=candidate.key,
                symbol=candidate.symbol,
                direction=candidate.direction.value,
                parameters=candidate.as_dict(),
            ))
            added += 1
        await session.flush()
        return added

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate_set(
        self,
        session: AsyncSession,
        set_id: int,
        now: Optional[datetime] = None,
    ) -> SetMetrics:
        """
        Пересчитать метрики set'а и выключить его если PF ниже порога.

        Метрики: PF последних evaluation_window сделок, PF 25/50,
        позиций за 24h.
        """
        now = now or self.clock()
        config_set = await self.get_set(session, set_id)
        metrics = await self.compute_metrics(session, config_set, now)

        config_set.last_metrics = metrics.model_dump()
        config_set.last_evaluated_at = now
        config_set.touch(now)

        if config_set.is_enabled and metrics.trades >= config_set.min_positions:
            reason = None
            if metrics.profit_factor < config_set.profit_factor_min:
                reason = f"profit_factor {metrics.profit_factor:.2f} < {config_set.profit_factor_min}"
            elif metrics.drawdown_time_hours > config_set.drawdown_time_max_hours:
                reason = (
                    f"drawdown_time {metrics.drawdown_time_hours:.1f}h "
                    f"> {config_set.drawdown_time_max_hours}h"
                )
            if reason is not None:
                await self._disable(
                    session, config_set, reason, EventType.SET_DISABLED, now, metrics.model_dump()
                )

        await session.flush()
        return metrics

    async def evaluate_all(
        self,
        session: AsyncSession,
        connection_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[int, SetMetrics]:
        """Оценить все включённые sets (у которых подошёл evaluation_interval)."""
        now = now or self.clock()
        query = select(ConfigurationSet).where(ConfigurationSet.is_enabled.is_(True))
        if connection_id is not None:
            query = query.where(ConfigurationSet.connection_id == connection_id)
        sets = (await session.execute(query.order_by(ConfigurationSet.id))).scalars().all()

        results: Dict[int, SetMetrics] = {}
        for config_set in sets:
            if config_set.last_evaluated_at is not None:
                due = config_set.last_evaluated_at + timedelta(hours=config_set.evaluation_interval_hours)
                if now < due:
                    continue
            try:
                results[config_set.id] = await self.evaluate_set(session, config_set.id, now)
            except Exception as e:
                logger.error(f"Set evaluation failed for {config_set.id} ('{config_set.name}') at {now.isoformat()}: {e}")
        return results

    async def compute_metrics(
        self,
        session: AsyncSession,
        config_set: ConfigurationSet,
        now: datetime,
    ) -> SetMetrics:
        base_ids = await self._member_base_ids(session, config_set.id)
        if not base_ids:
            return SetMetrics()

        window = max(config_set.evaluation_window, 50)
        result = await session.execute(
            select(PseudoTrade.pnl_pct, PseudoTrade.closed_at)
            .where(PseudoTrade.base_id.in_(base_ids))
            .order_by(PseudoTrade.closed_at.desc(), PseudoTrade.id.desc())
            .limit(window)
        )
        rows = list(reversed(result.all()))
        recent = rows[-config_set.evaluation_window:]
        stats = compute_window_stats([r[0] for r in recent], [r[1] for r in recent], now)

        def _pf(last_n: int) -> float:
            pnls = [r[0] for r in rows[-last_n:]]
            return profit_factor(sum(p for p in pnls if p > 0), sum(p for p in pnls if p <= 0))

        positions_24h = await session.scalar(
            select(func.count()).select_from(PseudoTrade).where(
                PseudoTrade.base_id.in_(base_ids),
                PseudoTrade.closed_at >= now - timedelta(hours=24),
            )
        ) or 0

        return SetMetrics(
            trades=stats.total,
            profit_factor=stats.profit_factor,
            profit_factor_last_25=_pf(25),
            profit_factor_last_50=_pf(50),
            win_rate=stats.win_rate,
            drawdown_time_hours=stats.drawdown_time_hours,
            positions_per_24h=positions_24h,
        )

    async def _member_base_ids(self, session: AsyncSession, set_id: int) -> List[int]:
        result = await session.execute(
            select(BasePseudoPosition.id)
            .join(
                ConfigurationSetMember,
                ConfigurationSetMember.candidate_key == BasePseudoPosition.candidate_key,
            )
            .where(ConfigurationSetMember.set_id == set_id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self, session: AsyncSession, set_id: int) -> SetStatusResponse:
        """Прогресс, флаг, причина, счётчики по уровням, метрики."""
        config_set = await self.get_set(session, set_id)
        base_ids = await self._member_base_ids(session, set_id)
        counts = await level_counts(session, config_set.connection_id, base_ids)
        return SetStatusResponse(
            set_id=config_set.id,
            connection_id=config_set.connection_id,
            name=config_set.name,
            indication_type=config_set.indication_type,
            symbols=list(config_set.symbols),
            status=config_set.status,
            is_enabled=config_set.is_enabled,
            disabled_reason=config_set.disabled_reason,
            testing_progress=config_set.testing_progress,
            candidates_count=config_set.candidates_count,
            counts=counts,
            metrics=SetMetrics(**config_set.last_metrics) if config_set.last_metrics else None,
            last_evaluated_at=config_set.last_evaluated_at,
        )


async def level_counts(
    session: AsyncSession,
    connection_id: Optional[str],
    base_ids: Optional[Sequence[int]] = None,
) -> LevelCounts:
    """Количество записей по уровням (опционально для подмножества Base)."""
    if base_ids is not None and not base_ids:
        return LevelCounts()

    def _scoped(query, column):
        return query.where(column.in_(base_ids)) if base_ids is not None else query

    base_rows = (await session.execute(
        _scoped(
            select(BasePseudoPosition.status, func.count()).group_by(BasePseudoPosition.status),
            BasePseudoPosition.id,
        )
    )).all()
    by_status = {status: count for status, count in base_rows}

    main_query = select(func.count()).select_from(MainPseudoPosition).where(
        MainPseudoPosition.status == MainStatus.ACTIVE.value
    )
    real_query = select(func.count()).select_from(RealPseudoPosition).where(
        RealPseudoPosition.status == RealStatus.VALIDATED.value
    )
    exchange_query = (
        select(func.count())
        .select_from(ActiveExchangePosition)
        .join(RealPseudoPosition, RealPseudoPosition.id == ActiveExchangePosition.real_id)
        .where(ActiveExchangePosition.status.in_([s.value for s in ExchangePositionStatus.open_states()]))
    )
    if connection_id is not None:
        main_query = main_query.where(MainPseudoPosition.connection_id == connection_id)
        real_query = real_query.where(RealPseudoPosition.connection_id == connection_id)
        exchange_query = exchange_query.where(ActiveExchangePosition.connection_id == connection_id)

    return LevelCounts(
        base=sum(by_status.values()),
        base_active=by_status.get(BaseStatus.ACTIVE.value, 0),
        base_rejected=by_status.get(BaseStatus.REJECTED.value, 0),
        main=await session.scalar(_scoped(main_query, MainPseudoPosition.base_id)) or 0,
        real=await session.scalar(_scoped(real_query, RealPseudoPosition.base_id)) or 0,
        exchange_open=await session.scalar(_scoped(exchange_query, RealPseudoPosition.base_id)) or 0,
    )
