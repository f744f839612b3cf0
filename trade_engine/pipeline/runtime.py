"""
Connection Runtime

Проводка одного connection: feed → buffers → gate → indications →
simulator → Base → Main/Real → Exchange.

Все asyncio задачи (ingest и gate frames на symbol, таймеры индикаций)
принадлежат runtime и отменяются в stop().

Usage:
    runtime = ConnectionRuntime(settings, feed, connector, session_maker)
    await runtime.start()
    ...
    await runtime.stop()
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trade_engine.core.enums import CloseReason, EventType, IndicationType, RealStatus
from trade_engine.core.exceptions import InvariantViolation
from trade_engine.database.models import utcnow
from trade_engine.pipeline.activity_gate import MarketActivityGate, load_gate, save_gate_state
from trade_engine.pipeline.aggregator import BaseAggregator
from trade_engine.pipeline.config import get_config
from trade_engine.pipeline.connector import ExchangeConnector
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.events import EventEmitter, event_emitter
from trade_engine.pipeline.exchange_sync import ExchangeSync, ReconcileReport
from trade_engine.pipeline.expander import ConfigurationCandidate, build_candidates
from trade_engine.pipeline.feed import MarketDataFeed, PriceBuffer, PriceTick
from trade_engine.pipeline.indications import CandidateRegistry, IndicationEngine, Signal
from trade_engine.pipeline.models import BasePseudoPosition, RealPseudoPosition
from trade_engine.pipeline.promotion import CycleReport, PromotionEngine
from trade_engine.pipeline.settings import ConnectionSettings
from trade_engine.pipeline.simulator import PositionSimulator

SETTINGS_OWNER = "settings"


def settings_candidates(settings: ConnectionSettings) -> List[ConfigurationCandidate]:
    """Кандидаты connection settings: symbols × включённые типы × directions."""
    position_ranges = settings.positions.range_specs()
    trailing = settings.positions.trailing.to_spec()
    candidates: List[ConfigurationCandidate] = []
    for symbol in settings.symbols:
        for indication_type in settings.indications.enabled_types():
            type_settings = settings.indications.for_type(indication_type)
            candidates.extend(build_candidates(
                symbol, indication_type, type_settings.range_specs(), position_ranges, trailing
            ))
    return candidates


class ConnectionRuntime:
    """Pipeline одного exchange connection."""

    def __init__(
        self,
        settings: ConnectionSettings,
        feed: MarketDataFeed,
        connector: ExchangeConnector,
        session_maker: async_sessionmaker[AsyncSession],
        aggregator: Optional[BaseAggregator] = None,
        coordination: Optional[PresetCoordinationEngine] = None,
        events: EventEmitter = event_emitter,
        clock: Callable[[], datetime] = utcnow,
        exchange_retry_wait: Any = None,
    ):
        self.connection_id = settings.connection_id
        self.settings = settings
        self.feed = feed
        self.session_maker = session_maker
        self.aggregator = aggregator or BaseAggregator(events=events)
        self.coordination = coordination
        self.events = events
        self.clock = clock

        self.registry = CandidateRegistry()
        self.buffers: Dict[str, PriceBuffer] = {}
        self.gates: Dict[str, MarketActivityGate] = {}
        for symbol in settings.symbols:
            self._add_symbol(symbol)

        self.simulator = PositionSimulator(
            self.connection_id,
            tp_unit_pct=settings.positions.tp_unit_pct,
            max_open_per_candidate=settings.base.max_open_per_candidate,
        )
        self.exchange = ExchangeSync(
            self.connection_id,
            connector,
            settings.execution,
            events=events,
            locks=self.aggregator.locks,
            retry_wait=exchange_retry_wait,
            clock=clock,
        )
        self.promotion = PromotionEngine(exchange_sync=self.exchange, events=events)
        self.indications = IndicationEngine(
            self.connection_id,
            settings,
            self.buffers,
            self.gates,
            on_signal=self.handle_signal,
            session_maker=session_maker,
            events=events,
            clock=clock,
        )
        self.registry.on_register(self._on_register)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _add_symbol(self, symbol: str) -> None:
        buffer_config = get_config().buffer
        self.buffers[symbol] = PriceBuffer(buffer_config.max_samples, buffer_config.max_age_sec)
        self.gates[symbol] = MarketActivityGate(self.connection_id, symbol, self.settings.activity)

    def _on_register(self, symbol: str, indication_type: IndicationType) -> None:
        if symbol not in self.buffers:
            self._add_symbol(symbol)
            if self._running:
                self._spawn_symbol(symbol)
        self.indications.ensure(symbol, indication_type)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Восстановить состояние из БД и запустить задачи."""
        if self._running:
            return

        added = self.registry.register(settings_candidates(self.settings), SETTINGS_OWNER)
        now = self.clock()

        async with self.session_maker() as session:
            restored_sets = 0
            if self.coordination is not None:
                self.coordination.attach(self.connection_id, self.registry)
                restored_sets = await self.coordination.restore_sets(session, self.connection_id)

            for symbol in list(self.gates):
                self.gates[symbol] = await load_gate(
                    session, self.connection_id, symbol, self.settings.activity
                )
            restored = await self.indications.restore(session)

            await self.events.emit(
                session,
                EventType.CONNECTION_STARTED,
                f"Connection {self.connection_id} started: {added} candidates, {len(self.buffers)} symbols",
                connection_id=self.connection_id,
                payload={"candidates": len(self.registry), "sets": restored_sets, "restored_machines": restored},
                now=now,
            )
            await session.commit()

        self._running = True
        for symbol in list(self.buffers):
            self._spawn_symbol(symbol)
        self.indications.start()
        logger.info(f"Connection runtime {self.connection_id} started ({len(self.registry)} candidates)")

    async def stop(self) -> None:
        """
        Отменить все задачи, закрыть live позиции connection.

        Base статистика не трогается; открытые симулированные позиции
        отбрасываются.
        """
        if not self._running:
            return
        self._running = False

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.indications.stop()

        discarded = self.simulator.discard()
        now = self.clock()
        async with self.session_maker() as session:
            closed = 0
            if self.settings.execution.enabled:
                closed = await self.exchange.close_all(session, CloseReason.CONNECTION_STOPPED, now)
            await self.events.emit(
                session,
                EventType.CONNECTION_STOPPED,
                f"Connection {self.connection_id} stopped: {closed} exchange positions closed",
                connection_id=self.connection_id,
                payload={"exchange_closed": closed, "simulated_discarded": discarded},
                now=now,
            )
            await session.commit()

        if self.coordination is not None:
            self.coordination.detach(self.connection_id)
        self.registry.unregister(SETTINGS_OWNER)
        logger.info(f"Connection runtime {self.connection_id} stopped")

    def _spawn_symbol(self, symbol: str) -> None:
        for name, factory in (("ingest", self._ingest), ("gate", self._gate_frames)):
            key = f"{name}:{symbol}"
            task = self._tasks.get(key)
            if task is not None and not task.done():
                continue
            self._tasks[key] = asyncio.create_task(
                factory(symbol), name=f"{name}:{self.connection_id}:{symbol}"
            )

    async def _ingest(self, symbol: str) -> None:
        async for tick in self.feed.subscribe(self.connection_id, symbol):
            try:
                await self.handle_tick(tick)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Tick handling failed for {self.connection_id}/{symbol} at {tick.timestamp}: {e}")

    async def _gate_frames(self, symbol: str) -> None:
        interval = self.settings.activity.calculation_frame_sec
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evaluate_gate(symbol)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Activity gate failed for {self.connection_id}/{symbol}: {e}")

    # =========================================================================
    # Data path
    # =========================================================================

    async def handle_tick(self, tick: PriceTick) -> None:
        """
        Тик: буфер → выходы симулированных позиций → Base/Main/Real →
        промоушен закрывшихся кандидатов → live позиции symbol.
        """
        buffer = self.buffers.get(tick.symbol)
        if buffer is None or not buffer.append(tick):
            return

        closed = self.simulator.on_price(tick.symbol, tick.price, tick.timestamp)
        if not closed and not self.settings.execution.enabled:
            return

        async with self.session_maker() as session:
            for trade in closed:
                await self.aggregator.record_close(session, trade, self.settings.base)
                await self.promotion.evaluate_candidate(
                    session, self.connection_id, self.settings, trade.candidate.key, tick.timestamp
                )
            if self.settings.execution.enabled:
                await self.exchange.on_price(session, tick.symbol, tick.price, tick.timestamp)
            await session.commit()

    async def handle_signal(self, signal: Signal) -> None:
        """
        Validated сигнал: симулированные позиции для подходящих кандидатов,
        live позиции для их VALIDATED Real записей.
        """
        candidates = self.registry.matching(signal)
        if not candidates:
            return

        async with self.session_maker() as session:
            opened = 0
            for candidate in candidates:
                if not await self.aggregator.can_open(session, candidate):
                    continue
                if self.simulator.open(candidate, signal.price, signal.at) is not None:
                    opened += 1

            live = 0
            if self.settings.execution.enabled:
                live = await self._open_live(session, signal, candidates)
            await session.commit()

        if opened or live:
            logger.debug(
                f"Signal {signal.symbol}/{signal.indication_type.value}/{signal.direction.value}: "
                f"{opened} simulated, {live} live"
            )

    async def _open_live(
        self,
        session: AsyncSession,
        signal: Signal,
        candidates: List[ConfigurationCandidate],
    ) -> int:
        by_key = {c.key: c for c in candidates}
        result = await session.execute(
            select(RealPseudoPosition, BasePseudoPosition.candidate_key)
            .join(BasePseudoPosition, RealPseudoPosition.base_id == BasePseudoPosition.id)
            .where(
                RealPseudoPosition.connection_id == self.connection_id,
                RealPseudoPosition.status == RealStatus.VALIDATED.value,
                RealPseudoPosition.needs_review.is_(False),
                BasePseudoPosition.candidate_key.in_(list(by_key)),
            )
        )
        opened = 0
        for real, key in result.all():
            try:
                position = await self.exchange.open_for_real(
                    session, real, by_key[key], signal.price, signal.at,
                    tp_unit_pct=self.settings.positions.tp_unit_pct,
                )
            except InvariantViolation as e:
                logger.error(f"Live open blocked for Real {real.id} ({key[:12]}): {e}")
                continue
            if position is not None:
                opened += 1
        return opened

    async def evaluate_gate(self, symbol: str, now: Optional[datetime] = None) -> None:
        """Один frame gate: activity за calculation_range_sec."""
        gate = self.gates.get(symbol)
        buffer = self.buffers.get(symbol)
        if gate is None or buffer is None:
            return
        now = now or self.clock()
        transition = gate.update(buffer.window(self.settings.activity.calculation_range_sec, now), now)
        if transition is None:
            return

        async with self.session_maker() as session:
            await save_gate_state(session, gate)
            await self.events.emit(
                session,
                EventType.ACTIVITY_CHANGED,
                f"{symbol}: {transition.from_state.value} → {transition.to_state.value}",
                connection_id=self.connection_id,
                symbol=symbol,
                payload={
                    "from": transition.from_state.value,
                    "to": transition.to_state.value,
                    "activity_pct": transition.activity_pct,
                },
                now=now,
            )
            await session.commit()

    # =========================================================================
    # Periodic
    # =========================================================================

    async def run_promotion(self, now: Optional[datetime] = None) -> CycleReport:
        """Полный цикл promotion connection."""
        async with self.session_maker() as session:
            report = await self.promotion.run_cycle(session, self.connection_id, self.settings, now or self.clock())
            await session.commit()
        return report

    async def reconcile(self, now: Optional[datetime] = None) -> ReconcileReport:
        """Sync poll: сверка с биржей и проверка инвариантов."""
        now = now or self.clock()
        async with self.session_maker() as session:
            report = await self.exchange.reconcile(session, now)
            violations = await self.exchange.check_invariants(session, now)
            await session.commit()
        if violations:
            logger.error(f"Sync {self.connection_id}: {violations} invariant violations")
        return report
