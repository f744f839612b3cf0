"""
Indication Engine

Все state machines одного connection. Каждая (symbol, type) пара
крутится в своей asyncio задаче со своим interval_ms; задачи
принадлежат engine и отменяются в stop().
"""
import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trade_engine.core.enums import EventType, IndicationPhase, IndicationType
from trade_engine.database.models import utcnow
from trade_engine.pipeline.activity_gate import MarketActivityGate
from trade_engine.pipeline.events import EventEmitter, event_emitter
from trade_engine.pipeline.feed import PriceBuffer
from trade_engine.pipeline.indications.detectors import Detector, build_detector
from trade_engine.pipeline.indications.state_machine import (
    EvaluationResult,
    IndicationStateMachine,
    Signal,
)
from trade_engine.pipeline.models import IndicationStateRecord
from trade_engine.pipeline.settings import ConnectionSettings

SignalHandler = Callable[[Signal], Awaitable[None]]
MachineKey = Tuple[str, IndicationType]


class IndicationEngine:
    """Набор state machines для одного connection."""

    def __init__(
        self,
        connection_id: str,
        settings: ConnectionSettings,
        buffers: Mapping[str, PriceBuffer],
        gates: Mapping[str, MarketActivityGate],
        on_signal: SignalHandler,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        events: EventEmitter = event_emitter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.connection_id = connection_id
        self.settings = settings
        self.buffers = buffers
        self.gates = gates
        self.on_signal = on_signal
        self.session_maker = session_maker
        self.events = events
        self.clock = clock

        self.machines: Dict[MachineKey, IndicationStateMachine] = {}
        self.detectors: Dict[MachineKey, Detector] = {}
        self._tasks: Dict[MachineKey, asyncio.Task] = {}
        self._started = False

        for symbol in settings.symbols:
            for indication_type in settings.indications.enabled_types():
                self.ensure(symbol, indication_type)

    def ensure(self, symbol: str, indication_type: IndicationType) -> bool:
        """
        Машина для (symbol, type) если её ещё нет.

        Тип может быть выключен в settings, но нужен configuration set.
        Returns: True если машина создана
        """
        key = (symbol, IndicationType(indication_type))
        if key in self.machines:
            return False
        type_settings = self.settings.indications.for_type(key[1])
        self.machines[key] = IndicationStateMachine(self.connection_id, symbol, key[1], type_settings)
        self.detectors[key] = build_detector(key[1], type_settings)
        if self._started:
            self._spawn(key)
        return True

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def restore(self, session: AsyncSession) -> int:
        """Восстановить фазы (COOLDOWN и last_validated_at) из БД."""
        result = await session.execute(
            select(IndicationStateRecord).where(
                IndicationStateRecord.connection_id == self.connection_id
            )
        )
        restored = 0
        for record in result.scalars():
            key = (record.symbol, IndicationType(record.indication_type))
            machine = self.machines.get(key)
            if machine is None:
                continue
            self.machines[key] = IndicationStateMachine(
                self.connection_id,
                record.symbol,
                key[1],
                machine.settings,
                phase=IndicationPhase(record.phase),
                cooldown_until=record.cooldown_until,
                last_validated_at=record.last_validated_at,
            )
            self.machines[key].signals_count = record.signals_count
            restored += 1
        return restored

    async def evaluate(
        self,
        symbol: str,
        indication_type: IndicationType,
        now: Optional[datetime] = None,
    ) -> Optional[Signal]:
        """
        Один шаг (symbol, type).

        Пропускается если gate на PAUSED или цен ещё нет.
        """
        key = (symbol, IndicationType(indication_type))
        machine = self.machines.get(key)
        if machine is None:
            return None

        gate = self.gates.get(symbol)
        if gate is not None and not gate.allows_evaluation:
            return None

        buffer = self.buffers.get(symbol)
        if buffer is None or buffer.last is None:
            return None

        now = now or self.clock()
        _, price = buffer.last
        detection = self.detectors[key].detect(buffer, now)
        result = machine.evaluate(detection, price, now)

        if result.changes:
            await self._persist(machine, result)
        if result.signal is not None:
            await self.on_signal(result.signal)
        return result.signal

    async def evaluate_all(self, now: Optional[datetime] = None) -> List[Signal]:
        """Один шаг всех машин (replay и тесты)."""
        signals = []
        for symbol, indication_type in list(self.machines):
            signal = await self.evaluate(symbol, indication_type, now)
            if signal is not None:
                signals.append(signal)
        return signals

    # =========================================================================
    # Timers
    # =========================================================================

    def start(self) -> None:
        """Запустить по задаче на каждую (symbol, type)."""
        self._started = True
        for key in list(self.machines):
            self._spawn(key)
        logger.info(f"Indication engine started for {self.connection_id}: {len(self._tasks)} timers")

    async def stop(self) -> None:
        """Отменить все таймеры и дождаться завершения."""
        self._started = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Indication engine stopped for {self.connection_id}")

    def _spawn(self, key: MachineKey) -> None:
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return
        self._tasks[key] = asyncio.create_task(
            self._run(*key), name=f"indication:{self.connection_id}:{key[0]}:{key[1].value}"
        )

    async def _run(self, symbol: str, indication_type: IndicationType) -> None:
        interval = self.machines[(symbol, indication_type)].settings.interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await self.evaluate(symbol, indication_type)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Indication {indication_type.value} failed for "
                    f"{self.connection_id}/{symbol}: {e}"
                )

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _persist(self, machine: IndicationStateMachine, result: EvaluationResult) -> None:
        if self.session_maker is None:
            return
        async with self.session_maker() as session:
            await save_machine_state(session, machine)
            if result.signal is not None:
                signal = result.signal
                await self.events.emit(
                    session,
                    EventType.SIGNAL_VALIDATED,
                    f"{signal.indication_type.value} {signal.direction.value} signal "
                    f"on {signal.symbol} @ {signal.price}",
                    connection_id=self.connection_id,
                    symbol=signal.symbol,
                    payload={"metrics": signal.metrics, "indication_type": signal.indication_type},
                    now=signal.at,
                )
            await session.commit()


async def save_machine_state(
    session: AsyncSession,
    machine: IndicationStateMachine,
) -> IndicationStateRecord:
    """Upsert IndicationStateRecord."""
    result = await session.execute(
        select(IndicationStateRecord).where(
            IndicationStateRecord.connection_id == machine.connection_id,
            IndicationStateRecord.symbol == machine.symbol,
            IndicationStateRecord.indication_type == machine.indication_type.value,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        record = IndicationStateRecord(
            connection_id=machine.connection_id,
            symbol=machine.symbol,
            indication_type=machine.indication_type.value,
        )
        session.add(record)

    record.phase = machine.phase.value
    record.direction = machine.direction.value if machine.direction else None
    record.accumulated_since = machine.accumulated_since
    record.last_validated_at = machine.last_validated_at
    record.cooldown_until = machine.cooldown_until
    record.signals_count = machine.signals_count
    record.touch()
    return record
