"""
Exchange Position Sync

Real → Exchange: открытие, сопровождение и reconciliation live позиций.

- open_for_real: volume по формуле, ордер через connector (tenacity
  retry на TransientExchangeError + timeout на каждый вызов)
- on_price: current price, PnL, экстремумы, trailing stop
- reconcile: сверка с get_positions(); сбой → OUT_OF_SYNC + backoff,
  после max_sync_attempts → ERROR + CRITICAL alert, позиция остаётся OPEN
- неудачное закрытие считается так же: CLOSING + backoff, reconcile
  повторяет закрытие, после max_sync_attempts → ERROR
- close_position / cancel_position: закрытие с roll-up PnL в Real и Main

Инвариант: у Real записи не больше одной открытой позиции на symbol.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from trade_engine.core.enums import (
    CloseReason,
    Direction,
    EventType,
    ExchangePositionStatus,
    PositionLevel,
    RealStatus,
    SyncStatus,
    TransitionReason,
)
from trade_engine.core.exceptions import InvariantViolation, TransientExchangeError
from trade_engine.database.models import utcnow
from trade_engine.pipeline.aggregator import LockRegistry
from trade_engine.pipeline.config import get_config
from trade_engine.pipeline.connector import (
    ExchangeConnector,
    ExchangePositionSnapshot,
    OrderRequest,
)
from trade_engine.pipeline.events import EventEmitter, event_emitter
from trade_engine.pipeline.expander import ConfigurationCandidate
from trade_engine.pipeline.models import (
    ActiveExchangePosition,
    MainPseudoPosition,
    RealPseudoPosition,
)
from trade_engine.pipeline.promotion import force_pause_real, write_status
from trade_engine.pipeline.settings import ExchangeSettings
from trade_engine.pipeline.simulator import ExitLevels
from trade_engine.pipeline.statistics import profit_factor
from trade_engine.pipeline.volume import calculate_volume

OPEN_STATES = [s.value for s in ExchangePositionStatus.open_states()]


@dataclass
class ReconcileReport:
    """Итог одного reconciliation poll."""
    checked: int = 0
    synced: int = 0
    failed: int = 0
    errors: int = 0
    closed: int = 0
    recovered: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class _BalanceCache:
    value: Optional[float] = None
    fetched_at: Optional[datetime] = None


def backoff_delay(attempts: int, base_sec: float, max_sec: float) -> float:
    """Экспоненциальный backoff: base × 2^(attempts-1), не больше max."""
    return min(base_sec * (2 ** max(attempts - 1, 0)), max_sec)


def position_pnl_pct(position: ActiveExchangePosition, price: float) -> float:
    sign = 1 if position.side == "long" else -1
    return (price - position.entry_price) / position.entry_price * 100.0 * sign


def position_pnl_usd(position: ActiveExchangePosition, price: float) -> float:
    sign = 1 if position.side == "long" else -1
    return (price - position.entry_price) * position.quantity * sign


class ExchangeSync:
    """Live позиции одного connection."""

    def __init__(
        self,
        connection_id: str,
        connector: ExchangeConnector,
        settings: ExchangeSettings,
        events: EventEmitter = event_emitter,
        locks: Optional[LockRegistry] = None,
        retry_wait: Any = None,
        call_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.connection_id = connection_id
        self.connector = connector
        self.settings = settings
        self.events = events
        self.locks = locks or LockRegistry()
        self.retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=1, min=2, max=10)
        self.call_timeout = call_timeout or get_config().exchange.call_timeout_sec
        self.clock = clock
        self._balance = _BalanceCache()

    # =========================================================================
    # Connector calls
    # =========================================================================

    async def _call(self, name: str, factory: Callable[[], Awaitable[Any]], attempts: int = 1) -> Any:
        """
        Вызов connector с timeout и retry.

        Raises:
            TransientExchangeError: после исчерпания попыток
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientExchangeError),
            stop=stop_after_attempt(attempts),
            wait=self.retry_wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.wait_for(factory(), timeout=self.call_timeout)
                except asyncio.TimeoutError as e:
                    raise TransientExchangeError(
                        f"{self.connector.name}.{name} timed out after {self.call_timeout}s"
                    ) from e

    async def get_balance(self, now: Optional[datetime] = None) -> float:
        """Баланс аккаунта (кэш balance_cache_sec, fallback - последний/дефолтный)."""
        now = now or self.clock()
        cache_sec = get_config().exchange.balance_cache_sec
        cached = self._balance
        if cached.value is not None and cached.fetched_at and (now - cached.fetched_at).total_seconds() < cache_sec:
            return cached.value
        try:
            info = await self._call("test_connection", self.connector.test_connection)
        except TransientExchangeError as e:
            fallback = cached.value if cached.value is not None else get_config().exchange.default_balance_usd
            logger.warning(f"Balance unavailable for {self.connection_id}, using {fallback:.2f}: {e}")
            return fallback
        self._balance = _BalanceCache(value=info.balance, fetched_at=now)
        return info.balance

    # =========================================================================
    # Open
    # =========================================================================

    async def open_for_real(
        self,
        session: AsyncSession,
        real: RealPseudoPosition,
        candidate: ConfigurationCandidate,
        price: float,
        now: Optional[datetime] = None,
        tp_unit_pct: float = 0.1,
    ) -> Optional[ActiveExchangePosition]:
        """
        Открыть live позицию для VALIDATED Real записи.

        Returns:
            Позиция или None (не VALIDATED, уже открыта, ордер отклонён)
        """
        now = now or self.clock()
        if not self.settings.enabled:
            return None
        if real.status != RealStatus.VALIDATED.value or real.needs_review:
            return None

        async with self.locks.get(f"real:{real.id}"):
            open_count = await self._open_count(session, real.id, candidate.symbol)
            if open_count > 1:
                violation = InvariantViolation(
                    f"Real {real.id} holds {open_count} open positions on {candidate.symbol}",
                    candidate_key=candidate.key,
                    level=PositionLevel.REAL.value,
                    context={"open_positions": open_count},
                )
                await force_pause_real(session, real, violation, self.events, now)
                await self.close_for_real(session, real, CloseReason.DEMOTED, now)
                raise violation
            if open_count == 1:
                logger.debug(f"Real {real.id} already has an open position on {candidate.symbol}")
                return None

            balance = await self.get_balance(now)
            volume = calculate_volume(balance, price, self.settings)
            if volume.quantity <= 0:
                logger.warning(f"Zero quantity for real {real.id} (balance={balance}, price={price})")
                return None

            exits = ExitLevels.from_candidate(candidate, tp_unit_pct)
            side = candidate.direction
            request = OrderRequest(
                symbol=candidate.symbol,
                side=side,
                quantity=volume.quantity,
                price=price,
                leverage=volume.leverage,
                take_profit=exits.take_profit_price(price, side),
                stop_loss=exits.stop_loss_price(price, side),
                client_id=f"{self.connection_id}:{real.id}",
            )

            try:
                result = await self._call(
                    "place_order", lambda: self.connector.place_order(request), self.settings.order_attempts
                )
            except TransientExchangeError as e:
                await self._order_rejected(session, real, candidate, str(e), now, transient=True)
                return None

            if not result.ok:
                await self._order_rejected(session, real, candidate, result.error or "unknown error", now)
                return None

            entry = result.filled_price or price
            position = ActiveExchangePosition(
                connection_id=self.connection_id,
                real_id=real.id,
                symbol=candidate.symbol,
                side=side.value,
                exchange_id=result.order_id,
                entry_price=entry,
                current_price=entry,
                quantity=volume.quantity,
                volume_usd=volume.quantity * entry,
                leverage=volume.leverage,
                position_cost_pct=volume.position_cost_pct,
                take_profit=exits.take_profit_price(entry, side),
                stop_loss=exits.stop_loss_price(entry, side),
                trailing_enabled=exits.trailing,
                trail_start_pct=exits.trail_start_pct,
                trail_stop_pct=exits.trail_stop_pct,
                price_high=entry,
                price_low=entry,
                status=ExchangePositionStatus.OPEN.value,
                sync_status=SyncStatus.PENDING_UPDATE.value,
                opened_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(position)
            await session.flush()

        await self.events.emit(
            session,
            EventType.EXCHANGE_OPENED,
            f"Opened {side.value} {candidate.symbol} qty={position.quantity:.6f} @ {entry} "
            f"(real {real.id}, order {position.exchange_id})",
            connection_id=self.connection_id,
            symbol=candidate.symbol,
            candidate_key=candidate.key,
            level=PositionLevel.EXCHANGE,
            payload={
                "position_id": position.id,
                "real_id": real.id,
                "quantity": position.quantity,
                "volume_usd": position.volume_usd,
                "leverage": position.leverage,
                "take_profit": position.take_profit,
                "stop_loss": position.stop_loss,
            },
            now=now,
        )
        return position

    async def _order_rejected(
        self,
        session: AsyncSession,
        real: RealPseudoPosition,
        candidate: ConfigurationCandidate,
        error: str,
        now: datetime,
        transient: bool = False,
    ) -> None:
        await self.events.emit(
            session,
            EventType.ORDER_REJECTED,
            f"Order for real {real.id} on {candidate.symbol} failed: {error}",
            connection_id=self.connection_id,
            symbol=candidate.symbol,
            candidate_key=candidate.key,
            level=PositionLevel.EXCHANGE,
            payload={"real_id": real.id, "error": error, "transient": transient},
            now=now,
        )

    # =========================================================================
    # Ticks
    # =========================================================================

    async def on_price(
        self,
        session: AsyncSession,
        symbol: str,
        price: float,
        now: Optional[datetime] = None,
    ) -> List[ActiveExchangePosition]:
        """
        Обновить открытые позиции symbol.

        Returns:
            Позиции, закрытые trailing stop
        """
        now = now or self.clock()
        positions = await self._positions(session, symbol=symbol, statuses=[ExchangePositionStatus.OPEN.value])
        closed = []
        for position in positions:
            if trailing_hit(position, price):
                if await self.close_position(session, position, CloseReason.TRAILING_STOP, now, price=price):
                    closed.append(position)
            position.touch(now)
        return closed

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self, session: AsyncSession, now: Optional[datetime] = None) -> ReconcileReport:
        """
        Сверка открытых позиций с биржей.

        Позиции в ERROR пропускаются до acknowledge_error.
        """
        now = now or self.clock()
        report = ReconcileReport()
        due = [
            p for p in await self._positions(session, statuses=OPEN_STATES)
            if p.sync_status != SyncStatus.ERROR.value
            and (p.next_sync_at is None or p.next_sync_at <= now)
        ]
        if not due:
            return report
        report.checked = len(due)

        try:
            snapshots = await self._call("get_positions", self.connector.get_positions)
        except TransientExchangeError as e:
            for position in due:
                if await self._mark_failure(session, position, str(e), now):
                    report.errors += 1
                else:
                    report.failed += 1
            return report

        by_id: Dict[str, ExchangePositionSnapshot] = {s.exchange_id: s for s in snapshots}
        for position in due:
            snapshot = by_id.get(position.exchange_id or "")
            was_out_of_sync = position.sync_status == SyncStatus.OUT_OF_SYNC.value

            if snapshot is None:
                reason = infer_exit_reason(position) if position.status == ExchangePositionStatus.OPEN.value \
                    else CloseReason(position.close_reason or CloseReason.EXCHANGE_CLOSED.value)
                exit_price = _exit_price(position, reason)
                await self._finalize(session, position, ExchangePositionStatus.CLOSED, reason, exit_price, now)
                report.closed += 1
                continue

            if snapshot.liquidated:
                await self._finalize(
                    session, position, ExchangePositionStatus.LIQUIDATED,
                    CloseReason.LIQUIDATED, snapshot.mark_price, now,
                )
                report.closed += 1
                continue

            update_marks(position, snapshot.mark_price)
            position.last_synced_at = now

            if position.status == ExchangePositionStatus.CLOSING.value:
                reason = CloseReason(position.close_reason or CloseReason.MANUAL.value)
                if not await self.close_position(session, position, reason, now):
                    if position.sync_status == SyncStatus.ERROR.value:
                        report.errors += 1
                    else:
                        report.failed += 1
                    continue
                report.closed += 1
            else:
                position.sync_status = SyncStatus.SYNCED.value
                position.sync_attempts = 0
                position.next_sync_at = None
                position.last_sync_error = None
                position.touch(now)
                report.synced += 1

            if was_out_of_sync:
                report.recovered += 1
                await self.events.emit(
                    session,
                    EventType.SYNC_RECOVERED,
                    f"Position {position.id} ({position.symbol}) back in sync",
                    connection_id=self.connection_id,
                    symbol=position.symbol,
                    level=PositionLevel.EXCHANGE,
                    payload={"position_id": position.id},
                    now=now,
                )

        await session.flush()
        return report

    async def _mark_failure(
        self,
        session: AsyncSession,
        position: ActiveExchangePosition,
        error: str,
        now: datetime,
    ) -> bool:
        """
        Неудачная сверка или закрытие позиции.

        Повторный сбой позиции уже в ERROR не шлёт второй alert.

        Returns:
            True если позиция перешла в ERROR
        """
        already_error = position.sync_status == SyncStatus.ERROR.value
        position.sync_attempts = (position.sync_attempts or 0) + 1
        position.last_sync_error = error
        position.touch(now)

        if already_error:
            return True

        if position.sync_attempts >= self.settings.max_sync_attempts:
            position.sync_status = SyncStatus.ERROR.value
            position.next_sync_at = None
            await self.events.emit(
                session,
                EventType.SYNC_ERROR,
                f"Position {position.id} ({position.symbol}) sync failed "
                f"{position.sync_attempts} times, manual review required: {error}",
                connection_id=self.connection_id,
                symbol=position.symbol,
                level=PositionLevel.EXCHANGE,
                payload={
                    "position_id": position.id,
                    "exchange_id": position.exchange_id,
                    "attempts": position.sync_attempts,
                    "error": error,
                },
                now=now,
            )
            return True

        delay = backoff_delay(
            position.sync_attempts, self.settings.sync_backoff_base_sec, self.settings.sync_backoff_max_sec
        )
        position.sync_status = SyncStatus.OUT_OF_SYNC.value
        position.next_sync_at = now + timedelta(seconds=delay)
        logger.warning(
            f"Position {position.id} out of sync (attempt {position.sync_attempts}), "
            f"retry in {delay:.1f}s: {error}"
        )
        return False

    async def acknowledge_error(
        self,
        session: AsyncSession,
        position: ActiveExchangePosition,
        now: Optional[datetime] = None,
    ) -> bool:
        """Оператор подтвердил ERROR: вернуть позицию в PENDING_UPDATE."""
        if position.sync_status != SyncStatus.ERROR.value:
            return False
        now = now or self.clock()
        position.sync_status = SyncStatus.PENDING_UPDATE.value
        position.sync_attempts = 0
        position.next_sync_at = None
        position.touch(now)
        logger.info(f"Sync error acknowledged for position {position.id}")
        return True

    # =========================================================================
    # Close / cancel
    # =========================================================================

    async def close_position(
        self,
        session: AsyncSession,
        position: ActiveExchangePosition,
        reason: CloseReason,
        now: Optional[datetime] = None,
        price: Optional[float] = None,
    ) -> bool:
        """
        Закрыть позицию reduce-only ордером.

        Неудача оставляет позицию CLOSING и считается попыткой синхронизации:
        OUT_OF_SYNC + backoff (повторит reconcile), после max_sync_attempts
        → ERROR + CRITICAL alert.
        """
        now = now or self.clock()
        if not position.is_open:
            return False

        position.status = ExchangePositionStatus.CLOSING.value
        position.close_reason = CloseReason(reason).value
        position.touch(now)

        side = _side(position).opposite()
        request = OrderRequest(
            symbol=position.symbol,
            side=side,
            quantity=position.quantity,
            price=price or position.current_price,
            leverage=position.leverage,
            reduce_only=True,
            client_id=f"{self.connection_id}:{position.real_id}:close",
        )
        try:
            result = await self._call(
                "place_order", lambda: self.connector.place_order(request), self.settings.order_attempts
            )
            error = None if result.ok else (result.error or "unknown error")
        except TransientExchangeError as e:
            result, error = None, str(e)

        if error is not None:
            logger.error(f"Failed to close position {position.id} ({position.symbol}): {error}")
            await self._mark_failure(session, position, error, now)
            await session.flush()
            return False

        exit_price = result.filled_price or price or position.current_price
        await self._finalize(session, position, ExchangePositionStatus.CLOSED, reason, exit_price, now)
        return True

    async def cancel_position(
        self,
        session: AsyncSession,
        position: ActiveExchangePosition,
        now: Optional[datetime] = None,
    ) -> bool:
        """Отменить ордер позиции → CANCELLED (без realized PnL)."""
        now = now or self.clock()
        if not position.is_open:
            return False
        try:
            await self._call(
                "cancel_order", lambda: self.connector.cancel_order(position.exchange_id or ""),
                self.settings.order_attempts,
            )
        except TransientExchangeError as e:
            position.sync_status = SyncStatus.OUT_OF_SYNC.value
            position.last_sync_error = str(e)
            logger.error(f"Failed to cancel position {position.id}: {e}")
            return False

        position.status = ExchangePositionStatus.CANCELLED.value
        position.close_reason = CloseReason.MANUAL.value
        position.sync_status = SyncStatus.SYNCED.value
        position.closed_at = now
        position.touch(now)
        await self.events.emit(
            session,
            EventType.EXCHANGE_CLOSED,
            f"Cancelled position {position.id} ({position.symbol})",
            connection_id=self.connection_id,
            symbol=position.symbol,
            level=PositionLevel.EXCHANGE,
            payload={"position_id": position.id, "status": position.status},
            now=now,
        )
        await session.flush()
        return True

    async def close_for_real(
        self,
        session: AsyncSession,
        real: RealPseudoPosition,
        reason: CloseReason,
        now: Optional[datetime] = None,
    ) -> int:
        """Закрыть все открытые позиции Real записи."""
        positions = await self._positions(session, statuses=OPEN_STATES, real_id=real.id)
        closed = 0
        for position in positions:
            if await self.close_position(session, position, reason, now):
                closed += 1
        return closed

    async def close_all(
        self,
        session: AsyncSession,
        reason: CloseReason = CloseReason.CONNECTION_STOPPED,
        now: Optional[datetime] = None,
    ) -> int:
        """Закрыть все открытые позиции connection."""
        positions = await self._positions(session, statuses=OPEN_STATES)
        closed = 0
        for position in positions:
            if await self.close_position(session, position, reason, now):
                closed += 1
        if positions:
            logger.info(f"Closed {closed}/{len(positions)} exchange positions for {self.connection_id}")
        return closed

    async def _finalize(
        self,
        session: AsyncSession,
        position: ActiveExchangePosition,
        status: ExchangePositionStatus,
        reason: CloseReason,
        exit_price: float,
        now: datetime,
    ) -> None:
        """Терминальный статус + roll-up realized PnL в Real и Main."""
        realized = position_pnl_usd(position, exit_price)
        position.current_price = exit_price
        position.realized_pnl = realized
        position.unrealized_pnl = 0.0
        position.status = status.value
        position.close_reason = reason.value
        position.sync_status = SyncStatus.SYNCED.value
        position.sync_attempts = 0
        position.next_sync_at = None
        position.closed_at = now
        position.touch(now)

        real = await session.get(RealPseudoPosition, position.real_id)
        if real is not None:
            real.exchange_realized_pnl = (real.exchange_realized_pnl or 0.0) + realized
            real.exchange_positions_closed = (real.exchange_positions_closed or 0) + 1
            real.touch(now)
            main = await session.get(MainPseudoPosition, real.main_id)
            if main is not None:
                main.exchange_realized_pnl = (main.exchange_realized_pnl or 0.0) + realized
                main.exchange_positions_closed = (main.exchange_positions_closed or 0) + 1
                main.touch(now)

        await self.events.emit(
            session,
            EventType.EXCHANGE_CLOSED,
            f"Position {position.id} {position.symbol} {status.value} ({reason.value}), "
            f"realized={realized:+.4f}",
            connection_id=self.connection_id,
            symbol=position.symbol,
            level=PositionLevel.EXCHANGE,
            payload={
                "position_id": position.id,
                "real_id": position.real_id,
                "status": status.value,
                "reason": reason.value,
                "exit_price": exit_price,
                "realized_pnl": realized,
            },
            now=now,
        )
        await session.flush()

        if real is not None:
            await self._check_mirror(session, real, now)

    async def _check_mirror(self, session: AsyncSession, real: RealPseudoPosition, now: datetime) -> None:
        """
        Pause Real если live PF последних mirror_window позиций ниже порога.

        Статус пишется через write_status (более поздний переход не
        перезаписывается), оставшиеся открытые позиции Real закрываются.
        """
        if real.status != RealStatus.VALIDATED.value:
            return
        result = await session.execute(
            select(ActiveExchangePosition.realized_pnl)
            .where(
                ActiveExchangePosition.real_id == real.id,
                ActiveExchangePosition.realized_pnl.is_not(None),
            )
            .order_by(ActiveExchangePosition.closed_at.desc(), ActiveExchangePosition.id.desc())
            .limit(self.settings.mirror_window)
        )
        pnls = [p for p in result.scalars().all()]
        if len(pnls) < self.settings.mirror_window:
            return
        pf = profit_factor(sum(p for p in pnls if p > 0), sum(p for p in pnls if p <= 0))
        if pf >= self.settings.mirror_profit_factor_min:
            return

        if not await write_status(
            session, real, RealStatus.PAUSED.value, TransitionReason.DEMOTED_PROFIT_FACTOR, now
        ):
            logger.debug(f"Mirror pause of real {real.id} skipped: newer status at {real.status_changed_at}")
            return
        await self.events.emit(
            session,
            EventType.DEMOTED,
            f"REAL {real.symbol} paused: live profit factor {pf:.2f} "
            f"< {self.settings.mirror_profit_factor_min}",
            connection_id=self.connection_id,
            symbol=real.symbol,
            level=PositionLevel.REAL,
            payload={"real_id": real.id, "profit_factor": pf, "window": len(pnls)},
            now=now,
        )
        await self.close_for_real(session, real, CloseReason.DEMOTED, now)

    # =========================================================================
    # Invariants / loads
    # =========================================================================

    async def check_invariants(self, session: AsyncSession, now: Optional[datetime] = None) -> int:
        """Найти Real записи с >1 открытой позицией на symbol и force-pause их."""
        now = now or self.clock()
        result = await session.execute(
            select(ActiveExchangePosition.real_id, ActiveExchangePosition.symbol, func.count())
            .where(
                ActiveExchangePosition.connection_id == self.connection_id,
                ActiveExchangePosition.status.in_(OPEN_STATES),
            )
            .group_by(ActiveExchangePosition.real_id, ActiveExchangePosition.symbol)
            .having(func.count() > 1)
        )
        violations = 0
        for real_id, symbol, count in result.all():
            real = await session.get(RealPseudoPosition, real_id)
            if real is None or real.needs_review:
                continue
            violations += 1
            violation = InvariantViolation(
                f"Real {real_id} holds {count} open positions on {symbol}",
                level=PositionLevel.REAL.value,
                context={"open_positions": count},
            )
            await force_pause_real(session, real, violation, self.events, now)
            await self.close_for_real(session, real, CloseReason.DEMOTED, now)
        return violations

    async def _open_count(self, session: AsyncSession, real_id: int, symbol: str) -> int:
        return await session.scalar(
            select(func.count()).select_from(ActiveExchangePosition).where(
                ActiveExchangePosition.real_id == real_id,
                ActiveExchangePosition.symbol == symbol,
                ActiveExchangePosition.status.in_(OPEN_STATES),
            )
        ) or 0

    async def _positions(
        self,
        session: AsyncSession,
        symbol: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        real_id: Optional[int] = None,
    ) -> List[ActiveExchangePosition]:
        query = select(ActiveExchangePosition).where(
            ActiveExchangePosition.connection_id == self.connection_id
        )
        if symbol is not None:
            query = query.where(ActiveExchangePosition.symbol == symbol)
        if statuses is not None:
            query = query.where(ActiveExchangePosition.status.in_(statuses))
        if real_id is not None:
            query = query.where(ActiveExchangePosition.real_id == real_id)
        result = await session.execute(query.order_by(ActiveExchangePosition.id))
        return list(result.unique().scalars().all())


# =============================================================================
# Pure helpers
# =============================================================================


def _side(position: ActiveExchangePosition) -> Direction:
    return Direction(position.side)


def update_marks(position: ActiveExchangePosition, price: float) -> None:
    """Текущая цена, экстремумы, unrealized PnL."""
    position.current_price = price
    position.price_high = max(position.price_high or price, price)
    position.price_low = min(position.price_low or price, price)
    pnl_pct = position_pnl_pct(position, price)
    position.max_profit_pct = max(position.max_profit_pct or 0.0, pnl_pct)
    position.max_loss_pct = min(position.max_loss_pct or 0.0, pnl_pct)
    position.unrealized_pnl = position_pnl_usd(position, price)


def trailing_hit(position: ActiveExchangePosition, price: float) -> bool:
    """
    Обновить позицию ценой и проверить trailing stop.

    Trailing активируется при profit >= trail_start_pct, срабатывает
    при откате от лучшей цены >= trail_stop_pct.
    """
    update_marks(position, price)
    if not position.trailing_enabled:
        return False

    sign = 1 if position.side == "long" else -1
    if not position.trailing_activated:
        if position_pnl_pct(position, price) < position.trail_start_pct:
            return False
        position.trailing_activated = True
        position.trailing_high = price

    best = position.trailing_high or price
    if (price - best) * sign > 0:
        position.trailing_high = best = price
    retrace = (best - price) / best * 100.0 * sign
    return retrace >= position.trail_stop_pct


def infer_exit_reason(position: ActiveExchangePosition) -> CloseReason:
    """Позиция исчезла с биржи: TP/SL если последняя цена их пересекла."""
    sign = 1 if position.side == "long" else -1
    price = position.current_price
    if position.take_profit is not None and (price - position.take_profit) * sign >= 0:
        return CloseReason.TAKE_PROFIT
    if position.stop_loss is not None and (price - position.stop_loss) * sign <= 0:
        return CloseReason.STOP_LOSS
    return CloseReason.EXCHANGE_CLOSED


def _exit_price(position: ActiveExchangePosition, reason: CloseReason) -> float:
    if reason == CloseReason.TAKE_PROFIT and position.take_profit is not None:
        return position.take_profit
    if reason == CloseReason.STOP_LOSS and position.stop_loss is not None:
        return position.stop_loss
    return position.current_price
