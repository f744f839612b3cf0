"""
Exchange Connector

Протокол биржевого коннектора + paper реализация.

Коннектор сам не ретраит: network/timeout/rate limit сообщаются
TransientExchangeError, явный отказ биржи - OrderResult.error.
Ретраи и таймауты на стороне ExchangeSync.
"""
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from trade_engine.core.enums import Direction
from trade_engine.core.exceptions import TransientExchangeError


@dataclass
class OrderRequest:
    """Ордер на бирже (market, опционально reduce-only)."""
    symbol: str
    side: Direction
    quantity: float
    price: float
    leverage: int = 1
    reduce_only: bool = False
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    client_id: Optional[str] = None


@dataclass
class OrderResult:
    """Ответ place_order: order_id либо error."""
    order_id: Optional[str] = None
    filled_price: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.order_id is not None and self.error is None


@dataclass
class ExchangePositionSnapshot:
    """Позиция, как её видит биржа."""
    exchange_id: str
    symbol: str
    side: Direction
    quantity: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float = 0.0
    liquidated: bool = False


@dataclass
class ConnectionInfo:
    """Результат test_connection."""
    balance: float
    capabilities: List[str] = field(default_factory=list)


class ExchangeConnector(ABC):
    """Биржевой коннектор (execution mechanics за пределами pipeline)."""

    name: str = "exchange"

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def get_positions(self) -> List[ExchangePositionSnapshot]:
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionInfo:
        ...


class PaperExchangeConnector(ExchangeConnector):
    """
    In-memory коннектор (paper trading и тесты).

    Сбои задаются заранее:
        connector.fail_next("get_positions", times=3)
        connector.reject_next("insufficient margin")
    """

    name = "paper"

    def __init__(self, balance: float = 10_000.0, capabilities: Sequence[str] = ("futures", "reduce_only")):
        self.balance = balance
        self.capabilities = list(capabilities)
        self.positions: Dict[str, ExchangePositionSnapshot] = {}
        self.orders: List[OrderRequest] = []
        self.cancelled: List[str] = []
        self._ids = itertools.count(1)
        self._failures: Dict[str, int] = {}
        self._rejections: List[str] = []
        self._marks: Dict[str, float] = {}

    # === scripting ===

    def fail_next(self, method: str, times: int = 1) -> None:
        self._failures[method] = self._failures.get(method, 0) + times

    def reject_next(self, error: str) -> None:
        self._rejections.append(error)

    def set_mark_price(self, symbol: str, price: float) -> None:
        self._marks[symbol] = price
        for position in self.positions.values():
            if position.symbol == symbol:
                position.mark_price = price
                position.unrealized_pnl = (
                    (price - position.entry_price) * position.quantity * position.side.sign
                )

    def liquidate(self, exchange_id: str) -> None:
        position = self.positions.get(exchange_id)
        if position is not None:
            position.liquidated = True

    def drop_position(self, exchange_id: str) -> None:
        """Позиция закрылась на бирже (TP/SL биржи, ручное закрытие)."""
        self.positions.pop(exchange_id, None)

    def _maybe_fail(self, method: str) -> None:
        remaining = self._failures.get(method, 0)
        if remaining > 0:
            self._failures[method] = remaining - 1
            raise TransientExchangeError(f"paper {method}: simulated network failure")

    # === protocol ===

    async def place_order(self, request: OrderRequest) -> OrderResult:
        self._maybe_fail("place_order")
        if self._rejections:
            error = self._rejections.pop(0)
            logger.warning(f"Paper order rejected for {request.symbol}: {error}")
            return OrderResult(error=error)

        self.orders.append(request)
        price = self._marks.get(request.symbol, request.price)

        if request.reduce_only:
            for exchange_id, position in list(self.positions.items()):
                if position.symbol == request.symbol and position.side != request.side:
                    position.quantity -= request.quantity
                    if position.quantity <= 1e-12:
                        del self.positions[exchange_id]
                    return OrderResult(order_id=exchange_id, filled_price=price)
            return OrderResult(error=f"no position to reduce for {request.symbol}")

        order_id = f"paper-{next(self._ids)}"
        self.positions[order_id] = ExchangePositionSnapshot(
            exchange_id=order_id,
            symbol=request.symbol,
            side=request.side,
            quantity=request.quantity,
            entry_price=price,
            mark_price=price,
        )
        return OrderResult(order_id=order_id, filled_price=price)

    async def get_positions(self) -> List[ExchangePositionSnapshot]:
        self._maybe_fail("get_positions")
        return list(self.positions.values())

    async def cancel_order(self, order_id: str) -> bool:
        self._maybe_fail("cancel_order")
        self.cancelled.append(order_id)
        return self.positions.pop(order_id, None) is not None

    async def test_connection(self) -> ConnectionInfo:
        self._maybe_fail("test_connection")
        return ConnectionInfo(balance=self.balance, capabilities=list(self.capabilities))
