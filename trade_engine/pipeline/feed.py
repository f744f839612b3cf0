"""
Market Data Feed

Collaborator interface: subscribe(connection_id, symbol) → поток PriceTick.
InMemoryFeed - реализация для paper trading, replay и тестов.
PriceBuffer - rolling окно цен на symbol.
"""
import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from loguru import logger


@dataclass(frozen=True)
class PriceTick:
    """Тик цены."""
    symbol: str
    price: float
    timestamp: datetime


class MarketDataFeed(ABC):
    """Поставщик тиков по (connection, symbol)."""

    @abstractmethod
    def subscribe(self, connection_id: str, symbol: str) -> AsyncIterator[PriceTick]:
        """Бесконечный поток тиков (заканчивается при закрытии feed)."""

    async def history(
        self,
        connection_id: str,
        symbol: str,
        since: datetime,
        until: datetime,
    ) -> List[PriceTick]:
        """Исторические тики для replay. По умолчанию истории нет."""
        return []


_CLOSED = object()


class InMemoryFeed(MarketDataFeed):
    """
    Feed поверх asyncio.Queue.

    publish() раздаёт тик всем подписчикам (connection, symbol) и
    сохраняет его в историю.
    """

    def __init__(self, history_limit: int = 100_000):
        self._subscribers: Dict[Tuple[str, str], List[asyncio.Queue]] = defaultdict(list)
        self._history: Dict[Tuple[str, str], Deque[PriceTick]] = defaultdict(
            lambda: deque(maxlen=history_limit)
        )

    async def publish(self, connection_id: str, tick: PriceTick) -> None:
        key = (connection_id, tick.symbol)
        self._history[key].append(tick)
        for queue in self._subscribers.get(key, []):
            await queue.put(tick)

    def load_history(self, connection_id: str, ticks: List[PriceTick]) -> None:
        """Заполнить историю без раздачи подписчикам."""
        for tick in ticks:
            self._history[(connection_id, tick.symbol)].append(tick)

    async def subscribe(self, connection_id: str, symbol: str) -> AsyncIterator[PriceTick]:
        queue: asyncio.Queue = asyncio.Queue()
        key = (connection_id, symbol)
        self._subscribers[key].append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._subscribers.get(key, []):
                self._subscribers[key].remove(queue)

    async def history(
        self,
        connection_id: str,
        symbol: str,
        since: datetime,
        until: datetime,
    ) -> List[PriceTick]:
        return [
            tick for tick in self._history.get((connection_id, symbol), [])
            if since <= tick.timestamp <= until
        ]

    async def close(self, connection_id: Optional[str] = None) -> None:
        """Завершить потоки подписчиков (всех или одного connection)."""
        for (conn_id, _symbol), queues in list(self._subscribers.items()):
            if connection_id is not None and conn_id != connection_id:
                continue
            for queue in queues:
                await queue.put(_CLOSED)


class PriceBuffer:
    """
    Rolling буфер цен одного symbol.

    Тики с timestamp раньше последнего отбрасываются.
    """

    def __init__(self, max_samples: int = 40_000, max_age_sec: float = 9 * 3600):
        self._samples: Deque[Tuple[datetime, float]] = deque(maxlen=max_samples)
        self._max_age = timedelta(seconds=max_age_sec)

    def __len__(self) -> int:
        return len(self._samples)

    def append(self, tick: PriceTick) -> bool:
        if tick.price <= 0:
            logger.warning(f"Ignoring non-positive price for {tick.symbol}: {tick.price}")
            return False
        if self._samples and tick.timestamp < self._samples[-1][0]:
            return False
        self._samples.append((tick.timestamp, tick.price))
        cutoff = tick.timestamp - self._max_age
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()
        return True

    @property
    def last(self) -> Optional[Tuple[datetime, float]]:
        return self._samples[-1] if self._samples else None

    def window(self, seconds: float, now: Optional[datetime] = None) -> List[Tuple[datetime, float]]:
        """Сэмплы за последние seconds (хронологически)."""
        if not self._samples:
            return []
        end = now or self._samples[-1][0]
        start = end - timedelta(seconds=seconds)
        result = []
        for ts, price in reversed(self._samples):
            if ts < start:
                break
            if ts <= end:
                result.append((ts, price))
        result.reverse()
        return result

    def prices(self, seconds: float, now: Optional[datetime] = None) -> List[float]:
        return [price for _, price in self.window(seconds, now)]
