"""
Pipeline Events

Structured event на каждый state transition: validated signal,
promotion, demotion, sync error, invariant violation...

Событие одновременно:
- пишется в pipeline_events (в сессии вызывающего, коммит - его)
- логируется через loguru с bind(event=..., connection_id=...)
- отдаётся in-process подписчикам (UI/API слой)
"""
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from trade_engine.core.enums import EventType
from trade_engine.database.models import utcnow
from trade_engine.pipeline.models import PipelineEvent


@dataclass
class EventRecord:
    """Событие pipeline (то, что получают подписчики)."""
    event_type: EventType
    message: str
    severity: str
    created_at: datetime
    connection_id: Optional[str] = None
    symbol: Optional[str] = None
    candidate_key: Optional[str] = None
    level: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[EventRecord], Union[None, Awaitable[None]]]

# Понижение/ошибки ордеров - WARNING, alerts - CRITICAL
_WARNING_EVENTS = {
    EventType.DEMOTED,
    EventType.ORDER_REJECTED,
    EventType.SET_DISABLED,
}


def severity_for(event_type: EventType) -> str:
    if event_type.is_alert():
        return "CRITICAL"
    if event_type in _WARNING_EVENTS:
        return "WARNING"
    return "INFO"


class EventEmitter:
    """Эмиттер structured events."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(
        self,
        session: Optional[AsyncSession],
        event_type: EventType,
        message: str,
        *,
        connection_id: Optional[str] = None,
        symbol: Optional[str] = None,
        candidate_key: Optional[str] = None,
        level: Optional[Union[str, Enum]] = None,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """
        Записать событие.

        Args:
            session: Сессия для записи PipelineEvent (None = только лог)
            event_type: Тип события
            message: Человекочитаемое сообщение
        """
        record = EventRecord(
            event_type=event_type,
            message=message,
            severity=severity_for(event_type),
            created_at=now or utcnow(),
            connection_id=connection_id,
            symbol=symbol,
            candidate_key=candidate_key,
            level=level.value if isinstance(level, Enum) else level,
            payload=_jsonable(payload or {}),
        )

        logger.bind(
            event=event_type.value,
            connection_id=connection_id,
            symbol=symbol,
            candidate=candidate_key[:12] if candidate_key else None,
            level=record.level,
        ).log(record.severity, message)

        if session is not None:
            session.add(PipelineEvent(
                event_type=event_type.value,
                severity=record.severity,
                connection_id=connection_id,
                symbol=symbol,
                candidate_key=candidate_key,
                level=record.level,
                message=message,
                payload=record.payload,
                created_at=record.created_at,
            ))

        for listener in list(self._listeners):
            try:
                result = listener(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event listener failed for {event_type.value}: {e}")

        return record


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and value != value:
        return None
    return value


async def prune_events(session: AsyncSession, days: int, now: Optional[datetime] = None) -> int:
    """Удалить события старше days дней."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    result = await session.execute(delete(PipelineEvent).where(PipelineEvent.created_at < cutoff))
    return result.rowcount or 0


# Singleton instance
event_emitter = EventEmitter()
