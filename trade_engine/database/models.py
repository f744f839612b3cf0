"""
Database models for Trade Engine

Declarative base + общие column types. Таблицы pipeline - в
trade_engine/pipeline/models.py.
"""

from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


def utcnow() -> datetime:
    """Timezone-aware текущее время (UTC)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """
    DateTime, который всегда возвращает aware UTC.

    SQLite не хранит tzinfo, PostgreSQL хранит - на выходе одинаково.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# JSONB на PostgreSQL, JSON везде остальном (тесты на SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class TimestampMixin:
    """created_at / updated_at. updated_at монотонный (см. touch)."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False, index=True
    )

    def touch(self, now: Optional[datetime] = None) -> datetime:
        """Сдвинуть updated_at вперёд (никогда назад)."""
        now = now or utcnow()
        if self.updated_at is None or now > self.updated_at:
            self.updated_at = now
        return self.updated_at
