"""
Database - SQLAlchemy async engine и declarative base.
"""

from trade_engine.database.models import Base, UTCDateTime, utcnow

__all__ = ["Base", "UTCDateTime", "utcnow"]
