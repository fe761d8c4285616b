"""Database module for Allay.

Exports:
- Base: SQLAlchemy declarative base
- models: All ORM models
- session: Async engine and session factory
"""

from allay.db.models import Base
from allay.db.session import AsyncSessionLocal, close_db, init_db

__all__ = ["Base", "AsyncSessionLocal", "init_db", "close_db"]
