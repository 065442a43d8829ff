"""Database package."""

from clusterhub.db.base import Base, BaseModel, utcnow
from clusterhub.db.session import (
    build_engine,
    build_session_factory,
    get_db_session,
    transaction,
)

__all__ = [
    "Base",
    "BaseModel",
    "utcnow",
    "build_engine",
    "build_session_factory",
    "get_db_session",
    "transaction",
]
