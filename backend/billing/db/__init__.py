"""Database package"""

from billing.db.session import (
    AsyncSessionLocal,
    create_engine,
    create_session_factory,
    engine,
    get_db,
)
from billing.models.base import Base

__all__ = [
    "Base",
    "AsyncSessionLocal",
    "create_engine",
    "create_session_factory",
    "engine",
    "get_db",
]
