"""Core application modules."""

from dedup.core.config import Settings, settings
from dedup.core.database import Base, get_engine, get_session_factory, transaction

__all__ = [
    "Base",
    "Settings",
    "get_engine",
    "get_session_factory",
    "settings",
    "transaction",
]
