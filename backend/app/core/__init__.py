# Portfolio Backend Core Module
from .config import get_settings, settings
from .counter_store import CounterStore, CounterStoreError, MemoryCounterStore, RedisCounterStore
from .database import Base, async_session_maker, check_db_connection, engine, get_db
from .logging import setup_logging

__all__ = [
    "settings",
    "get_settings",
    "setup_logging",
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "check_db_connection",
    "CounterStore",
    "CounterStoreError",
    "MemoryCounterStore",
    "RedisCounterStore",
]
