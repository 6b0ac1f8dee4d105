"""
Connection Store Factory

Usage:
    from chefstudio.connection.store import get_connection_store

    store = get_connection_store()
    record = await store.read(tenant_id)

Backend Switching:
    - CONNECTION_STORE_BACKEND=database → SqlConnectionStore (default)
    - CONNECTION_STORE_BACKEND=memory → InMemoryConnectionStore
"""

import logging
from functools import lru_cache

from chefstudio.core.config import StoreBackend, get_settings
from chefstudio.database import async_session_maker
from chefstudio.connection.store.base import BaseConnectionStore
from chefstudio.connection.store.memory import InMemoryConnectionStore
from chefstudio.connection.store.sql import SqlConnectionStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_connection_store() -> BaseConnectionStore:
    """
    Get the configured connection store instance (cached).

    Returns:
        BaseConnectionStore: SQL or in-memory store
    """
    settings = get_settings()

    if settings.connection_store_backend == StoreBackend.MEMORY:
        logger.info("Connection Store: Using InMemoryConnectionStore")
        return InMemoryConnectionStore()

    if settings.connection_store_backend == StoreBackend.DATABASE:
        logger.info("Connection Store: Using SqlConnectionStore")
        return SqlConnectionStore(async_session_maker)

    raise ValueError(f"Unknown connection store backend: {settings.connection_store_backend}")


def reset_connection_store() -> None:
    """Clear the cached store instance."""
    get_connection_store.cache_clear()
    logger.debug("Connection store cache cleared")


__all__ = [
    "get_connection_store",
    "reset_connection_store",
    "BaseConnectionStore",
    "InMemoryConnectionStore",
    "SqlConnectionStore",
]
