"""Database package: engine, session factory, transaction scope, and Redis pool."""

from subscription_engine.db.base import (
    Base,
    close_db,
    get_session_factory,
    init_db,
    transaction,
    utcnow,
)
from subscription_engine.db.redis import close_redis, get_redis, init_redis

__all__ = [
    "Base",
    "close_db",
    "close_redis",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
    "transaction",
    "utcnow",
]
