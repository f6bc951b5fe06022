"""
Process-wide connection registry.

Store engines and broker clients are expensive to create and safe to share
between requests, so one registry is built at process start and handed to the
application. Connections are keyed by a fingerprint of the settings that
identify them; two controllers pointed at the same database share one engine.
"""

import json

import redis.asyncio as redis

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings
from relayjobs.infra.database import Database

logger = get_logger(__name__)

# Settings that identify a distinct connection
DATABASE_KEYS = ("database_url", "db_pool_size", "db_max_overflow", "db_pool_recycle")
REDIS_KEYS = ("redis_url",)


def fingerprint(service: str, settings: Settings, keys: tuple[str, ...]) -> str:
    """Canonical cache key for a service configured by ``settings``."""
    values = {key: getattr(settings, key) for key in keys}
    return f"{service}:{json.dumps(values, sort_keys=True, default=str)}"


class ConnectionRegistry:
    """Creates and caches store and broker connections."""

    def __init__(self):
        self._databases: dict[str, Database] = {}
        self._redis_clients: dict[str, redis.Redis] = {}

    def database(self, settings: Settings) -> Database:
        """Get or create the database for these settings."""
        key = fingerprint("database", settings, DATABASE_KEYS)
        if key not in self._databases:
            logger.info("Creating database engine", connection=key)
            self._databases[key] = Database(settings)
        return self._databases[key]

    def redis(self, settings: Settings) -> redis.Redis:
        """Get or create the broker client for these settings."""
        key = fingerprint("redis", settings, REDIS_KEYS)
        if key not in self._redis_clients:
            logger.info("Creating broker client", connection=key)
            self._redis_clients[key] = redis.from_url(settings.redis_url)
        return self._redis_clients[key]

    async def close(self) -> None:
        """Dispose every connection created by this registry."""
        for database in self._databases.values():
            await database.close()
        for client in self._redis_clients.values():
            await client.aclose()
        self._databases.clear()
        self._redis_clients.clear()
