"""
Redis Configuration Module
Handles the Redis connection backing the durable Stripe webhook queue.
"""

import logging
import os
import threading

import redis
from redis.connection import ConnectionPool

from src.config.config import Config

logger = logging.getLogger(__name__)


class RedisConfig:
    """Redis configuration and connection management"""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or Config.REDIS_URL
        self.redis_max_connections = int(os.environ.get("REDIS_MAX_CONNECTIONS", "20"))
        self.redis_socket_timeout = int(os.environ.get("REDIS_SOCKET_TIMEOUT", "5"))
        self.redis_socket_connect_timeout = int(os.environ.get("REDIS_SOCKET_CONNECT_TIMEOUT", "3"))
        self.redis_retry_on_timeout = (
            os.environ.get("REDIS_RETRY_ON_TIMEOUT", "true").lower() == "true"
        )

        self._client: redis.Redis | None = None
        self._pool: ConnectionPool | None = None

    def get_connection_pool(self) -> ConnectionPool:
        """Get Redis connection pool"""
        if self._pool is None:
            # RQ stores pickled job payloads, so responses must stay as bytes
            connection_kwargs = {
                "max_connections": self.redis_max_connections,
                "socket_timeout": self.redis_socket_timeout,
                "socket_connect_timeout": self.redis_socket_connect_timeout,
                "retry_on_timeout": self.redis_retry_on_timeout,
            }

            # Managed Redis (Upstash) terminates TLS with a certificate we do not pin
            if self.redis_url.startswith("rediss://"):
                connection_kwargs["ssl_cert_reqs"] = None

            self._pool = ConnectionPool.from_url(self.redis_url, **connection_kwargs)
        return self._pool

    def get_client(self) -> redis.Redis:
        """Get Redis client instance"""
        if self._client is None:
            self._client = redis.Redis(connection_pool=self.get_connection_pool())
            logger.info("Redis connection pool created for webhook queue")
        return self._client

    def is_available(self) -> bool:
        """Check if Redis answers a PING."""
        try:
            return bool(self.get_client().ping())
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable: {e}")
            return False


# Global Redis configuration instance
_redis_config = None
_redis_config_lock = threading.Lock()


def get_redis_config() -> RedisConfig:
    """Get global Redis configuration instance (thread-safe singleton)."""
    global _redis_config
    if _redis_config is None:
        with _redis_config_lock:
            if _redis_config is None:
                _redis_config = RedisConfig()
    return _redis_config


def get_redis_client() -> redis.Redis:
    """Get Redis client instance"""
    return get_redis_config().get_client()


def is_redis_available() -> bool:
    """Check if Redis is available"""
    return get_redis_config().is_available()
