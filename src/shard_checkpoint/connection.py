"""Pooled Redis client for the durable checkpoint backend."""

import logging
import threading
from typing import Optional

import redis
from redis.backoff import ExponentialBackoff
from redis.connection import ConnectionPool
from redis.retry import Retry

logger = logging.getLogger(__name__)


class RedisConnection:
    """Opens one pooled Redis client on first use and shares it across threads.

    Only opening the connection is retried, with exponential backoff.
    Checkpoint commands are never retried here.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        max_connections: int = 10,
        connect_retries: int = 5,
        backoff_base: float = 0.1,
        backoff_cap: float = 30.0,
    ):
        """Initialize Redis connection.

        Args:
            url: Redis connection URL
            max_connections: Maximum connections in pool
            connect_retries: Retry attempts when the server does not answer
            backoff_base: Initial delay for exponential backoff in seconds
            backoff_cap: Maximum delay between attempts in seconds
        """
        self.url = url
        self._max_connections = max_connections
        self._connect_retry = Retry(
            ExponentialBackoff(cap=backoff_cap, base=backoff_base),
            connect_retries,
        )
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._lock = threading.Lock()

    def _on_connect_failure(self, error: Exception):
        logger.warning(f"Redis at {self.url} not answering: {error}")

    def _open(self) -> redis.Redis:
        # Stored values are JSON text
        pool = ConnectionPool.from_url(
            self.url,
            max_connections=self._max_connections,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            self._connect_retry.call_with_retry(client.ping, self._on_connect_failure)
        except redis.RedisError as e:
            logger.error(f"Giving up connecting to Redis at {self.url}: {e}")
            pool.disconnect()
            raise
        self._pool = pool
        logger.info(f"Connected to Redis at {self.url}")
        return client

    @property
    def client(self) -> redis.Redis:
        """Get the shared client, connecting on first use."""
        client = self._client
        if client is None:
            with self._lock:
                if self._client is None:
                    self._client = self._open()
                client = self._client
        return client

    def close(self):
        """Close client and disconnect the pool."""
        with self._lock:
            if self._client:
                self._client.close()
                self._client = None
            if self._pool:
                self._pool.disconnect()
                self._pool = None
