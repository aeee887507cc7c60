"""
Redis Connection Factory

Process-wide Redis connection pool with an explicit initialize()/close()
lifecycle. Connectivity is verified on start with exponential backoff.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import (
    AuthenticationError as RedisAuthError,
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from coffeeshop.core.config import settings

from .exceptions import (
    RedisConfigurationException,
    RedisConnectionException,
    RedisOperationTimeoutException,
)

logger = logging.getLogger(__name__)


class RedisConnectionFactory:
    """
    Factory for the shared Redis connection pool.

    Every client handed out by get_connection() borrows from the same pool,
    so closing the factory releases all connections at once.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        max_connections: Optional[int] = None,
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self._pool: Optional[ConnectionPool] = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the connection pool and verify the server answers."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            try:
                pool = ConnectionPool.from_url(
                    self.redis_url,
                    decode_responses=True,
                    max_connections=self.max_connections,
                )
            except ValueError as e:
                raise RedisConfigurationException(
                    message=f"Invalid REDIS_URL: {e}", original_error=e
                )

            try:
                await self._test_connection(pool)
            except RedisAuthError as e:
                await pool.disconnect()
                logger.error(f"Redis authentication failed: {e}")
                raise RedisConnectionException(
                    message="Redis authentication failed", original_error=e
                )
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                await pool.disconnect()
                logger.error(f"Failed to initialize Redis connection factory: {e}")
                raise RedisConnectionException(
                    message="Redis connection test failed", original_error=e
                )

            self._pool = pool
            self._initialized = True
            logger.info(
                "Redis connection factory initialized",
                extra={"max_connections": self.max_connections},
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        # AuthenticationError subclasses ConnectionError and is never retried
        retry=retry_if_exception_type(
            (RedisConnectionError, RedisTimeoutError, OSError)
        )
        & retry_if_not_exception_type(RedisAuthError),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Redis ping failed, retrying (attempt {retry_state.attempt_number})"
        ),
    )
    async def _test_connection(self, pool: ConnectionPool) -> None:
        """Ping the server through the given pool."""
        redis_client = Redis(connection_pool=pool)
        await redis_client.ping()
        logger.debug("Redis connection test successful")

    @asynccontextmanager
    async def get_connection(self):
        """
        Get a Redis client backed by the shared pool.

        Yields:
            Redis client instance

        Raises:
            RedisConnectionException: If connection fails
            RedisOperationTimeoutException: If a command times out
        """
        await self.initialize()

        try:
            yield Redis(connection_pool=self._pool)
        except RedisTimeoutError as e:
            logger.error(f"Redis operation timed out: {e}")
            raise RedisOperationTimeoutException(operation="command", original_error=e)
        except (RedisConnectionError, RedisAuthError) as e:
            logger.error(f"Redis connection error: {e}")
            raise RedisConnectionException(
                message=f"Redis connection failed: {str(e)}", original_error=e
            )

    async def close(self) -> None:
        """Close the connection pool."""
        async with self._lock:
            if self._pool is not None:
                try:
                    await self._pool.disconnect()
                except (RedisConnectionError, OSError) as e:
                    logger.warning(f"Error closing Redis pool: {e}")

            self._pool = None
            self._initialized = False

            logger.info("Redis connection factory closed")


# Global connection factory instance
redis_connection_factory = RedisConnectionFactory()
