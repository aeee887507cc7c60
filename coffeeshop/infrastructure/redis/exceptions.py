"""
Redis Infrastructure Exceptions

Domain-specific exceptions for Redis operations. Every Redis failure seen by
the queue backend surfaces as one of these, never as a raw redis-py error.
"""

from typing import Optional

from coffeeshop.core.errors import QueueBackendError


class RedisException(QueueBackendError):
    """Base exception for Redis-related errors."""


class RedisConnectionException(RedisException):
    """Raised when Redis connection fails or is lost."""

    def __init__(
        self,
        message: str = "Redis connection failed",
        host: Optional[str] = None,
        port: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if host:
            details["host"] = host
        if port:
            details["port"] = port

        super().__init__(
            message=message,
            error_code="REDIS_CONNECTION_ERROR",
            details=details,
            original_error=original_error,
        )


class RedisOperationTimeoutException(RedisException):
    """Raised when Redis operation times out."""

    def __init__(
        self,
        operation: str,
        timeout_seconds: Optional[float] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Redis operation '{operation}' timed out",
            error_code="REDIS_TIMEOUT_ERROR",
            details={"operation": operation, "timeout_seconds": timeout_seconds},
            original_error=original_error,
        )


class RedisConfigurationException(RedisException):
    """Raised when the Redis client cannot be configured."""

    def __init__(
        self,
        message: str = "Redis configuration error",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            error_code="REDIS_CONFIGURATION_ERROR",
            original_error=original_error,
        )
