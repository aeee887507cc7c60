"""
Redis Infrastructure Module

Connection lifecycle and exceptions for the Redis queue backend.
"""

from .connection_factory import RedisConnectionFactory, redis_connection_factory
from .exceptions import (
    RedisConfigurationException,
    RedisConnectionException,
    RedisException,
    RedisOperationTimeoutException,
)

__all__ = [
    "RedisConnectionFactory",
    "redis_connection_factory",
    "RedisException",
    "RedisConnectionException",
    "RedisOperationTimeoutException",
    "RedisConfigurationException",
]
