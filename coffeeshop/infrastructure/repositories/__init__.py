"""
Queue backends.
"""

from .memory_queue_repository import InMemoryQueueBackend
from .queue_repository import QueueBackend, RedisQueueBackend

__all__ = ["QueueBackend", "RedisQueueBackend", "InMemoryQueueBackend"]
