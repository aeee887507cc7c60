"""
Repository Pattern Implementation

All primary-store access goes through repositories bound to a caller-owned
session.
"""

from .base import BaseRepository
from .product import ProductRepository
from .user import UserRepository

__all__ = [
    "BaseRepository",
    "ProductRepository",
    "UserRepository",
]
