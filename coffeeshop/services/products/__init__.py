"""
Product mutation services.
"""

from .coordinator import PendingSideEffects, ProductCoordinator
from .schemas import ImageUpload, ProductCreate, ProductRead, ProductUpdate

__all__ = [
    "ProductCoordinator",
    "PendingSideEffects",
    "ProductCreate",
    "ProductUpdate",
    "ProductRead",
    "ImageUpload",
]
