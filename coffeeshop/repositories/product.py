"""
Product Repository

Specialized repository for the Product model: uniqueness lookups and
partial ($set style) updates.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coffeeshop.models import Product, utcnow

from .base import BaseRepository

logger = structlog.get_logger()


class ProductRepository(BaseRepository):
    """Product-specific repository."""

    # Columns a caller may change through update_fields()
    MUTABLE_FIELDS = frozenset(
        {
            "name",
            "price",
            "discount",
            "category",
            "summary",
            "description",
            "ingredients",
            "images",
            "thumbnail",
            "ratings",
        }
    )

    def __init__(self, session: AsyncSession):
        """Initialize product repository."""
        super().__init__(session, Product)

    async def get_by_name(self, name: str) -> Optional[Product]:
        """
        Get product by its unique name.

        Args:
            name: Product name (REQUIRED)

        Returns:
            Product if found, None otherwise
        """
        if not name:
            raise ValueError("name is required (cannot be empty)")

        result = await self.session.execute(select(Product).where(Product.name == name))
        return result.scalar_one_or_none()

    async def name_taken(self, name: str, exclude_id: Optional[UUID] = None) -> bool:
        """Check whether another product already uses this name."""
        existing = await self.get_by_name(name)
        if existing is None:
            return False
        return exclude_id is None or existing.id != exclude_id

    async def update_fields(
        self,
        product: Product,
        fields: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Product:
        """
        Apply $set semantics: only the given fields change, updated_at is refreshed.

        Args:
            product: Product loaded in the current session
            fields: Column values to set
            now: Timestamp for updated_at, defaults to the current UTC time

        Returns:
            Updated product

        Raises:
            ValueError: If a field is not a mutable product column
        """
        unknown = set(fields) - self.MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown or immutable product fields: {sorted(unknown)}")

        for key, value in fields.items():
            setattr(product, key, value)
        product.updated_at = now or utcnow()

        try:
            await self.session.flush()

            logger.info(
                "ProductRepository: Product updated",
                product_id=str(product.id),
                fields=sorted(fields),
            )

            return product

        except Exception as e:
            logger.error(
                "ProductRepository: Failed to update product",
                product_id=str(product.id),
                error=str(e),
                exc_info=True,
            )
            raise
