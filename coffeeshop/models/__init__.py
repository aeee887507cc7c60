"""
Coffeeshop Database Models

SQLAlchemy models for the primary record store.

Product image columns hold object-store keys. The blobs behind those keys are
written by background tasks, so a key can be present here shortly before the
object exists in the bucket.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Canonical Base class for all database models."""

    pass


class TimestampMixin:
    """Mixin for timestamp fields."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class User(Base, TimestampMixin):
    """User account model. Only read here, to address outgoing mail."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Product(Base, TimestampMixin):
    """Product (menu item) model."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    ingredients: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    images: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    thumbnail: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    ratings: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    author: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        CheckConstraint("price > 0", name="check_price_positive"),
        CheckConstraint("discount BETWEEN 0 AND 100", name="check_discount_range"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name={self.name}, category={self.category})>"


__all__ = ["Base", "TimestampMixin", "User", "Product", "utcnow"]
