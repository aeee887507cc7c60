"""
Product Schemas

Pydantic models for product mutation input and output.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _clean_ingredients(v):
    if v is None:
        return v
    cleaned = [item.strip() for item in v]
    if any(not item for item in cleaned):
        raise ValueError("ingredients cannot contain empty entries")
    return cleaned


class ProductCreate(BaseModel):
    """Fields accepted when creating a product."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=255, description="Unique name")
    price: float = Field(..., gt=0, description="Price, strictly positive")
    discount: int = Field(default=0, ge=0, le=100, description="Discount percent")
    category: str = Field(..., min_length=1, max_length=100)
    summary: str = Field(default="", max_length=1000)
    description: str = Field(default="")
    ingredients: List[str] = Field(default_factory=list)
    ratings: float = Field(default=0.0, ge=0.0, le=5.0)

    @field_validator("ingredients")
    @classmethod
    def validate_ingredients(cls, v):
        return _clean_ingredients(v)


class ProductUpdate(BaseModel):
    """Partial update. Only fields present in the input are changed."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    price: Optional[float] = Field(default=None, gt=0)
    discount: Optional[int] = Field(default=None, ge=0, le=100)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    summary: Optional[str] = Field(default=None, max_length=1000)
    description: Optional[str] = None
    ingredients: Optional[List[str]] = None
    ratings: Optional[float] = Field(default=None, ge=0.0, le=5.0)

    @field_validator("ingredients")
    @classmethod
    def validate_ingredients(cls, v):
        return _clean_ingredients(v)

    @model_validator(mode="after")
    def reject_explicit_nulls(self):
        nulls = [name for name in self.model_fields_set if getattr(self, name) is None]
        if nulls:
            raise ValueError(f"fields cannot be set to null: {sorted(nulls)}")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class ProductRead(BaseModel):
    """Product as returned to the caller after a mutation."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    price: float
    discount: int
    category: str
    summary: str
    description: str
    ingredients: List[str]
    images: List[str]
    thumbnail: str
    ratings: float
    author: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class ImageUpload(BaseModel):
    """Raw image blob submitted with a mutation."""

    data: bytes = Field(..., min_length=1)
    filename: Optional[str] = None
