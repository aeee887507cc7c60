"""
Base Repository

Common data access operations over one SQLAlchemy model. Repositories never
open or commit transactions; they run inside the session handed to them by
the caller, so the caller owns the transaction boundary.
"""

from typing import Optional, Type
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coffeeshop.models import Base

logger = structlog.get_logger()


class BaseRepository:
    """
    Base repository bound to one session and one model.

    Each repository subclass specifies its model type directly.
    """

    def __init__(self, session: AsyncSession, model: Type[Base]):
        """
        Initialize repository with strict input validation.

        Args:
            session: AsyncSession for database operations
            model: SQLAlchemy model class

        Raises:
            TypeError: If session is not AsyncSession or model is invalid
        """
        if not isinstance(session, AsyncSession):
            raise TypeError(
                f"session must be AsyncSession instance, got {type(session).__name__}"
            )

        if not model or not hasattr(model, "__tablename__"):
            raise TypeError(
                f"model must be valid SQLAlchemy model with __tablename__, got {type(model).__name__}"
            )

        self.session = session
        self.model = model

    async def get(self, id: UUID, for_update: bool = False) -> Optional[Base]:
        """
        Get entity by ID.

        Args:
            id: Entity UUID (REQUIRED)
            for_update: Lock the row until the surrounding transaction ends

        Returns:
            Entity if found, None otherwise
        """
        if id is None:
            raise ValueError("Entity id is required (cannot be None)")

        try:
            stmt = select(self.model).where(self.model.id == id)
            if for_update:
                stmt = stmt.with_for_update()
            result = await self.session.execute(stmt)
            entity = result.scalar_one_or_none()

            if entity:
                logger.debug(
                    "Repository: Entity retrieved",
                    model=self.model.__name__,
                    entity_id=str(id),
                    for_update=for_update,
                )

            return entity

        except Exception as e:
            logger.error(
                "Repository: Failed to get entity",
                model=self.model.__name__,
                entity_id=str(id),
                error=str(e),
                exc_info=True,
            )
            raise

    async def create(self, obj: Base) -> Base:
        """
        Insert a new entity and flush so constraint violations surface here.

        Args:
            obj: Entity instance to create

        Returns:
            Created entity
        """
        if obj is None:
            raise ValueError("Entity object is required (cannot be None)")

        if not isinstance(obj, self.model):
            raise TypeError(
                f"Entity must be {self.model.__name__} instance, got {type(obj).__name__}"
            )

        try:
            self.session.add(obj)
            await self.session.flush()

            logger.info(
                "Repository: Entity created",
                model=self.model.__name__,
                entity_id=str(obj.id),
            )

            return obj

        except Exception as e:
            logger.error(
                "Repository: Failed to create entity",
                model=self.model.__name__,
                error=str(e),
                exc_info=True,
            )
            raise

    async def delete(self, obj: Base) -> None:
        """
        Hard delete an entity loaded in this session.

        Args:
            obj: Entity instance to delete
        """
        if obj is None:
            raise ValueError("Entity object is required (cannot be None)")

        try:
            await self.session.delete(obj)
            await self.session.flush()

            logger.info(
                "Repository: Entity deleted",
                model=self.model.__name__,
                entity_id=str(obj.id),
            )

        except Exception as e:
            logger.error(
                "Repository: Failed to delete entity",
                model=self.model.__name__,
                entity_id=str(obj.id),
                error=str(e),
                exc_info=True,
            )
            raise
