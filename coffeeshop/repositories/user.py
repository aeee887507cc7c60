"""
User Repository

Read access to user accounts for mail delivery tasks.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coffeeshop.models import User

from .base import BaseRepository

logger = structlog.get_logger()


class UserRepository(BaseRepository):
    """User-specific repository."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, User)

    async def get_by_email(self, email: str) -> Optional[User]:
        """
        Get user by email address.

        Args:
            email: Email address (REQUIRED)

        Returns:
            User if found, None otherwise
        """
        if not email:
            raise ValueError("email is required (cannot be empty)")

        result = await self.session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if user is None:
            logger.warning("UserRepository: User not found", email=email)

        return user
