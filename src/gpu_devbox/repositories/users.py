"""Repository for User model operations."""

from sqlalchemy.ext.asyncio import AsyncSession

from gpu_devbox.models.users import User

from .base import BaseRepository


class UserRepository(BaseRepository[User]):
    """Repository for user lookups."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize user repository.

        Args:
            session: Database session
        """
        super().__init__(session, User)
