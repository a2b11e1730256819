"""
Base repository class with common operations.

Provides a foundation for domain-specific repositories with:
- Type-safe generic lookups
- Consistent commit handling
"""
from typing import Generic, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

T = TypeVar("T", bound=DeclarativeBase)


class BaseRepository(Generic[T]):
    """
    Generic base repository.

    Subclass this and set the `model` class attribute to your SQLAlchemy model.
    """

    model: Type[T]

    def __init__(self, db: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy async session
        """
        self.db = db

    async def get_by_id(self, id: int) -> Optional[T]:
        """
        Get a single record by ID.

        Args:
            id: Record ID

        Returns:
            Record if found, None otherwise
        """
        result = await self.db.execute(
            select(self.model).where(self.model.id == id)
        )
        return result.scalar_one_or_none()

    async def create(self, entity: T) -> T:
        """
        Create a new record.

        Args:
            entity: Entity to create

        Returns:
            Created entity with ID populated
        """
        self.db.add(entity)
        await self.db.commit()
        await self.db.refresh(entity)
        return entity
