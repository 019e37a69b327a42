"""
Child profile reader.
"""
import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kidcare.core.exceptions import ForbiddenError, NotFoundError
from kidcare.models.child import Child

logger = logging.getLogger(__name__)


class ChildRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_one(self, child_id: int, user_id: int) -> Child:
        """
        Fetch a child owned by ``user_id``.

        Raises:
            NotFoundError: no such child
            ForbiddenError: the child belongs to another user
        """
        async with self.session_factory() as session:
            child = await session.get(Child, child_id)

        if child is None:
            raise NotFoundError(f"Child {child_id} not found")
        if child.user_id != user_id:
            raise ForbiddenError("No permission to access this child")
        return child

    async def find_all(self, user_id: int) -> List[Child]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Child).where(Child.user_id == user_id).order_by(Child.id)
            )
            return list(result.scalars().all())

    async def get(self, child_id: int):
        """Unscoped lookup used by background re-indexing."""
        async with self.session_factory() as session:
            return await session.get(Child, child_id)
