"""
Daily record reader.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kidcare.core.exceptions import ForbiddenError, NotFoundError
from kidcare.models.child import Child
from kidcare.models.record import Record

logger = logging.getLogger(__name__)


class RecordRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_one(self, record_id: int, user_id: int) -> Record:
        """Fetch a record whose child belongs to ``user_id``."""
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(Record, Child.user_id)
                    .join(Child, Child.id == Record.child_id)
                    .where(Record.id == record_id)
                )
            ).first()

        if row is None:
            raise NotFoundError(f"Record {record_id} not found")
        record, owner_id = row
        if owner_id != user_id:
            raise ForbiddenError("No permission to access this record")
        return record

    async def find_all_by_child(self, child_id: int, user_id: int) -> List[Record]:
        """All records of a child, newest first."""
        async with self.session_factory() as session:
            child = await session.get(Child, child_id)
            if child is None:
                raise NotFoundError(f"Child {child_id} not found")
            if child.user_id != user_id:
                raise ForbiddenError("No permission to access this child")

            result = await session.execute(
                select(Record)
                .where(Record.child_id == child_id)
                .order_by(Record.record_timestamp.desc())
            )
            return list(result.scalars().all())

    async def get(self, record_id: int) -> Optional[Record]:
        """Unscoped lookup used by background re-indexing."""
        async with self.session_factory() as session:
            return await session.get(Record, record_id)

    async def list_for_child(
        self, child_id: int, limit: int, from_date: Optional[datetime] = None
    ) -> List[Record]:
        stmt = select(Record).where(Record.child_id == child_id)
        if from_date is not None:
            stmt = stmt.where(Record.record_timestamp >= from_date)
        stmt = stmt.order_by(Record.record_timestamp.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())
