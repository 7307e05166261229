from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.models.staff import Staff


class StaffDirectory:
    """Read-only lookups of active staff members."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find_active_by_email(self, email: str) -> Optional[Staff]:
        stmt = select(Staff).where(
            func.lower(Staff.email) == email.lower(),
            Staff.is_active.is_(True)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def find_active_by_id(self, staff_id: str) -> Optional[Staff]:
        stmt = select(Staff).where(Staff.id == staff_id, Staff.is_active.is_(True))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()
