"""
ExtendedCoverRepository for dependents attached to a user's plan
"""

from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import ExtendedCover


class ExtendedCoverRepository:
    """Owner-scoped access to extended cover rows. Deletes are soft."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active_for_user(self, user_id: str) -> List[ExtendedCover]:
        result = await self.db.execute(
            select(ExtendedCover)
            .where(ExtendedCover.user_id == user_id, ExtendedCover.is_active.is_(True))
            .order_by(ExtendedCover.created_at)
        )
        return list(result.scalars().all())

    async def get_for_user(self, cover_id: str, user_id: str) -> Optional[ExtendedCover]:
        """Active row owned by user_id, or None."""
        result = await self.db.execute(
            select(ExtendedCover).where(
                ExtendedCover.id == cover_id,
                ExtendedCover.user_id == user_id,
                ExtendedCover.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def create_cover(self, cover_data: dict) -> ExtendedCover:
        cover = ExtendedCover(**cover_data)
        self.db.add(cover)
        await self.db.flush()
        await self.db.refresh(cover)
        return cover

    async def update_cover(self, cover: ExtendedCover, updates: dict) -> ExtendedCover:
        for key, value in updates.items():
            if hasattr(cover, key):
                setattr(cover, key, value)
        await self.db.flush()
        await self.db.refresh(cover)
        return cover

    async def deactivate_cover(self, cover: ExtendedCover) -> ExtendedCover:
        cover.is_active = False
        await self.db.flush()
        return cover
