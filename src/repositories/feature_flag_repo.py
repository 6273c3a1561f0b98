"""Repository for feature flag operations."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.db.feature_flag import FeatureFlag


class FeatureFlagRepository:
    """Database operations for feature flags."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, flag: FeatureFlag) -> FeatureFlag:
        self.session.add(flag)
        await self.session.flush()
        await self.session.refresh(flag)
        return flag

    async def save(self, flag: FeatureFlag) -> FeatureFlag:
        await self.session.flush()
        await self.session.refresh(flag)
        return flag

    async def delete(self, flag: FeatureFlag) -> None:
        await self.session.delete(flag)
        await self.session.flush()

    async def get_by_key(self, key: str) -> FeatureFlag | None:
        result = await self.session.execute(select(FeatureFlag).where(FeatureFlag.key == key))
        return result.scalar_one_or_none()

    async def list(self, active_only: bool = False) -> list[FeatureFlag]:
        """List flags, newest first."""
        stmt = select(FeatureFlag)
        if active_only:
            stmt = stmt.where(FeatureFlag.is_active.is_(True))
        result = await self.session.execute(stmt.order_by(FeatureFlag.created_at.desc()))
        return list(result.scalars().all())
