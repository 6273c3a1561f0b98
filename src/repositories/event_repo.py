"""Repository for analytics event operations."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.db.event import AnalyticsEvent


class EventRepository:
    """Repository for analytics event database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, event: AnalyticsEvent) -> AnalyticsEvent:
        """Insert a single event inside a savepoint.

        A failed insert rolls back only the savepoint, leaving the caller's
        transaction intact.
        """
        async with self.session.begin_nested():
            self.session.add(event)
            await self.session.flush()
        return event
