"""Analytics event sink for exposure, conversion, flag and lifecycle events."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.db.event import AnalyticsEvent, EventCategory
from src.repositories.event_repo import EventRepository

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Fire-and-forget publisher. Implementations must never raise."""

    async def publish(
        self,
        event_name: str,
        category: EventCategory,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        properties: dict[str, Any] | None = None,
        event_timestamp: datetime | None = None,
    ) -> Any: ...


class EventPublisher:
    """Publishes analytics events to the database.

    Non-blocking: failures log warnings but never raise to callers.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._repo = EventRepository(db_session)

    async def publish(
        self,
        event_name: str,
        category: EventCategory,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        properties: dict[str, Any] | None = None,
        event_timestamp: datetime | None = None,
    ) -> AnalyticsEvent | None:
        """Publish a single analytics event.

        Returns the created event, or None if publishing failed.
        """
        try:
            event = AnalyticsEvent(
                event_name=event_name,
                event_category=category,
                user_id=user_id,
                session_id=session_id,
                properties=to_jsonable_python(properties) if properties else None,
                event_timestamp=event_timestamp or datetime.now(UTC),
                received_at=datetime.now(UTC),
            )
            return await self._repo.create(event)
        except Exception:
            logger.warning("Failed to publish event %s", event_name, exc_info=True)
            return None
