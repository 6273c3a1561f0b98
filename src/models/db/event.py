"""Analytics event database model (the engine's event sink)."""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.db.base import Base


class EventCategory(enum.StrEnum):
    """Category of analytics event."""

    EXPOSURE = "exposure"
    CONVERSION = "conversion"
    FLAG_EVALUATION = "flag_evaluation"
    LIFECYCLE = "lifecycle"


class AnalyticsEvent(Base):
    """Fire-and-forget analytics record.

    Exposure, conversion, flag evaluation and lifecycle events share one
    table; the payload lives in ``properties``.
    """

    __tablename__ = "analytics_events"

    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_category: Mapped[EventCategory] = mapped_column(
        Enum(EventCategory, name="event_category"),
        nullable=False,
    )
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    properties: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    event_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_events_name_timestamp", "event_name", "event_timestamp"),
        Index(
            "ix_events_user",
            "user_id",
            postgresql_where="user_id IS NOT NULL",
        ),
        Index("ix_events_category_timestamp", "event_category", "event_timestamp"),
    )
