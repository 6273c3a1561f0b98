"""Experiment database models: definitions, assignments and conversions."""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    ARRAY,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.models.db.base import Base, TimestampMixin


class ExperimentStatus(enum.StrEnum):
    """Lifecycle state of an experiment."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Experiment(Base, TimestampMixin):
    """A/B test definition.

    Variants, metrics, targeting rules and statistical configuration are
    stored as JSONB documents validated by the domain schemas on the way in.
    """

    __tablename__ = "experiments"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hypothesis: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(ExperimentStatus, name="experiment_status"),
        nullable=False,
        default=ExperimentStatus.DRAFT,
    )
    feature_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )
    variants: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    metrics: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    targeting_rules: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    traffic_allocation: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=100,
    )
    statistical_config: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[list[str]] = mapped_column(
        ARRAY(String(100)),
        nullable=False,
        default=list,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (Index("ix_experiments_status", "status"),)


class ExperimentAssignment(Base):
    """The variant a user was bucketed into.

    The unique (user_id, experiment_id) index is what settles concurrent
    first assignments across instances: the loser of the race reads back the
    winner's row.
    """

    __tablename__ = "experiment_assignments"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_properties: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "experiment_id", name="uq_assignments_user_experiment"),
        Index("ix_assignments_experiment_variant", "experiment_id", "variant_id"),
    )


class ConversionEvent(Base):
    """Append-only conversion observation tied to an assignment's variant."""

    __tablename__ = "conversion_events"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    properties: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index(
            "ix_conversions_experiment_variant_metric",
            "experiment_id",
            "variant_id",
            "metric_name",
        ),
        Index("ix_conversions_user", "user_id"),
    )
