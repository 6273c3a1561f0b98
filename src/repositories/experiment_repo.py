"""Repository for experiment operations."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.db.experiment import (
    ConversionEvent,
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
)


class ExperimentRepository:
    """Database operations for experiments, assignments, and conversions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Experiments ---

    async def create(self, experiment: Experiment) -> Experiment:
        """Create a new experiment."""
        self.session.add(experiment)
        await self.session.flush()
        await self.session.refresh(experiment)
        return experiment

    async def save(self, experiment: Experiment) -> Experiment:
        """Flush pending changes and reload server-maintained columns."""
        await self.session.flush()
        await self.session.refresh(experiment)
        return experiment

    async def get_by_id(self, experiment_id: uuid.UUID) -> Experiment | None:
        """Get experiment by ID."""
        result = await self.session.execute(
            select(Experiment).where(Experiment.id == experiment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_feature_key(self, feature_key: str) -> Experiment | None:
        """Get experiment by its unique feature key."""
        result = await self.session.execute(
            select(Experiment).where(Experiment.feature_key == feature_key)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        status: ExperimentStatus | None = None,
        tag: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Experiment]:
        """List experiments, newest first."""
        conditions: list[Any] = []
        if status is not None:
            conditions.append(Experiment.status == status)
        if tag is not None:
            conditions.append(Experiment.tags.any(tag))

        stmt = select(Experiment)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(Experiment.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self) -> list[Experiment]:
        """All ACTIVE experiments in a single read."""
        result = await self.session.execute(
            select(Experiment).where(Experiment.status == ExperimentStatus.ACTIVE)
        )
        return list(result.scalars().all())

    # --- Assignments ---

    async def get_assignment(
        self, experiment_id: uuid.UUID, user_id: str
    ) -> ExperimentAssignment | None:
        """Get existing assignment for a user in an experiment."""
        result = await self.session.execute(
            select(ExperimentAssignment).where(
                and_(
                    ExperimentAssignment.experiment_id == experiment_id,
                    ExperimentAssignment.user_id == user_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def insert_assignment(
        self, assignment: ExperimentAssignment
    ) -> ExperimentAssignment:
        """Insert a new assignment inside a savepoint.

        Raises ``IntegrityError`` when another writer already assigned the
        user; only the savepoint is rolled back, so the session stays usable
        for reading the winning row.
        """
        async with self.session.begin_nested():
            self.session.add(assignment)
            await self.session.flush()
        await self.session.refresh(assignment)
        return assignment

    async def count_assignments_by_variant(
        self, experiment_id: uuid.UUID
    ) -> dict[str, int]:
        """Count distinct assigned users per variant."""
        stmt = (
            select(
                ExperimentAssignment.variant_id,
                func.count(func.distinct(ExperimentAssignment.user_id)).label("count"),
            )
            .where(ExperimentAssignment.experiment_id == experiment_id)
            .group_by(ExperimentAssignment.variant_id)
        )
        result = await self.session.execute(stmt)
        return {row[0]: row[1] for row in result.all()}

    # --- Conversions ---

    async def create_conversion(self, event: ConversionEvent) -> ConversionEvent:
        """Append a conversion event."""
        self.session.add(event)
        await self.session.flush()
        await self.session.refresh(event)
        return event

    async def count_conversions(
        self, experiment_id: uuid.UUID
    ) -> dict[tuple[str, str], int]:
        """Count conversion events per (variant_id, metric_name)."""
        stmt = (
            select(
                ConversionEvent.variant_id,
                ConversionEvent.metric_name,
                func.count(ConversionEvent.id).label("count"),
            )
            .where(ConversionEvent.experiment_id == experiment_id)
            .group_by(ConversionEvent.variant_id, ConversionEvent.metric_name)
        )
        result = await self.session.execute(stmt)
        return {(row[0], row[1]): row[2] for row in result.all()}
