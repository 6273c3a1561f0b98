"""Conversion tracking and experiment result reporting."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import ExperimentNotFoundError, StatisticalError
from src.models.db.event import EventCategory
from src.models.db.experiment import ConversionEvent
from src.models.domain.experiment import ConversionEventRead, ExperimentRead
from src.models.domain.results import ExperimentResult, ExperimentSummary
from src.models.domain.user_context import UserContext
from src.repositories.experiment_repo import ExperimentRepository
from src.services import statistics
from src.services.event_service import EventSink
from src.services.registry import ExperimentRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConversionService:
    """Records conversions and turns them into per-variant results.

    Result computation failures are raised as ``StatisticalError``; results
    are never silently zeroed.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        registry: ExperimentRegistry,
        events: EventSink | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = ExperimentRepository(db_session)
        self._registry = registry
        self._events = events
        self._now = now

    async def track_conversion(
        self,
        experiment_id: uuid.UUID,
        metric_name: str,
        context: UserContext,
        value: float = 1.0,
        properties: dict[str, Any] | None = None,
    ) -> ConversionEventRead | None:
        """Append a conversion for an assigned user.

        Users that were never assigned cannot convert; the call is then a
        no-op returning None.
        """
        assignment = await self._repo.get_assignment(experiment_id, context.user_id)
        if assignment is None:
            logger.debug(
                "Ignoring conversion from unassigned user",
                extra={"experiment_id": str(experiment_id), "metric_name": metric_name},
            )
            return None

        event = await self._repo.create_conversion(
            ConversionEvent(
                user_id=context.user_id,
                experiment_id=experiment_id,
                variant_id=assignment.variant_id,
                metric_name=metric_name,
                value=value,
                properties=properties,
                session_id=context.session_id,
            )
        )

        if self._events is not None:
            await self._events.publish(
                "ab_conversion",
                EventCategory.CONVERSION,
                user_id=context.user_id,
                session_id=context.session_id,
                properties={
                    **(properties or {}),
                    "experiment_id": str(experiment_id),
                    "variant_id": assignment.variant_id,
                    "metric_name": metric_name,
                    "value": value,
                },
                event_timestamp=event.occurred_at,
            )
        return ConversionEventRead.model_validate(event)

    async def calculate_results(self, experiment_id: uuid.UUID) -> list[ExperimentResult]:
        """Per (variant, metric) statistics, recomputed from stored rows.

        Raises:
            ExperimentNotFoundError: If the experiment does not exist.
            StatisticalError: If the counts could not be read or analysed.
        """
        experiment = await self._load(experiment_id)
        return await self._calculate(experiment)

    async def get_experiment_summary(self, experiment_id: uuid.UUID) -> ExperimentSummary:
        experiment = await self._load(experiment_id)
        results = await self._calculate(experiment)

        now = self._now()
        status = statistics.run_status(experiment, results, now)
        recommendation = statistics.recommend(status, experiment.statistical_config)

        logger.info(
            "Experiment summary computed",
            extra={
                "experiment_id": str(experiment_id),
                "total_sample_size": status.total_sample_size,
                "action": recommendation.action,
            },
        )
        return ExperimentSummary(
            experiment=experiment,
            results=results,
            status=status,
            recommendation=recommendation,
        )

    async def _load(self, experiment_id: uuid.UUID) -> ExperimentRead:
        try:
            experiment = await self._registry.get_experiment(experiment_id)
        except SQLAlchemyError as e:
            raise StatisticalError(f"Could not load experiment '{experiment_id}'") from e
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    async def _calculate(self, experiment: ExperimentRead) -> list[ExperimentResult]:
        try:
            sample_sizes = await self._repo.count_assignments_by_variant(experiment.id)
            conversions = await self._repo.count_conversions(experiment.id)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to aggregate experiment data",
                exc_info=True,
                extra={"experiment_id": str(experiment.id)},
            )
            raise StatisticalError(
                f"Could not aggregate results for experiment '{experiment.id}'"
            ) from e

        try:
            return statistics.calculate_results(
                experiment, sample_sizes, conversions, self._now()
            )
        except (ArithmeticError, ValueError) as e:
            raise StatisticalError(
                f"Could not compute results for experiment '{experiment.id}': {e}"
            ) from e
