"""Idempotent experiment assignment.

A user's first successful assignment to an experiment is persisted and then
served unchanged for the lifetime of the experiment. Concurrent first calls
from any number of instances converge on the single row that wins the
``(user_id, experiment_id)`` unique constraint.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import AssignmentError, ExperimentNotFoundError, VariantNotFoundError
from src.core.hashing import BucketPurpose, user_bucket
from src.models.db.event import EventCategory
from src.models.db.experiment import ExperimentAssignment
from src.models.domain.experiment import AssignmentRead, ExperimentRead, ExperimentVariant
from src.models.domain.user_context import UserContext
from src.repositories.experiment_repo import ExperimentRepository
from src.services.event_service import EventSink
from src.services.registry import ExperimentRegistry
from src.services.targeting import TargetingEvaluator

logger = logging.getLogger(__name__)


class AssignmentEngine:
    """Buckets users into experiment variants."""

    def __init__(
        self,
        db_session: AsyncSession,
        registry: ExperimentRegistry,
        events: EventSink | None = None,
        targeting: TargetingEvaluator | None = None,
        max_retries: int = 3,
    ) -> None:
        self._repo = ExperimentRepository(db_session)
        self._registry = registry
        self._events = events
        self._targeting = targeting or TargetingEvaluator()
        self._max_retries = max_retries

    @staticmethod
    def is_in_traffic(user_id: str, traffic_allocation: int) -> bool:
        return user_bucket(user_id, BucketPurpose.TRAFFIC) < traffic_allocation

    @staticmethod
    def select_variant(
        user_id: str,
        variants: Sequence[ExperimentVariant],
    ) -> ExperimentVariant | None:
        """Pick a variant by walking cumulative traffic weights in order.

        Falls back to the control, or the first variant, when the weights do
        not cover the user's bucket.
        """
        if not variants:
            return None

        point = user_bucket(user_id, BucketPurpose.VARIANT)
        cumulative = 0
        for variant in variants:
            cumulative += variant.traffic_weight
            if point < cumulative:
                return variant

        logger.warning(
            "Variant weights do not cover bucket %d, falling back", point,
            extra={"variant_ids": [v.id for v in variants]},
        )
        return next((v for v in variants if v.is_control), variants[0])

    async def assign(
        self,
        experiment_id: uuid.UUID,
        context: UserContext,
    ) -> AssignmentRead | None:
        """Return the user's assignment, creating it on first eligible call.

        Returns None when the experiment is not active or the user is outside
        its targeting or traffic allocation.

        Raises:
            ExperimentNotFoundError: If the experiment never existed.
            AssignmentError: If the assignment could not be stored or read back.
        """
        existing = await self._repo.get_assignment(experiment_id, context.user_id)
        if existing is not None:
            return AssignmentRead.model_validate(existing)

        experiment = await self._registry.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        if not experiment.is_active:
            return None
        if not self._targeting.matches(context, experiment.targeting_rules):
            return None
        if not self.is_in_traffic(context.user_id, experiment.traffic_allocation):
            return None

        variant = self.select_variant(context.user_id, experiment.variants)
        if variant is None:
            return None

        assignment, created = await self._persist(experiment, variant, context)
        result = AssignmentRead.model_validate(assignment)
        if created:
            logger.info(
                "User assigned",
                extra={
                    "experiment_id": str(experiment_id),
                    "variant_id": result.variant_id,
                    "user_id": context.user_id,
                },
            )
            await self._emit_exposure(experiment, result)
        return result

    async def get_assignment(
        self,
        experiment_id: uuid.UUID,
        context: UserContext,
    ) -> AssignmentRead | None:
        """End-user entry point: any failure means "not in the experiment"."""
        try:
            return await self.assign(experiment_id, context)
        except Exception:
            logger.warning(
                "Assignment failed, treating user as unassigned",
                exc_info=True,
                extra={"experiment_id": str(experiment_id), "user_id": context.user_id},
            )
            return None

    async def get_variant(
        self,
        experiment_id: uuid.UUID,
        context: UserContext,
    ) -> ExperimentVariant | None:
        """The assigned variant with its config payload, or None if unassigned.

        Raises:
            VariantNotFoundError: If the stored variant id is no longer defined.
        """
        assignment = await self.get_assignment(experiment_id, context)
        if assignment is None:
            return None

        experiment = await self._registry.get_experiment(experiment_id)
        variant = experiment.get_variant(assignment.variant_id) if experiment else None
        if variant is None:
            raise VariantNotFoundError(experiment_id, assignment.variant_id)
        return variant

    async def _persist(
        self,
        experiment: ExperimentRead,
        variant: ExperimentVariant,
        context: UserContext,
    ) -> tuple[ExperimentAssignment, bool]:
        """Insert the assignment, or read back the row a concurrent writer won with."""
        for attempt in range(1, self._max_retries + 1):
            try:
                row = await self._repo.insert_assignment(
                    ExperimentAssignment(
                        user_id=context.user_id,
                        experiment_id=experiment.id,
                        variant_id=variant.id,
                        session_id=context.session_id,
                        user_agent=context.user_agent,
                        user_properties=context.user_properties.model_dump(
                            mode="json", exclude_none=True
                        ),
                    )
                )
                return row, True
            except IntegrityError:
                winner = await self._repo.get_assignment(experiment.id, context.user_id)
                if winner is not None:
                    logger.info(
                        "Concurrent first assignment resolved to existing row",
                        extra={"experiment_id": str(experiment.id), "user_id": context.user_id},
                    )
                    return winner, False
                logger.warning(
                    "Assignment insert conflicted but no row was found (attempt %d/%d)",
                    attempt,
                    self._max_retries,
                )
            except SQLAlchemyError:
                logger.warning(
                    "Assignment insert failed (attempt %d/%d)",
                    attempt,
                    self._max_retries,
                    exc_info=True,
                )

        raise AssignmentError(
            f"Could not store assignment for user '{context.user_id}' "
            f"in experiment '{experiment.id}' after {self._max_retries} attempts"
        )

    async def _emit_exposure(self, experiment: ExperimentRead, assignment: AssignmentRead) -> None:
        if self._events is None:
            return
        await self._events.publish(
            "ab_exposure",
            EventCategory.EXPOSURE,
            user_id=assignment.user_id,
            session_id=assignment.session_id,
            properties={
                "experiment_id": str(experiment.id),
                "feature_key": experiment.feature_key,
                "variant_id": assignment.variant_id,
            },
            event_timestamp=assignment.assigned_at,
        )
