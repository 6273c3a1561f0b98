"""Experiment and feature flag registries: validated writes, cached reads."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.cache import RegistryCaches
from src.core.exceptions import ExperimentNotFoundError, FlagNotFoundError, InvalidConfigError
from src.models.db.event import EventCategory
from src.models.db.experiment import Experiment, ExperimentStatus
from src.models.db.feature_flag import FeatureFlag
from src.models.domain.experiment import (
    ExperimentCreate,
    ExperimentRead,
    ExperimentUpdate,
    build_variants,
    experiment_config_errors,
)
from src.models.domain.feature_flag import FeatureFlagCreate, FeatureFlagRead, FeatureFlagUpdate
from src.repositories.experiment_repo import ExperimentRepository
from src.repositories.feature_flag_repo import FeatureFlagRepository
from src.services.cache_invalidation import CacheInvalidationBus, CacheKind
from src.services.event_service import EventSink

logger = logging.getLogger(__name__)

_CLEARABLE_EXPERIMENT_FIELDS = {"description", "hypothesis", "business_justification"}
_CLEARABLE_FLAG_FIELDS = {"description", "default_value"}


def _raise_if_invalid(errors: list[str]) -> None:
    if not errors:
        return
    detail = errors[0] if len(errors) == 1 else "Invalid experiment configuration"
    raise InvalidConfigError(detail, errors)


class ExperimentRegistry:
    """Owns experiment definitions and their lifecycle.

    Reads go through the process-wide experiment cache. Every write drops the
    written entry locally and broadcasts the drop to other instances.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        caches: RegistryCaches,
        events: EventSink | None = None,
        bus: CacheInvalidationBus | None = None,
    ) -> None:
        self._repo = ExperimentRepository(db_session)
        self._cache = caches.experiments
        self._events = events
        self._bus = bus

    async def get_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead | None:
        """Read-through lookup. None means the id never existed."""
        cached = self._cache.get(experiment_id)
        if cached is not None:
            return cached

        experiment = await self._repo.get_by_id(experiment_id)
        if experiment is None:
            return None
        snapshot = ExperimentRead.model_validate(experiment)
        self._cache.set(experiment_id, snapshot)
        return snapshot

    async def require_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        experiment = await self.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    async def list_active(self) -> list[ExperimentRead]:
        """Active experiments, reloading the whole cache once it is stale."""
        if self._cache.needs_refresh():
            await self.refresh()
        return [e for e in self._cache.values() if e.is_active]

    async def refresh(self) -> None:
        experiments = await self._repo.list_active()
        self._cache.replace_all(
            (e.id, ExperimentRead.model_validate(e)) for e in experiments
        )
        logger.info("Experiment cache refreshed", extra={"active_count": len(experiments)})

    async def list_experiments(
        self,
        status: ExperimentStatus | None = None,
        tag: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExperimentRead]:
        """List experiments straight from the database, newest first."""
        experiments = await self._repo.list(status=status, tag=tag, limit=limit, offset=offset)
        return [ExperimentRead.model_validate(e) for e in experiments]

    async def create_experiment(self, data: ExperimentCreate) -> ExperimentRead:
        """Validate and store a new DRAFT experiment."""
        _raise_if_invalid(experiment_config_errors(data.variants, data.metrics))

        if await self._repo.get_by_feature_key(data.feature_key) is not None:
            raise InvalidConfigError(
                f"An experiment with feature key '{data.feature_key}' already exists"
            )

        experiment = Experiment(
            name=data.name,
            description=data.description,
            hypothesis=data.hypothesis,
            business_justification=data.business_justification,
            status=ExperimentStatus.DRAFT,
            feature_key=data.feature_key,
            variants=[
                v.model_dump(mode="json") for v in build_variants(data.feature_key, data.variants)
            ],
            metrics=[m.model_dump(mode="json") for m in data.metrics],
            targeting_rules=[r.model_dump(mode="json") for r in data.targeting_rules],
            traffic_allocation=data.traffic_allocation,
            statistical_config=data.statistical_config.model_dump(mode="json"),
            created_by=data.created_by,
            tags=data.tags,
        )
        created = await self._repo.create(experiment)
        await self._invalidate(created.id)

        logger.info(
            "Experiment created",
            extra={"experiment_id": str(created.id), "feature_key": created.feature_key},
        )
        return ExperimentRead.model_validate(created)

    async def update_experiment(
        self,
        experiment_id: uuid.UUID,
        data: ExperimentUpdate,
    ) -> ExperimentRead:
        """Apply a partial update and re-validate the result.

        Variants and metrics are frozen once the experiment leaves DRAFT, and
        finished experiments accept no edits at all.
        """
        experiment = await self._get_or_raise(experiment_id)
        if experiment.status in (ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED):
            raise InvalidConfigError(f"Cannot update a {experiment.status} experiment")

        patch = data.model_dump(exclude_unset=True, mode="json")
        changes_arms = data.variants is not None or data.metrics is not None
        if changes_arms and experiment.status != ExperimentStatus.DRAFT:
            raise InvalidConfigError(
                "Variants and metrics can only be changed while the experiment is a draft"
            )

        current = ExperimentRead.model_validate(experiment)
        _raise_if_invalid(
            experiment_config_errors(
                data.variants if data.variants is not None else list(current.variants),
                data.metrics if data.metrics is not None else current.metrics,
            )
        )

        if data.variants is not None:
            patch["variants"] = [
                v.model_dump(mode="json")
                for v in build_variants(experiment.feature_key, data.variants)
            ]
        for field, value in patch.items():
            if value is None and field not in _CLEARABLE_EXPERIMENT_FIELDS:
                continue
            setattr(experiment, field, value)

        updated = await self._repo.save(experiment)
        await self._invalidate(experiment_id)
        return ExperimentRead.model_validate(updated)

    async def start_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Start a DRAFT experiment or resume a PAUSED one."""
        experiment = await self._get_or_raise(experiment_id)
        self._check_transition(
            experiment, (ExperimentStatus.DRAFT, ExperimentStatus.PAUSED), "start"
        )

        resumed = experiment.status == ExperimentStatus.PAUSED
        experiment.status = ExperimentStatus.ACTIVE
        if experiment.started_at is None:
            experiment.started_at = datetime.now(UTC)
        return await self._finish_transition(
            experiment, "experiment_started", {"resumed": resumed}
        )

    async def pause_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        experiment = await self._get_or_raise(experiment_id)
        self._check_transition(experiment, (ExperimentStatus.ACTIVE,), "pause")

        experiment.status = ExperimentStatus.PAUSED
        return await self._finish_transition(experiment, "experiment_paused", {})

    async def stop_experiment(
        self,
        experiment_id: uuid.UUID,
        reason: str | None = None,
    ) -> ExperimentRead:
        """Complete an ACTIVE or PAUSED experiment."""
        experiment = await self._get_or_raise(experiment_id)
        self._check_transition(
            experiment, (ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED), "stop"
        )

        experiment.status = ExperimentStatus.COMPLETED
        experiment.ended_at = datetime.now(UTC)
        return await self._finish_transition(experiment, "experiment_stopped", {"reason": reason})

    async def archive_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        experiment = await self._get_or_raise(experiment_id)
        self._check_transition(experiment, (ExperimentStatus.COMPLETED,), "archive")

        experiment.status = ExperimentStatus.ARCHIVED
        return await self._finish_transition(experiment, "experiment_archived", {})

    async def _get_or_raise(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self._repo.get_by_id(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    @staticmethod
    def _check_transition(
        experiment: Experiment,
        allowed: tuple[ExperimentStatus, ...],
        action: str,
    ) -> None:
        if experiment.status not in allowed:
            raise InvalidConfigError(f"Cannot {action} an experiment in status {experiment.status}")

    async def _finish_transition(
        self,
        experiment: Experiment,
        event_name: str,
        properties: dict[str, Any],
    ) -> ExperimentRead:
        saved = await self._repo.save(experiment)
        await self._invalidate(saved.id)

        logger.info(
            "Experiment status changed",
            extra={"experiment_id": str(saved.id), "status": str(saved.status)},
        )
        if self._events is not None:
            await self._events.publish(
                event_name,
                EventCategory.LIFECYCLE,
                properties={
                    "experiment_id": str(saved.id),
                    "feature_key": saved.feature_key,
                    "status": str(saved.status),
                    **properties,
                },
            )
        return ExperimentRead.model_validate(saved)

    async def _invalidate(self, experiment_id: uuid.UUID) -> None:
        self._cache.invalidate(experiment_id)
        if self._bus is not None:
            await self._bus.publish(CacheKind.EXPERIMENT, str(experiment_id))


class FeatureFlagRegistry:
    """Owns feature flag definitions.

    Flag writes also clear the per-session evaluation cache, through the
    listener the flag cache carries.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        caches: RegistryCaches,
        events: EventSink | None = None,
        bus: CacheInvalidationBus | None = None,
    ) -> None:
        self._repo = FeatureFlagRepository(db_session)
        self._experiments = ExperimentRepository(db_session)
        self._caches = caches
        self._cache = caches.flags
        self._events = events
        self._bus = bus

    async def get_flag(self, key: str) -> FeatureFlagRead | None:
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        if self._cache.needs_refresh():
            await self.refresh()
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        flag = await self._repo.get_by_key(key)
        if flag is None:
            return None
        snapshot = FeatureFlagRead.model_validate(flag)
        self._cache.set(key, snapshot)
        return snapshot

    async def all_flags(self) -> list[FeatureFlagRead]:
        """Every cached active flag, reloading the cache once it is stale."""
        if self._cache.needs_refresh():
            await self.refresh()
        return [f for f in self._cache.values() if f.is_active]

    async def refresh(self) -> None:
        flags = await self._repo.list(active_only=True)
        self._cache.replace_all((f.key, FeatureFlagRead.model_validate(f)) for f in flags)
        # Reloaded definitions may differ from what cached evaluations were based on
        self._caches.evaluations.clear()
        logger.info("Flag cache refreshed", extra={"active_count": len(flags)})

    async def list_flags(self, active_only: bool = False) -> list[FeatureFlagRead]:
        flags = await self._repo.list(active_only=active_only)
        return [FeatureFlagRead.model_validate(f) for f in flags]

    async def create_flag(self, data: FeatureFlagCreate) -> FeatureFlagRead:
        if await self._repo.get_by_key(data.key) is not None:
            raise InvalidConfigError(f"A feature flag with key '{data.key}' already exists")
        if data.experiment_id is not None:
            await self._check_experiment_link(data.experiment_id, data.variant_values)

        flag = FeatureFlag(
            key=data.key,
            name=data.name,
            description=data.description,
            is_active=data.is_active,
            rollout_percentage=data.rollout_percentage,
            targeting_rules=[r.model_dump(mode="json") for r in data.targeting_rules],
            experiment_id=data.experiment_id,
            use_for_ab_test=data.experiment_id is not None,
            default_value=data.default_value,
            variant_values=data.variant_values,
            created_by=data.created_by,
            tags=data.tags,
        )
        created = await self._repo.create(flag)
        await self._invalidate(created.key)

        logger.info("Feature flag created", extra={"flag_key": created.key})
        return FeatureFlagRead.model_validate(created)

    async def update_flag(self, key: str, data: FeatureFlagUpdate) -> FeatureFlagRead:
        flag = await self._repo.get_by_key(key)
        if flag is None:
            raise FlagNotFoundError(key)

        patch = data.model_dump(exclude_unset=True, mode="json")
        if data.variant_values is not None and flag.experiment_id is not None:
            await self._check_experiment_link(flag.experiment_id, data.variant_values)

        for field, value in patch.items():
            if value is None and field not in _CLEARABLE_FLAG_FIELDS:
                continue
            setattr(flag, field, value)

        updated = await self._repo.save(flag)
        await self._invalidate(key)

        logger.info(
            "Feature flag updated",
            extra={"flag_key": key, "fields": sorted(patch)},
        )
        return FeatureFlagRead.model_validate(updated)

    async def delete_flag(self, key: str) -> None:
        flag = await self._repo.get_by_key(key)
        if flag is None:
            raise FlagNotFoundError(key)

        await self._repo.delete(flag)
        await self._invalidate(key)

        logger.info("Feature flag deleted", extra={"flag_key": key})
        if self._events is not None:
            await self._events.publish(
                "feature_flag_deleted",
                EventCategory.LIFECYCLE,
                properties={"flag_key": key},
            )

    async def _check_experiment_link(
        self,
        experiment_id: uuid.UUID,
        variant_values: dict[str, Any],
    ) -> None:
        experiment = await self._experiments.get_by_id(experiment_id)
        if experiment is None:
            raise InvalidConfigError(f"Experiment '{experiment_id}' does not exist")

        known = {v["id"] for v in experiment.variants}
        unknown = sorted(set(variant_values) - known)
        if unknown:
            raise InvalidConfigError(
                "Variant values reference unknown variants",
                [f"Unknown variant id '{variant_id}'" for variant_id in unknown],
            )

    async def _invalidate(self, key: str) -> None:
        self._cache.invalidate(key)
        if self._bus is not None:
            await self._bus.publish(CacheKind.FLAG, key)
