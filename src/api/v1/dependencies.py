"""FastAPI dependencies for API v1.

Services are built per request around the request's database session; the
registry caches and the invalidation bus are shared by the whole process.
"""

from typing import Annotated

from fastapi import Depends

from src.core.cache import RegistryCaches, get_registry_caches
from src.core.config import get_settings
from src.core.database import DbSession
from src.services.assignment_service import AssignmentEngine
from src.services.cache_invalidation import CacheInvalidationBus, get_invalidation_bus
from src.services.conversion_service import ConversionService
from src.services.event_service import EventPublisher
from src.services.feature_flags import FeatureFlagEvaluator
from src.services.registry import ExperimentRegistry, FeatureFlagRegistry

Caches = Annotated[RegistryCaches, Depends(get_registry_caches)]
Bus = Annotated[CacheInvalidationBus | None, Depends(get_invalidation_bus)]


def get_event_publisher(session: DbSession) -> EventPublisher:
    """Get analytics event publisher instance."""
    return EventPublisher(session)


Events = Annotated[EventPublisher, Depends(get_event_publisher)]


def get_experiment_registry(
    session: DbSession,
    caches: Caches,
    events: Events,
    bus: Bus,
) -> ExperimentRegistry:
    """Get experiment registry instance."""
    return ExperimentRegistry(session, caches, events=events, bus=bus)


def get_flag_registry(
    session: DbSession,
    caches: Caches,
    events: Events,
    bus: Bus,
) -> FeatureFlagRegistry:
    """Get feature flag registry instance."""
    return FeatureFlagRegistry(session, caches, events=events, bus=bus)


Registry = Annotated[ExperimentRegistry, Depends(get_experiment_registry)]
FlagRegistry = Annotated[FeatureFlagRegistry, Depends(get_flag_registry)]


def get_assignment_engine(
    session: DbSession,
    registry: Registry,
    events: Events,
) -> AssignmentEngine:
    """Get assignment engine instance."""
    return AssignmentEngine(
        session,
        registry,
        events=events,
        max_retries=get_settings().assignment_max_retries,
    )


Assignments = Annotated[AssignmentEngine, Depends(get_assignment_engine)]


def get_flag_evaluator(
    flags: FlagRegistry,
    assignments: Assignments,
    caches: Caches,
    events: Events,
) -> FeatureFlagEvaluator:
    """Get feature flag evaluator instance."""
    return FeatureFlagEvaluator(flags, assignments, caches, events=events)


def get_conversion_service(
    session: DbSession,
    registry: Registry,
    events: Events,
) -> ConversionService:
    """Get conversion service instance."""
    return ConversionService(session, registry, events=events)


Evaluator = Annotated[FeatureFlagEvaluator, Depends(get_flag_evaluator)]
Conversions = Annotated[ConversionService, Depends(get_conversion_service)]
