"""Experiment API endpoints: admin lifecycle, assignment, conversions and results."""

import uuid

from fastapi import APIRouter, Query

from src.api.v1.dependencies import Assignments, Conversions, Registry
from src.models.db.experiment import ExperimentStatus
from src.models.domain.experiment import (
    AssignmentRead,
    ConversionCreate,
    ConversionEventRead,
    ExperimentCreate,
    ExperimentRead,
    ExperimentStop,
    ExperimentUpdate,
    ExperimentVariant,
)
from src.models.domain.results import ExperimentResult, ExperimentSummary
from src.models.domain.user_context import UserContext

router = APIRouter()


@router.post("", response_model=ExperimentRead, status_code=201)
async def create_experiment(
    registry: Registry,
    data: ExperimentCreate,
) -> ExperimentRead:
    """Create a new DRAFT experiment."""
    return await registry.create_experiment(data)


@router.get("", response_model=list[ExperimentRead])
async def list_experiments(
    registry: Registry,
    status: ExperimentStatus | None = Query(None, description="Filter by status"),
    tag: str | None = Query(None, description="Filter by tag"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[ExperimentRead]:
    """List experiments, newest first."""
    return await registry.list_experiments(status=status, tag=tag, limit=limit, offset=offset)


@router.get("/{experiment_id}", response_model=ExperimentRead)
async def get_experiment(
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Get experiment by ID."""
    return await registry.require_experiment(experiment_id)


@router.patch("/{experiment_id}", response_model=ExperimentRead)
async def update_experiment(
    registry: Registry,
    experiment_id: uuid.UUID,
    data: ExperimentUpdate,
) -> ExperimentRead:
    """Update experiment settings. Variants and metrics only change in DRAFT."""
    return await registry.update_experiment(experiment_id, data)


@router.post("/{experiment_id}/start", response_model=ExperimentRead)
async def start_experiment(
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Start a DRAFT experiment or resume a PAUSED one."""
    return await registry.start_experiment(experiment_id)


@router.post("/{experiment_id}/pause", response_model=ExperimentRead)
async def pause_experiment(
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    return await registry.pause_experiment(experiment_id)


@router.post("/{experiment_id}/stop", response_model=ExperimentRead)
async def stop_experiment(
    registry: Registry,
    experiment_id: uuid.UUID,
    data: ExperimentStop | None = None,
) -> ExperimentRead:
    """Complete an ACTIVE or PAUSED experiment."""
    return await registry.stop_experiment(experiment_id, reason=data.reason if data else None)


@router.post("/{experiment_id}/archive", response_model=ExperimentRead)
async def archive_experiment(
    registry: Registry,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    return await registry.archive_experiment(experiment_id)


@router.post("/{experiment_id}/assignment", response_model=AssignmentRead | None)
async def get_assignment(
    engine: Assignments,
    experiment_id: uuid.UUID,
    context: UserContext,
) -> AssignmentRead | None:
    """Assignment for the user, or null when the user is not in the experiment."""
    return await engine.get_assignment(experiment_id, context)


@router.post("/{experiment_id}/variant", response_model=ExperimentVariant | None)
async def get_variant(
    engine: Assignments,
    experiment_id: uuid.UUID,
    context: UserContext,
) -> ExperimentVariant | None:
    """Assigned variant with its config payload, or null."""
    return await engine.get_variant(experiment_id, context)


@router.post("/{experiment_id}/conversions", response_model=ConversionEventRead | None)
async def track_conversion(
    conversions: Conversions,
    experiment_id: uuid.UUID,
    data: ConversionCreate,
) -> ConversionEventRead | None:
    """Record a conversion. Returns null when the user was never assigned."""
    return await conversions.track_conversion(
        experiment_id,
        data.metric_name,
        data.user_context,
        value=data.value,
        properties=data.properties,
    )


@router.get("/{experiment_id}/results", response_model=list[ExperimentResult])
async def get_results(
    conversions: Conversions,
    experiment_id: uuid.UUID,
) -> list[ExperimentResult]:
    """Per variant and metric statistics."""
    return await conversions.calculate_results(experiment_id)


@router.get("/{experiment_id}/summary", response_model=ExperimentSummary)
async def get_summary(
    conversions: Conversions,
    experiment_id: uuid.UUID,
) -> ExperimentSummary:
    """Results, progress and a continue/conclude recommendation."""
    return await conversions.get_experiment_summary(experiment_id)
