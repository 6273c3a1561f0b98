"""Derived experiment analysis schemas. Nothing here is stored."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from src.models.domain.experiment import ExperimentRead


class ConfidenceInterval(BaseModel):
    """Interval around a conversion rate, clamped to [0, 1]."""

    lower: float
    upper: float
    confidence_level: float


class LiftInterval(BaseModel):
    """Interval around the lift, in percent of the control rate."""

    lower: float = 0.0
    upper: float = 0.0


class ExperimentResult(BaseModel):
    """Statistics for one (variant, metric) pair."""

    experiment_id: UUID
    variant_id: str
    metric_name: str
    is_control: bool = False

    sample_size: int
    conversion_count: int
    conversion_rate: float
    standard_error: float
    confidence_interval: ConfidenceInterval

    lift: float = Field(0.0, description="Percent difference vs. control conversion rate")
    lift_confidence_interval: LiftInterval = Field(default_factory=LiftInterval)

    p_value: float = 1.0
    is_significant: bool = False
    statistical_power: float | None = None

    calculated_at: datetime
    calculation_method: Literal["frequentist"] = "frequentist"


class ExperimentRunStatus(BaseModel):
    """Progress of a running experiment towards a decision."""

    is_running: bool
    runtime_hours: int
    total_sample_size: int
    sample_size_reached: bool
    significance_achieved: bool
    winner_declared: bool
    winner_variant_id: str | None = None
    can_conclude: bool


class Recommendation(BaseModel):
    """What to do next with an experiment."""

    action: Literal["continue", "conclude"]
    reason: str
    confidence: Literal["high", "medium", "low"]


class ExperimentSummary(BaseModel):
    """Experiment, its per-variant results, progress and recommendation."""

    experiment: ExperimentRead
    results: list[ExperimentResult]
    status: ExperimentRunStatus
    recommendation: Recommendation
