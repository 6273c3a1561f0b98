"""Experiment Pydantic schemas: definitions, assignments and conversions."""

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
)

from src.models.db.experiment import ExperimentStatus
from src.models.domain.user_context import DeviceType, UserContext

# Variant config is an open bag of primitive settings (copy text, limits, toggles)
ConfigValue = StrictBool | StrictInt | StrictFloat | StrictStr | None
VariantConfig = dict[str, ConfigValue]

Z_SCORES: dict[float, float] = {0.99: 2.576, 0.95: 1.96, 0.90: 1.645}


class VariantType(StrEnum):
    """Role of a variant within an experiment."""

    CONTROL = "control"
    VARIANT = "variant"
    CHALLENGER = "challenger"


class ConversionGoal(StrEnum):
    """Business goal a metric tracks."""

    REGISTRATION = "registration"
    BOOKING = "booking"
    ENGAGEMENT = "engagement"
    RETENTION = "retention"
    REVENUE = "revenue"


class SegmentCriteria(StrEnum):
    """Built-in audience segments for targeting rules."""

    ALL_USERS = "all_users"
    NEW_USERS = "new_users"
    RETURNING_USERS = "returning_users"
    PREMIUM_USERS = "premium_users"
    MOBILE_USERS = "mobile_users"
    DESKTOP_USERS = "desktop_users"


class VariantCreate(BaseModel):
    """Variant as submitted by an admin; the id is derived on creation."""

    name: str = Field(..., max_length=255)
    description: str | None = None
    type: VariantType = VariantType.VARIANT
    traffic_weight: int = Field(..., ge=0, le=100)
    config: VariantConfig = Field(default_factory=dict)
    is_control: bool = False


class ExperimentVariant(VariantCreate):
    """Stored variant. Ids take the form ``{feature_key}_variant_{ordinal}``."""

    model_config = ConfigDict(frozen=True)

    id: str


class ConversionMetric(BaseModel):
    """Metric evaluated for every variant."""

    name: str = Field(..., max_length=255)
    goal: ConversionGoal = ConversionGoal.ENGAGEMENT
    description: str | None = None
    is_primary: bool = False
    target_improvement: float = Field(0.0, description="Expected improvement in percent")


class TargetingConditions(BaseModel):
    """Extra conditions ANDed with a rule's criteria."""

    device_type: DeviceType | None = None
    location: list[str] | None = Field(None, description="Allowed country codes")
    custom_attributes: dict[str, ConfigValue] | None = Field(
        None, description="Behavioral attribute equality checks"
    )


class TargetingRule(BaseModel):
    """One audience rule; a rule set matches when any rule matches."""

    criteria: SegmentCriteria = SegmentCriteria.ALL_USERS
    conditions: TargetingConditions | None = None


class StatisticalConfig(BaseModel):
    """Analysis settings for an experiment."""

    confidence_level: float = Field(0.95, description="One of 0.90, 0.95, 0.99")
    power: float = Field(0.8, description="Target statistical power, 0.8 or 0.9")
    minimum_sample_size: int = Field(1000, ge=1)
    minimum_runtime_hours: int = Field(168, ge=0)
    maximum_runtime_days: int = Field(30, ge=1)

    @field_validator("confidence_level")
    @classmethod
    def _known_confidence_level(cls, value: float) -> float:
        if value not in Z_SCORES:
            raise ValueError("confidence_level must be one of 0.90, 0.95, 0.99")
        return value

    @field_validator("power")
    @classmethod
    def _known_power(cls, value: float) -> float:
        if value not in (0.8, 0.9):
            raise ValueError("power must be 0.8 or 0.9")
        return value

    @property
    def z_score(self) -> float:
        return Z_SCORES[self.confidence_level]


class ExperimentCreate(BaseModel):
    """Schema for creating an experiment."""

    name: str = Field(..., max_length=255)
    feature_key: str = Field(..., max_length=255, pattern=r"^[A-Za-z0-9_.\-]+$")
    description: str | None = None
    hypothesis: str | None = None
    business_justification: str | None = None
    variants: list[VariantCreate] = Field(..., min_length=1)
    metrics: list[ConversionMetric] = Field(..., min_length=1)
    targeting_rules: list[TargetingRule] = Field(default_factory=list)
    traffic_allocation: int = Field(100, ge=0, le=100)
    statistical_config: StatisticalConfig = Field(default_factory=StatisticalConfig)
    tags: list[str] = Field(default_factory=list)
    created_by: str | None = None


class ExperimentUpdate(BaseModel):
    """Partial update; variants and metrics are only editable in DRAFT."""

    name: str | None = Field(None, max_length=255)
    description: str | None = None
    hypothesis: str | None = None
    business_justification: str | None = None
    variants: list[VariantCreate] | None = Field(None, min_length=1)
    metrics: list[ConversionMetric] | None = Field(None, min_length=1)
    targeting_rules: list[TargetingRule] | None = None
    traffic_allocation: int | None = Field(None, ge=0, le=100)
    statistical_config: StatisticalConfig | None = None
    tags: list[str] | None = None


class ExperimentRead(BaseModel):
    """Immutable experiment snapshot, safe to share through the registry cache."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    name: str
    description: str | None
    hypothesis: str | None = None
    business_justification: str | None = None
    status: ExperimentStatus
    feature_key: str
    variants: list[ExperimentVariant]
    metrics: list[ConversionMetric]
    targeting_rules: list[TargetingRule]
    traffic_allocation: int
    statistical_config: StatisticalConfig
    created_by: str | None = None
    tags: list[str] = Field(default_factory=list)
    started_at: datetime | None
    ended_at: datetime | None
    created_at: datetime
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ExperimentStatus.ACTIVE

    @property
    def control_variant(self) -> ExperimentVariant | None:
        return next((v for v in self.variants if v.is_control), None)

    @property
    def primary_metric_names(self) -> set[str]:
        return {m.name for m in self.metrics if m.is_primary}

    def get_variant(self, variant_id: str) -> ExperimentVariant | None:
        return next((v for v in self.variants if v.id == variant_id), None)


class ExperimentStop(BaseModel):
    """Request body for stopping an experiment."""

    reason: str | None = Field(None, max_length=1000)


class AssignmentRead(BaseModel):
    """Schema for reading an experiment assignment."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    experiment_id: UUID
    variant_id: str
    session_id: str
    user_agent: str | None = None
    assigned_at: datetime


class ConversionCreate(BaseModel):
    """Request body for tracking a conversion."""

    metric_name: str = Field(..., max_length=255)
    value: float = Field(1.0, ge=0)
    properties: dict[str, Any] | None = None
    user_context: UserContext


class ConversionEventRead(BaseModel):
    """Schema for reading a recorded conversion."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    experiment_id: UUID
    variant_id: str
    metric_name: str
    value: float
    properties: dict[str, Any] | None
    session_id: str
    occurred_at: datetime


def experiment_config_errors(
    variants: list[VariantCreate],
    metrics: list[ConversionMetric],
) -> list[str]:
    """Problems that make an experiment definition unusable."""
    errors: list[str] = []
    if not variants:
        errors.append("Experiment must have at least one variant")
    total_weight = sum(v.traffic_weight for v in variants)
    if total_weight != 100:
        errors.append(f"Variant traffic weights must sum to 100 (got {total_weight})")
    if not any(v.is_control for v in variants):
        errors.append("Experiment must have at least one control variant")
    if not any(m.is_primary for m in metrics):
        errors.append("Experiment must have at least one primary metric")
    names = [m.name for m in metrics]
    if len(names) != len(set(names)):
        errors.append("Metric names must be unique")
    return errors


def build_variants(feature_key: str, variants: list[VariantCreate]) -> list[ExperimentVariant]:
    """Attach ordinal ids to submitted variants, preserving their order."""
    return [
        ExperimentVariant(id=f"{feature_key}_variant_{index}", **variant.model_dump())
        for index, variant in enumerate(variants)
    ]
