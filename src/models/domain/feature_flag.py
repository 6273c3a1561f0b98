"""Feature flag Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from src.models.domain.experiment import TargetingRule
from src.models.domain.user_context import UserContext


class FeatureFlagCreate(BaseModel):
    """Schema for creating a feature flag."""

    key: str = Field(..., max_length=255, pattern=r"^[A-Za-z0-9_.\-]+$")
    name: str = Field(..., max_length=255)
    description: str | None = None
    default_value: JsonValue = False
    rollout_percentage: int = Field(100, ge=0, le=100)
    targeting_rules: list[TargetingRule] = Field(default_factory=list)
    experiment_id: UUID | None = Field(
        None, description="Delegate evaluation to this experiment's assignments"
    )
    variant_values: dict[str, JsonValue] = Field(
        default_factory=dict, description="Variant id to flag value"
    )
    is_active: bool = True
    tags: list[str] = Field(default_factory=list)
    created_by: str | None = None


class FeatureFlagUpdate(BaseModel):
    """Partial flag update."""

    name: str | None = Field(None, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    rollout_percentage: int | None = Field(None, ge=0, le=100)
    targeting_rules: list[TargetingRule] | None = None
    default_value: JsonValue = None
    variant_values: dict[str, JsonValue] | None = None
    tags: list[str] | None = None


class FeatureFlagRead(BaseModel):
    """Immutable flag snapshot, safe to share through the registry cache."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    key: str
    name: str
    description: str | None
    is_active: bool
    rollout_percentage: int
    targeting_rules: list[TargetingRule]
    experiment_id: UUID | None
    use_for_ab_test: bool
    default_value: JsonValue
    variant_values: dict[str, JsonValue]
    created_by: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None


class FlagEvaluation(BaseModel):
    """Outcome of evaluating one flag for one user."""

    model_config = ConfigDict(frozen=True)

    value: JsonValue
    variant: str | None = None
    is_enabled: bool = False


class UserFlag(BaseModel):
    """Evaluation of one flag plus a human-readable reason."""

    key: str
    name: str
    value: JsonValue
    variant: str | None
    is_enabled: bool
    reason: str


class FlagEvaluateRequest(BaseModel):
    """Request body for evaluating a single flag."""

    user_context: UserContext
    default_value: JsonValue = None


class FlagBatchEvaluateRequest(BaseModel):
    """Request body for evaluating several flags at once."""

    keys: list[str] = Field(..., min_length=1)
    user_context: UserContext
