"""Feature flag API endpoints: admin CRUD and end-user evaluation."""

from fastapi import APIRouter, Query, Response
from pydantic import JsonValue

from src.api.v1.dependencies import Evaluator, FlagRegistry
from src.core.exceptions import FlagNotFoundError
from src.models.domain.feature_flag import (
    FeatureFlagCreate,
    FeatureFlagRead,
    FeatureFlagUpdate,
    FlagBatchEvaluateRequest,
    FlagEvaluateRequest,
    FlagEvaluation,
    UserFlag,
)
from src.models.domain.user_context import UserContext

router = APIRouter()


@router.post("", response_model=FeatureFlagRead, status_code=201)
async def create_flag(
    registry: FlagRegistry,
    data: FeatureFlagCreate,
) -> FeatureFlagRead:
    """Create a feature flag."""
    return await registry.create_flag(data)


@router.get("", response_model=list[FeatureFlagRead])
async def list_flags(
    registry: FlagRegistry,
    active_only: bool = Query(False, description="Only return active flags"),
) -> list[FeatureFlagRead]:
    return await registry.list_flags(active_only=active_only)


@router.post("/evaluate", response_model=dict[str, JsonValue])
async def evaluate_flags(
    evaluator: Evaluator,
    data: FlagBatchEvaluateRequest,
) -> dict[str, JsonValue]:
    """Values for several flags at once."""
    return await evaluator.evaluate_many(data.keys, data.user_context)


@router.post("/user", response_model=list[UserFlag])
async def get_user_flags(
    evaluator: Evaluator,
    context: UserContext,
) -> list[UserFlag]:
    """Every active flag for the user, with the reason for each value."""
    return await evaluator.get_user_flags(context)


@router.get("/{key}", response_model=FeatureFlagRead)
async def get_flag(
    registry: FlagRegistry,
    key: str,
) -> FeatureFlagRead:
    flag = await registry.get_flag(key)
    if flag is None:
        raise FlagNotFoundError(key)
    return flag


@router.patch("/{key}", response_model=FeatureFlagRead)
async def update_flag(
    registry: FlagRegistry,
    key: str,
    data: FeatureFlagUpdate,
) -> FeatureFlagRead:
    """Update a flag. Deactivating it makes evaluations fall back immediately."""
    return await registry.update_flag(key, data)


@router.delete("/{key}", status_code=204)
async def delete_flag(
    registry: FlagRegistry,
    key: str,
) -> Response:
    await registry.delete_flag(key)
    return Response(status_code=204)


@router.post("/{key}/evaluate", response_model=FlagEvaluation)
async def evaluate_flag(
    evaluator: Evaluator,
    key: str,
    data: FlagEvaluateRequest,
) -> FlagEvaluation:
    """Evaluate one flag for a user. Never fails; unknown flags yield the default."""
    return await evaluator.evaluate(key, data.user_context, data.default_value)
