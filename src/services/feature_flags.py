"""Feature flag evaluation.

Flags are either standalone (targeting rules plus a rollout percentage) or
backed by an experiment, in which case the user's variant assignment picks
the value from the flag's ``variant_values``.

Usage:
    evaluator = FeatureFlagEvaluator(flags, assignments, caches, events)
    result = await evaluator.evaluate("new_booking_flow", user_context)
    if result.is_enabled:
        # Show new flow
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from pydantic import JsonValue

from src.core.cache import RegistryCaches, SessionEvaluationCache
from src.core.hashing import BucketPurpose, user_bucket
from src.models.db.event import EventCategory
from src.models.domain.feature_flag import FeatureFlagRead, FlagEvaluation, UserFlag
from src.models.domain.user_context import UserContext
from src.services.assignment_service import AssignmentEngine
from src.services.event_service import EventSink
from src.services.registry import FeatureFlagRegistry
from src.services.targeting import TargetingEvaluator

logger = logging.getLogger(__name__)

DEFAULT_VARIANT = "default"

REASON_INACTIVE = "Flag is disabled"
REASON_NOT_IN_TEST = "Not selected for A/B test"
REASON_NOT_TARGETED = "Does not match targeting rules"
REASON_NOT_IN_ROLLOUT = "Not in rollout percentage"
REASON_ENABLED = "Enabled"
REASON_DISABLED = "Disabled"


@dataclass(frozen=True)
class _Outcome:
    """A flag decision for one user, tagged with the flag version it used."""

    evaluation: FlagEvaluation
    reason: str
    is_fallback: bool
    flag_version: datetime | None = None

    def resolve(self, default_value: JsonValue) -> FlagEvaluation:
        """Apply the caller's default to fallback decisions."""
        if self.is_fallback and default_value is not None:
            return self.evaluation.model_copy(update={"value": default_value})
        return self.evaluation


class FeatureFlagEvaluator:
    """Evaluates flags for a user, memoizing decisions per session.

    Evaluation never raises to the caller: any failure yields the default
    value, disabled.
    """

    def __init__(
        self,
        flags: FeatureFlagRegistry,
        assignments: AssignmentEngine,
        caches: RegistryCaches,
        events: EventSink | None = None,
        targeting: TargetingEvaluator | None = None,
    ) -> None:
        self._flags = flags
        self._assignments = assignments
        self._session_cache: SessionEvaluationCache[_Outcome] = caches.evaluations
        self._events = events
        self._targeting = targeting or TargetingEvaluator()

    async def evaluate(
        self,
        key: str,
        context: UserContext,
        default_value: JsonValue = None,
    ) -> FlagEvaluation:
        """Evaluate one flag. ``default_value`` of None means "not provided"."""
        try:
            outcome = await self._decide(key, context)
        except Exception:
            logger.warning(
                "Flag evaluation failed, using default",
                exc_info=True,
                extra={"flag_key": key, "user_id": context.user_id},
            )
            return FlagEvaluation(value=default_value, variant=None, is_enabled=False)

        if outcome is None:
            return FlagEvaluation(value=default_value, variant=None, is_enabled=False)
        return outcome.resolve(default_value)

    async def evaluate_many(
        self,
        keys: list[str],
        context: UserContext,
    ) -> dict[str, JsonValue]:
        """Values for several flags; a failing key yields False on its own."""
        values: dict[str, JsonValue] = {}
        for key in keys:
            try:
                outcome = await self._decide(key, context)
            except Exception:
                logger.warning(
                    "Flag evaluation failed in batch",
                    exc_info=True,
                    extra={"flag_key": key, "user_id": context.user_id},
                )
                values[key] = False
                continue
            values[key] = outcome.evaluation.value if outcome is not None else False
        return values

    async def get_user_flags(self, context: UserContext) -> list[UserFlag]:
        """Every active flag with its value for this user and why."""
        user_flags: list[UserFlag] = []
        for flag in await self._flags.all_flags():
            try:
                outcome = await self._decide(flag.key, context)
            except Exception:
                logger.warning(
                    "Flag evaluation failed while listing user flags",
                    exc_info=True,
                    extra={"flag_key": flag.key, "user_id": context.user_id},
                )
                outcome = None

            if outcome is None:
                evaluation = FlagEvaluation(value=flag.default_value)
                reason = REASON_DISABLED
            else:
                evaluation = outcome.evaluation
                reason = outcome.reason

            user_flags.append(
                UserFlag(
                    key=flag.key,
                    name=flag.name,
                    value=evaluation.value,
                    variant=evaluation.variant,
                    is_enabled=evaluation.is_enabled,
                    reason=reason,
                )
            )
        return user_flags

    async def _decide(self, key: str, context: UserContext) -> _Outcome | None:
        """Decision for an existing flag, or None when the key is unknown."""
        flag = await self._flags.get_flag(key)
        if flag is None:
            logger.debug("Unknown flag %s", key)
            return None

        if not flag.is_active:
            outcome = _Outcome(
                FlagEvaluation(value=flag.default_value), REASON_INACTIVE, is_fallback=True
            )
            await self._emit(flag, context, outcome, cached=False)
            return outcome

        session_key = SessionEvaluationCache.session_key(context.user_id, context.session_id)
        cached = self._session_cache.get(session_key, key)
        if cached is not None and cached.flag_version == flag.updated_at:
            await self._emit(flag, context, cached, cached=True)
            return cached

        if flag.use_for_ab_test and flag.experiment_id is not None:
            outcome = await self._decide_from_experiment(flag, flag.experiment_id, context)
        else:
            outcome = self._decide_standalone(flag, context)

        self._session_cache.put(session_key, key, outcome)
        await self._emit(flag, context, outcome, cached=False)
        return outcome

    async def _decide_from_experiment(
        self,
        flag: FeatureFlagRead,
        experiment_id: uuid.UUID,
        context: UserContext,
    ) -> _Outcome:
        assignment = await self._assignments.get_assignment(experiment_id, context)
        if assignment is None:
            return _Outcome(
                FlagEvaluation(value=flag.default_value),
                REASON_NOT_IN_TEST,
                is_fallback=False,
                flag_version=flag.updated_at,
            )

        value = flag.variant_values.get(assignment.variant_id, flag.default_value)
        return _Outcome(
            FlagEvaluation(value=value, variant=assignment.variant_id, is_enabled=True),
            REASON_ENABLED,
            is_fallback=False,
            flag_version=flag.updated_at,
        )

    def _decide_standalone(self, flag: FeatureFlagRead, context: UserContext) -> _Outcome:
        if not self._targeting.matches(context, flag.targeting_rules):
            return _Outcome(
                FlagEvaluation(value=flag.default_value),
                REASON_NOT_TARGETED,
                is_fallback=True,
                flag_version=flag.updated_at,
            )

        if user_bucket(context.user_id, BucketPurpose.ROLLOUT) >= flag.rollout_percentage:
            return _Outcome(
                FlagEvaluation(value=flag.default_value),
                REASON_NOT_IN_ROLLOUT,
                is_fallback=True,
                flag_version=flag.updated_at,
            )

        return _Outcome(
            FlagEvaluation(value=flag.default_value, variant=DEFAULT_VARIANT, is_enabled=True),
            REASON_ENABLED,
            is_fallback=False,
            flag_version=flag.updated_at,
        )

    async def _emit(
        self,
        flag: FeatureFlagRead,
        context: UserContext,
        outcome: _Outcome,
        *,
        cached: bool,
    ) -> None:
        if self._events is None:
            return
        await self._events.publish(
            "feature_flag_evaluated",
            EventCategory.FLAG_EVALUATION,
            user_id=context.user_id,
            session_id=context.session_id,
            properties={
                "flag_key": flag.key,
                "value": outcome.evaluation.value,
                "variant": outcome.evaluation.variant,
                "is_enabled": outcome.evaluation.is_enabled,
                "reason": outcome.reason,
                "cached": cached,
            },
        )
