"""Targeting rule evaluation against a user context."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from src.models.domain.experiment import SegmentCriteria, TargetingConditions, TargetingRule
from src.models.domain.user_context import DeviceType, SubscriptionTier, UserContext

logger = logging.getLogger(__name__)

NEW_USER_WINDOW = timedelta(days=7)


class TargetingEvaluator:
    """Decides whether a user falls inside a rule set.

    Rules are ORed; within a rule the criteria and every condition are ANDed.
    An attribute the context does not carry makes the rule fail, it never
    raises.
    """

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now

    def matches(self, context: UserContext, rules: Sequence[TargetingRule]) -> bool:
        if not rules:
            return True
        return any(self.matches_rule(context, rule) for rule in rules)

    def matches_rule(self, context: UserContext, rule: TargetingRule) -> bool:
        if not self._matches_criteria(context, rule.criteria):
            return False
        if rule.conditions is None:
            return True
        return self._matches_conditions(context, rule.conditions)

    def _matches_criteria(self, context: UserContext, criteria: SegmentCriteria) -> bool:
        props = context.user_properties
        device_type = props.device_info.type if props.device_info else None

        match criteria:
            case SegmentCriteria.ALL_USERS:
                return True
            case SegmentCriteria.NEW_USERS:
                registered = props.registration_date
                if registered is None:
                    return False
                if registered.tzinfo is None:
                    registered = registered.replace(tzinfo=UTC)
                return self._current_time() - registered <= NEW_USER_WINDOW
            case SegmentCriteria.RETURNING_USERS:
                sessions = props.behavioral_attributes.session_count
                return sessions is not None and sessions > 1
            case SegmentCriteria.PREMIUM_USERS:
                return props.subscription_tier == SubscriptionTier.PREMIUM
            case SegmentCriteria.MOBILE_USERS:
                return device_type == DeviceType.MOBILE
            case SegmentCriteria.DESKTOP_USERS:
                return device_type is not None and device_type != DeviceType.MOBILE
        logger.debug("Unknown targeting criteria %s", criteria)
        return False

    def _matches_conditions(self, context: UserContext, conditions: TargetingConditions) -> bool:
        props = context.user_properties

        if conditions.device_type is not None:
            device_type = props.device_info.type if props.device_info else None
            if device_type != conditions.device_type:
                return False

        if conditions.location is not None:
            country = props.location.country if props.location else None
            if country is None or country not in conditions.location:
                return False

        if conditions.custom_attributes:
            attributes = props.behavioral_attributes
            for name, expected in conditions.custom_attributes.items():
                actual = attributes.lookup(name)
                if actual is None or actual != expected:
                    return False

        return True

    def _current_time(self) -> datetime:
        return self._now or datetime.now(UTC)
