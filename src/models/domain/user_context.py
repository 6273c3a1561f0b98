"""User context supplied by the caller for each evaluation."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeviceType(StrEnum):
    """Client device class."""

    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class UserType(StrEnum):
    """Role of the user in the product."""

    CLIENT = "client"
    COACH = "coach"
    ADMIN = "admin"


class SubscriptionTier(StrEnum):
    """Billing tier."""

    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Location(BaseModel):
    """Coarse user location."""

    country: str | None = None
    region: str | None = None
    city: str | None = None


class DeviceInfo(BaseModel):
    """Device the request came from."""

    type: DeviceType | None = None
    browser: str | None = None
    os: str | None = None


class BehavioralAttributes(BaseModel):
    """Usage statistics; unknown keys are kept for custom attribute targeting."""

    model_config = ConfigDict(extra="allow")

    session_count: int | None = None
    last_login: datetime | None = None
    total_bookings: int | None = None
    engagement_score: float | None = None

    def lookup(self, name: str) -> Any:
        """Value of a declared or custom attribute, None when absent."""
        if name in type(self).model_fields:
            return getattr(self, name)
        return (self.model_extra or {}).get(name)


class UserProperties(BaseModel):
    """Profile attributes used by targeting rules."""

    registration_date: datetime | None = None
    user_type: UserType | None = None
    subscription_tier: SubscriptionTier | None = None
    location: Location | None = None
    device_info: DeviceInfo | None = None
    behavioral_attributes: BehavioralAttributes = Field(default_factory=BehavioralAttributes)


class UserContext(BaseModel):
    """Identity and attributes of an authenticated user for one call.

    The engine never persists this beyond the assignment snapshot.
    """

    user_id: str = Field(..., min_length=1, max_length=255)
    is_authenticated: bool = True
    session_id: str = Field(..., min_length=1, max_length=255)
    user_agent: str | None = Field(None, description="Client user agent at request time")
    user_properties: UserProperties = Field(default_factory=UserProperties)
