"""Database models package."""

from src.models.db.base import Base, TimestampMixin
from src.models.db.event import AnalyticsEvent, EventCategory
from src.models.db.experiment import (
    ConversionEvent,
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
)
from src.models.db.feature_flag import FeatureFlag

__all__ = [
    "AnalyticsEvent",
    "Base",
    "ConversionEvent",
    "EventCategory",
    "Experiment",
    "ExperimentAssignment",
    "ExperimentStatus",
    "FeatureFlag",
    "TimestampMixin",
]
