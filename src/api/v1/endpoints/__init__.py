"""API v1 endpoints package."""

from src.api.v1.endpoints import experiments, flags

__all__ = ["experiments", "flags"]
