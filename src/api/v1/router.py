"""API v1 router configuration."""

from fastapi import APIRouter

from src.api.v1.endpoints import experiments, flags

router = APIRouter(prefix="/api/v1")

router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
router.include_router(flags.router, prefix="/flags", tags=["flags"])
