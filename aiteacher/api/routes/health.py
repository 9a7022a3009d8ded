"""
Health check endpoint.
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from aiteacher.api.dependencies import get_gateway, get_health_tracker
from aiteacher.health.monitor import HealthTracker
from aiteacher.llm.gateway import LanguageModelGateway

router = APIRouter(tags=["health"])

# Track startup time for uptime
_start_time: Optional[float] = None


def set_start_time(t: float):
    """Set application start time."""
    global _start_time
    _start_time = t


class HealthResponse(BaseModel):
    """Health check response model."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str
    deep_seek_configured: bool
    generation_status: str
    uptime_seconds: float


@router.get("/health", response_model=HealthResponse, response_model_by_alias=True)
async def health_check(
    gateway: LanguageModelGateway = Depends(get_gateway),
    tracker: HealthTracker = Depends(get_health_tracker),
):
    """
    Service health check.
    The service itself is up whenever it answers; generation availability is reported separately.
    """
    uptime_seconds = 0.0
    if _start_time:
        uptime_seconds = round(time.time() - _start_time, 2)

    return HealthResponse(
        status="ok",
        deep_seek_configured=gateway.is_configured(),
        generation_status=tracker.get().value,
        uptime_seconds=uptime_seconds,
    )
