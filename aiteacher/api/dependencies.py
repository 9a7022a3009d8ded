"""
FastAPI dependency injection for AI Teacher services.
"""

from fastapi import Request

from aiteacher.health.monitor import HealthTracker
from aiteacher.llm.gateway import LanguageModelGateway
from aiteacher.teacher.orchestrator import AITeacher


def get_teacher(request: Request) -> AITeacher:
    """Get AITeacher singleton from lifespan state."""
    return request.app.state.teacher


def get_gateway(request: Request) -> LanguageModelGateway:
    return request.app.state.gateway


def get_health_tracker(request: Request) -> HealthTracker:
    return request.app.state.health_tracker
