"""
AI Teacher FastAPI application.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aiteacher.api.middleware.rate_limit import RateLimitMiddleware
from aiteacher.api.middleware.request_id import RequestIdMiddleware
from aiteacher.api.routes import health, teacher
from aiteacher.concepts.extractor import ConceptExtractor
from aiteacher.health.monitor import HealthMonitor, HealthTracker, gateway_probe
from aiteacher.llm.gateway import LanguageModelGateway
from aiteacher.memory.manager import UserMemoryManager
from aiteacher.memory.store import create_memory_store
from aiteacher.shared.config import settings
from aiteacher.shared.logging import get_logger
from aiteacher.strategy.strategist import TeachingStrategist
from aiteacher.teacher.orchestrator import AITeacher
from aiteacher.teacher.prompt import TeachingPromptBuilder
from aiteacher.teacher.tasks import BackgroundTaskQueue

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting AI Teacher API")

    store = create_memory_store(settings.memory.backend, settings.memory.db_path)
    gateway = LanguageModelGateway(config=settings.llm)
    tasks = BackgroundTaskQueue()
    memory = UserMemoryManager(store, settings.memory)
    teacher_service = AITeacher(
        memory=memory,
        gateway=gateway,
        extractor=ConceptExtractor(gateway, settings.concepts),
        strategist=TeachingStrategist(gateway),
        prompt_builder=TeachingPromptBuilder(settings.teacher),
        tasks=tasks,
        config=settings.teacher,
    )

    tracker = HealthTracker()
    monitor = HealthMonitor(
        gateway_probe(gateway),
        tracker,
        max_retries=settings.health.max_retries,
        retry_delay=settings.health.retry_delay,
        interval=settings.health.check_interval,
        recent_success_window=settings.health.recent_success_window,
    )

    app.state.memory_store = store
    app.state.gateway = gateway
    app.state.tasks = tasks
    app.state.teacher = teacher_service
    app.state.health_tracker = tracker
    app.state.health_monitor = monitor

    if not gateway.is_configured():
        logger.warning("DeepSeek API key not set; serving fallback responses")

    if settings.health.monitor_on_startup:
        monitor.start_monitoring()

    # Track uptime
    health.set_start_time(time.time())

    logger.info("AI Teacher API ready")
    yield

    # Shutdown
    logger.info("Shutting down AI Teacher API")
    await monitor.stop()
    await tasks.shutdown()
    logger.info("AI Teacher API stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="AI Teacher",
        description="Adaptive AI teacher: concept tracking, teaching strategies and streamed answers",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Rate limiting (after CORS so CORS headers applied first)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # Routes
    app.include_router(health.router)
    app.include_router(teacher.router)

    @app.get("/")
    async def root():
        return {"service": "aiteacher", "status": "running"}

    return app


app = create_app()


def main():
    """CLI entry point for uvicorn."""
    import uvicorn

    uvicorn.run(
        "aiteacher.api.app:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
