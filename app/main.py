"""FastAPI entry-point exposing orchestrator controls."""
from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI

from app.api.analytics import router as analytics_router
from app.api.messages import router as messages_router
from app.api.routes import router as agents_router
from app.api.sandboxes import router as sandboxes_router
from app.api.tasks import router as tasks_router
from app.core.logging import configure_structlog
from app.orchestration.orchestrator import Orchestrator
from app.runtime import get_broadcaster, get_config, get_orchestrator
from app.services.broadcaster import LiveUpdateBroadcaster

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    settings = get_config()
    configure_structlog(settings.log_level, settings.log_format)
    orchestrator = get_orchestrator()
    # Startup: converge sandboxes with the persisted agent registry
    report = await orchestrator.reconcile()
    logger.info("startup_complete", environment=settings.environment, container_mode=report.container_mode)
    yield
    # Shutdown: let in-flight dispatches finish and persist metrics
    await orchestrator.shutdown()


app = FastAPI(title="Agent Hub Orchestrator", lifespan=lifespan)
app.include_router(agents_router)
app.include_router(tasks_router)
app.include_router(analytics_router)
app.include_router(sandboxes_router)
app.include_router(messages_router)


@app.get("/health")
async def health(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    broadcaster: LiveUpdateBroadcaster = Depends(get_broadcaster),
) -> dict:
    return {
        "status": "ok",
        "container_mode": orchestrator.container_mode,
        "observers": broadcaster.observer_count,
    }
