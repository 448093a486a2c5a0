"""FastAPI application entry point for the workflow builder backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_workspace_manager as set_routes_workspace_manager
from api.websocket import (
    set_workspace_manager as set_websocket_workspace_manager,
)
from api.websocket import (
    websocket_router,
)
from config import configure_logging, settings
from events import get_event_bus
from workspace_manager import WorkspaceManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Creates the workspace manager on startup and deletes every workspace
    (cancelling their runs) on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_provider=settings.use_mock_provider,
        default_model=settings.default_model,
    )

    workspace_manager = WorkspaceManager(get_event_bus())

    set_routes_workspace_manager(workspace_manager)
    set_websocket_workspace_manager(workspace_manager)
    app.state.workspace_manager = workspace_manager

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.workspace_manager.cleanup_all()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Workflow Builder",
    description="Backend API for composing YAML-defined agents into bundles "
    "and running them against a tool-augmented LLM provider.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router, tags=["workflows"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Workflow Builder API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
