"""Flow Engine - FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, get_settings
from api.v1.router import api_v1_router
from api.routes import health
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db.database import close_db, create_db_engine, create_session_factory, init_db
from operations.registry import FunctionRegistry, create_default_registry
from workflow.debug_session import DebugSessionManager
from workflow.persistence import (
    DatabasePersistenceAdapter,
    InMemoryPersistenceAdapter,
    PersistenceAdapter,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings: Settings = app.state.settings
    setup_logging(settings)

    db_engine = app.state.db_engine
    if db_engine is not None:
        await init_db(db_engine)
        logger.info("[startup] Execution snapshot tables ready")

    logger.info(
        f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started "
        f"({settings.ENVIRONMENT}, {len(app.state.registry)} functions, "
        f"persistence={settings.PERSISTENCE_BACKEND})"
    )
    yield

    # Shutdown: release any run still parked on a debugger pause
    sessions: DebugSessionManager = app.state.debug_sessions
    for session_id in sessions.session_ids:
        sessions.stop(session_id)
    if db_engine is not None:
        await close_db(db_engine)
    logger.info("[shutdown] Application shutting down...")


def _create_persistence(app: FastAPI, settings: Settings) -> PersistenceAdapter:
    app.state.db_engine = None
    if settings.PERSISTENCE_BACKEND == "database":
        engine = create_db_engine(settings.DATABASE_URL, echo=settings.SQLALCHEMY_ECHO)
        app.state.db_engine = engine
        return DatabasePersistenceAdapter(create_session_factory(engine))
    if settings.PERSISTENCE_BACKEND != "memory":
        raise ValueError(f"Unknown PERSISTENCE_BACKEND: {settings.PERSISTENCE_BACKEND}")
    return InMemoryPersistenceAdapter()


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[FunctionRegistry] = None,
    persistence: Optional[PersistenceAdapter] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator lives on ``app.state``, so two apps never share a
    registry, session table or persistence store.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow compilation and execution runtime with "
                    "streaming runs and interactive step debugging.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = registry or create_default_registry()
    app.state.debug_sessions = DebugSessionManager()
    app.state.background_runs = set()
    if persistence is not None:
        app.state.db_engine = None
        app.state.persistence = persistence
    else:
        app.state.persistence = _create_persistence(app, settings)

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn (``flow-engine`` console script)."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.HOST, port=settings.PORT, log_config=None)
