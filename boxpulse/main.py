"""
BoxPulse Retention Engine — FastAPI Application.

Coach-facing surface of the retention engine. Batch sweeps run in the
separate scheduler process (python -m boxpulse.scheduler_main).

Run: uvicorn boxpulse.main:app --host 0.0.0.0 --port 8001
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from boxpulse.api.routers.alerts import router as alerts_router
from boxpulse.api.routers.interventions import router as interventions_router
from boxpulse.api.routers.outcomes import router as outcomes_router
from boxpulse.api.routers.risk import router as risk_router
from boxpulse.config import settings
from boxpulse.db.compat import utcnow
from boxpulse.db.engine import close_db, get_engine, init_db
from boxpulse.errors import RetentionError
from boxpulse.logging_config import configure_logging
from boxpulse.middleware.error_handler import ErrorHandlerMiddleware
from boxpulse.middleware.request_context import RequestContextMiddleware
from boxpulse.middleware.tenant import TenantMiddleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — startup and shutdown."""
    configure_logging()
    logger.info("boxpulse_starting", version=settings.app_version, environment=settings.environment)
    await init_db()
    yield
    await close_db()
    logger.info("boxpulse_shutdown")


async def retention_error_handler(request: Request, exc: RetentionError) -> JSONResponse:
    log = logger.warning if exc.status_code >= 409 else logger.info
    log(
        "retention_error",
        code=exc.code,
        status=exc.status_code,
        detail=exc.message,
        path=request.url.path,
        **{k: v for k, v in exc.context.items() if k not in ("code", "status", "detail", "path")},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="BoxPulse Retention Engine",
        description=(
            "Scores member churn risk, raises and escalates coach alerts, "
            "records interventions and measures their outcomes.\n\n"
            "All endpoints except /health and /ready require "
            "`Authorization: Bearer <JWT>` with `box_id` and `user_id` claims."
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_tags=[
            {"name": "health", "description": "Liveness and readiness probes"},
            {"name": "risk", "description": "Member risk scores and factor breakdowns"},
            {"name": "alerts", "description": "Coach alerts, transitions and escalation"},
            {"name": "interventions", "description": "Coach interventions and follow-ups"},
            {"name": "outcomes", "description": "Measured intervention outcomes"},
        ],
    )

    app.add_exception_handler(RetentionError, retention_error_handler)

    # ── Middleware (last added = outermost) ──────────────────────────
    app.add_middleware(TenantMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Routes ───────────────────────────────────────────────────────
    app.include_router(risk_router)             # /api/v1/risk/members/*
    app.include_router(alerts_router)           # /api/v1/alerts/*
    app.include_router(interventions_router)    # /api/v1/interventions/*
    app.include_router(outcomes_router)         # /api/v1/interventions/{id}/outcome

    @app.get("/health", tags=["health"])
    async def health():
        """Liveness probe. Does not touch the database."""
        return {
            "status": "ok",
            "version": settings.app_version,
            "service": "boxpulse-retention",
        }

    @app.get("/ready", tags=["health"])
    async def readiness():
        """Readiness probe. 200 when the database answers, 503 otherwise."""
        try:
            async with get_engine().connect() as conn:
                await asyncio.wait_for(
                    conn.execute(text("SELECT 1")),
                    timeout=settings.health_check_timeout_seconds,
                )
            database = "ok"
        except Exception as e:
            logger.warning("readiness_database_unavailable", error=str(e))
            database = "unavailable"

        ok = database == "ok"
        return JSONResponse(
            status_code=200 if ok else 503,
            content={
                "status": "ok" if ok else "unavailable",
                "version": settings.app_version,
                "service": "boxpulse-retention",
                "environment": settings.environment,
                "checks": {"api": "ok", "database": database},
                "timestamp": utcnow().isoformat(),
            },
        )

    return app


app = create_app()
