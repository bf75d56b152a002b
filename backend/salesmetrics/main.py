"""FastAPI application entrypoint.

Configures CORS, maps domain errors onto HTTP responses, includes routers and
exposes a healthcheck endpoint.
"""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .errors import ComputeFailed, SalesMetricsError
from .routers import accounts as accounts_router
from .routers import attribution as attribution_router
from .routers import metrics as metrics_router
from .routers import team as team_router
from .telemetry import init_observability
from .workers.arq_enqueue import reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="salesmetrics API",
        description="""
        Sales analytics backend for multi-tenant dashboards.

        This API provides endpoints for:
        - Timezone-correct metrics with period-over-period comparison
        - Setter / sales rep identity resolution and team candidates
        - Marketing session tracking and attribution linking
        - Account business timezone settings
        """,
        version="1.0.0",
    )

    settings = get_settings()
    init_observability()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", settings.BACKEND_CORS_ORIGINS)
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SalesMetricsError)
    async def domain_error_handler(request: Request, exc: SalesMetricsError):
        if isinstance(exc, ComputeFailed):
            # Never leak store errors to the dashboard
            return JSONResponse(
                status_code=exc.status_code,
                content={"code": exc.code.value, "message": "Failed to compute metric"},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(metrics_router.router)
    app.include_router(team_router.router)
    app.include_router(attribution_router.router)
    app.include_router(accounts_router.router)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the arq Redis pool used by enqueueing routes."""
        await reset_arq_pool()

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
