"""FastAPI application entrypoint.

Configures CORS, includes the sync router, and exposes a healthcheck endpoint.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import schemas
from .routers import sync as sync_router
from .telemetry import init_observability, shutdown_observability

# Import models so metadata is registered before create_all
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="adsync API",
        description="""
        adsync keeps local copies of Meta and Google Ads structures and
        performance in step with the platforms and records every
        configuration change it observes.

        This API provides endpoints for:
        - Manual and scheduled sync triggers
        - Sync run status
        - Change history and before/after change impact
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", "http://localhost:3000")
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        status = init_observability()
        logger.info("[STARTUP] Observability: %s", status)

    @app.on_event("shutdown")
    async def shutdown_event():
        shutdown_observability()

    return app


app = create_app()
