"""FastAPI application factory"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from paysick_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from paysick_gateway.api.v1 import affordability, marketplace, risk
from paysick_gateway.infrastructure.observability.logging import setup_logging
from paysick_gateway.infrastructure.database.session import init_db
from paysick_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="PaySick Gateway",
        description="Healthcare risk assessment and lender marketplace service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(risk.router, prefix="/v1", tags=["risk"])
    app.include_router(affordability.router, prefix="/v1", tags=["affordability"])
    app.include_router(marketplace.router, prefix="/v1", tags=["marketplace"])

    return app


app = create_app()
