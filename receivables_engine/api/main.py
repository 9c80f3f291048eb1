"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from receivables_engine.api.exception_handlers import register_exception_handlers
from receivables_engine.api.middleware import RequestIDMiddleware, MetricsMiddleware
from receivables_engine.api.v1 import approvals, batches, gateway, payments, payors
from receivables_engine.infrastructure.observability.logging import setup_logging
from receivables_engine.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Receivables Approval & Origination Engine",
        description="Amount-tiered invoice approval chains and ACH payment origination",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(payors.router, prefix="/v1", tags=["payors"])
    app.include_router(approvals.router, prefix="/v1", tags=["approvals"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(batches.router, prefix="/v1", tags=["batches"])
    app.include_router(gateway.router, prefix="/v1", tags=["gateway"])

    return app


app = create_app()
