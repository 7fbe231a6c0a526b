"""FastAPI application factory"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from bison_billing.api.middleware import RequestIDMiddleware, MetricsMiddleware
from bison_billing.api.v1 import accounts, alerts, config, tasks
from bison_billing.engine.container import Engine, build_engine
from bison_billing.infrastructure.clients.notifications import NotificationSink
from bison_billing.infrastructure.clients.usage import UsageClient
from bison_billing.infrastructure.clients.workload import WorkloadClient
from bison_billing.infrastructure.database.session import SessionLocal
from bison_billing.infrastructure.observability.logging import setup_logging
from bison_billing.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app(engine: Engine | None = None, start_scheduler: bool | None = None) -> FastAPI:
    """Create and configure FastAPI application"""
    if engine is None:
        engine = build_engine(SessionLocal, UsageClient(), WorkloadClient(), NotificationSink())
    if start_scheduler is None:
        start_scheduler = settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            await engine.scheduler.start()
        try:
            yield
        finally:
            await engine.scheduler.stop()

    app = FastAPI(
        title="Bison Billing",
        description="Usage billing, balance reconciliation and suspension service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name, "scheduler_running": engine.scheduler.running}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(accounts.router, prefix="/v1", tags=["accounts"])
    app.include_router(config.router, prefix="/v1", tags=["config"])
    app.include_router(alerts.router, prefix="/v1", tags=["alerts"])
    app.include_router(tasks.router, prefix="/v1", tags=["tasks"])

    return app


app = create_app()
