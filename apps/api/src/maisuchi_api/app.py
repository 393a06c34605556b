from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from maisuchi_api.core.settings import settings
from maisuchi_api.db.session import async_session
from .api.errors import register_error_handlers
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import LoyaltyReconciliationWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reconciliation_worker = LoyaltyReconciliationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.loyalty_reconciliation_interval_seconds,
    )
    app.state.loyalty_reconciliation_worker = reconciliation_worker

    reconciliation_enabled = settings.loyalty_reconciliation_worker_enabled
    if reconciliation_enabled:
        reconciliation_worker.start()
        logger.info(
            "Loyalty reconciliation worker enabled",
            interval_seconds=reconciliation_worker.interval_seconds,
        )
    else:
        logger.info(
            "Loyalty reconciliation worker disabled",
            reason="loyalty_reconciliation_worker_enabled is false",
        )

    try:
        yield
    finally:
        if reconciliation_enabled and reconciliation_worker.is_running:
            await reconciliation_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the Maisuchi loyalty API."""
    configure_logging(
        service_name="maisuchi-api",
        environment=settings.environment,
        version=APP_VERSION,
    )
    app = FastAPI(
        title="Maisuchi Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    configure_tracing(
        app,
        service_name="maisuchi-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )
    register_error_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
