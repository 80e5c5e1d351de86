from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from campaign_engine import __version__
from campaign_engine.core.settings import settings
from campaign_engine.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing, shutdown_tracing
from .workers import CampaignDispatchWorker


APP_VERSION = __version__


def build_dispatch_worker() -> CampaignDispatchWorker:
    return CampaignDispatchWorker(
        session_factory=async_session,
        interval_seconds=settings.campaign_dispatch_interval_seconds,
        batch_size=settings.campaign_dispatch_batch_size,
        trigger_label=settings.campaign_dispatch_trigger_label,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatch_worker = build_dispatch_worker()
    app.state.campaign_dispatch_worker = dispatch_worker

    if settings.campaign_dispatch_worker_enabled:
        dispatch_worker.start()
    else:
        logger.info("Campaign dispatch worker disabled; scheduled campaigns need an explicit dispatch call")

    try:
        yield
    finally:
        if dispatch_worker.is_running:
            await dispatch_worker.stop()
        if settings.otel_tracing_enabled:
            shutdown_tracing()


def create_app() -> FastAPI:
    """Build the campaign engine API with logging, tracing, and the v1 routers."""

    configure_logging(
        service_name=settings.otel_service_name,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        log_format=settings.log_format,
        sql_echo=settings.database_echo,
    )

    app = FastAPI(
        title="Campaign Engine API",
        description="Audiences, promo codes, campaign sends, and metrics for restaurant marketing.",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    if settings.otel_tracing_enabled:
        configure_tracing(
            app,
            service_name=settings.otel_service_name,
            service_version=APP_VERSION,
            environment=settings.environment,
            sample_ratio=settings.otel_sample_ratio,
        )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {"status": "ok", "environment": settings.environment, "version": APP_VERSION}

    logger.info(
        "Campaign engine configured",
        environment=settings.environment,
        version=APP_VERSION,
        tracing=settings.otel_tracing_enabled,
    )
    return app
