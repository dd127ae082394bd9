from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from atlalli_api.core.settings import settings
from atlalli_api.db.base import Base
from atlalli_api.db.session import async_session, engine
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.redemption import (
    InMemoryRedemptionLedger,
    RedemptionLedger,
    RedemptionService,
    ScannerRegistry,
    SqlCouponCatalog,
    SqlRedemptionLedger,
)
from .services.secrets.venues import build_default_venue_key_store


APP_VERSION = "0.1.0"


def build_redemption_service() -> RedemptionService:
    """Wire the redemption service from settings."""

    ledger: RedemptionLedger
    if settings.ledger_backend == "memory":
        ledger = InMemoryRedemptionLedger()
    else:
        ledger = SqlRedemptionLedger(async_session)
    return RedemptionService.from_key_store(
        build_default_venue_key_store(),
        ledger=ledger,
        catalog=SqlCouponCatalog(async_session),
        refresh_window_seconds=settings.redemption_refresh_window_seconds,
        static_link_max_age_seconds=settings.static_link_max_age_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database_auto_create:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured", database_url=engine.url.render_as_string(hide_password=True))
    else:
        logger.info("Database auto-create disabled", reason="database_auto_create is false")

    logger.info(
        "Redemption service ready",
        ledger_backend=settings.ledger_backend,
        refresh_window_seconds=app.state.redemption_service.refresh_window_seconds,
    )
    try:
        yield
    finally:
        await engine.dispose()


def create_app(*, redemption_service: RedemptionService | None = None) -> FastAPI:
    """Application factory for the Atlalli redemption API."""
    configure_logging(
        service_name="atlalli-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Atlalli Redemption API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="atlalli-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    service = redemption_service or build_redemption_service()
    app.state.redemption_service = service
    app.state.scanner_registry = ScannerRegistry(service)

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
