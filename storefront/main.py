from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from storefront.config.logging import get_logger, setup_logging
from storefront.config.settings import Settings, get_settings
from storefront.infra.database import Database
from storefront.v1.catalog.routes import router as catalog_router
from storefront.v1.core.exceptions import (
    RequestContextMiddleware,
    StorefrontException,
    general_exception_handler,
    http_exception_handler,
    storefront_exception_handler,
)
from storefront.v1.core.registries import mail_transport_registry, payload_registry
from storefront.v1.healthz import router as health_router
from storefront.v1.infra.jobs.routes import router as jobs_router
from storefront.v1.infra.jobs.service import JobQueue
from storefront.v1.notifications import registry_init  # noqa: F401
from storefront.v1.orders.routes import router as orders_router

logger = get_logger(__name__)


def build_databases(settings: Settings) -> tuple[Database, Database]:
    """Return (order store, queue store); shared when the URLs match."""
    database = Database(settings)
    if settings.effective_queue_database_url == database.url:
        return database, database
    return database, Database(settings, settings.effective_queue_database_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.database.close()
    if app.state.queue_database is not app.state.database:
        await app.state.queue_database.close()
    logger.info("Database connections closed")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    custom_settings = settings is not None
    settings = settings or get_settings()

    # Initialize structured logging
    setup_logging(settings)

    # All endpoints live under the /v1/ prefix
    app = FastAPI(
        title=settings.app_name,
        description="Catalog and order API with background order confirmation email",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Storage and queue client, shared by every request of this app
    database, queue_database = build_databases(settings)
    app.state.settings = settings
    app.state.database = database
    app.state.queue_database = queue_database
    app.state.job_queue = JobQueue(queue_database, settings)

    if custom_settings:
        app.dependency_overrides[get_settings] = lambda: settings

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(StorefrontException, storefront_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(catalog_router, prefix="/v1")
    app.include_router(orders_router, prefix="/v1")
    app.include_router(jobs_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        payload_registry.freeze()
        mail_transport_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "storefront.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
