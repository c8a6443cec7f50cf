from collections.abc import AsyncGenerator

import pytest
import structlog
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from storefront.config.settings import Settings
from storefront.infra.database import Database
from storefront.main import create_app
from storefront.v1.infra.jobs.service import JobQueue
from storefront.v1.notifications import registry_init  # noqa: F401
from storefront.v1.notifications.handlers import OrderConfirmationHandler
from storefront.v1.notifications.templates import TemplateStore
from tests.factories import FakeClock, RecordingTransport, make_settings

# Import models to ensure they're registered
from storefront.v1.catalog import models as catalog_models  # noqa: F401
from storefront.v1.infra.jobs import models as job_models  # noqa: F401
from storefront.v1.orders import models as order_models  # noqa: F401


def _configure_test_logging(settings: Settings | None = None) -> None:
    """Plain, uncached log output so loggers never hold a closed stream."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture(autouse=True)
def test_logging(monkeypatch):
    _configure_test_logging()
    monkeypatch.setattr("storefront.main.setup_logging", _configure_test_logging)
    monkeypatch.setattr("storefront.cli.main.setup_logging", _configure_test_logging)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a temporary SQLite database."""
    return make_settings(tmp_path)


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Database with all tables created."""
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def job_queue(database, settings) -> JobQueue:
    return JobQueue(database, settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def confirmation_handler(transport) -> OrderConfirmationHandler:
    return OrderConfirmationHandler(templates=TemplateStore(), transport=transport)


@pytest.fixture
async def app(settings) -> AsyncGenerator[FastAPI, None]:
    """Create a test FastAPI application backed by a temporary database."""
    app = create_app(settings)
    await app.state.database.create_all()
    yield app
    await app.state.database.close()
    if app.state.queue_database is not app.state.database:
        await app.state.queue_database.close()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
