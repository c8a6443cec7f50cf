from typing import Any, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from storefront.config.settings import Settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def _build_engine_kwargs(settings: Settings, url: str) -> dict[str, Any]:
    """Return engine kwargs appropriate for the configured dialect."""
    if make_url(url).get_backend_name() == "sqlite":
        # aiosqlite has no pool tunables
        return {
            "echo": settings.db_echo,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "echo": settings.db_echo,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
        "pool_pre_ping": True,
    }


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings, url: str | None = None):
        self.settings = settings
        self.url = url or settings.database_url
        self.engine = create_async_engine(
            self.url, **_build_engine_kwargs(settings, self.url)
        )

        if self.is_sqlite:
            # WAL lets readers proceed while a worker writes; busy_timeout
            # waits for the lock instead of failing straight away.
            @event.listens_for(self.engine.sync_engine, "connect")
            def _set_sqlite_pragmas(dbapi_conn, _conn_rec):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.close()

        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def is_sqlite(self) -> bool:
        return self.dialect_name == "sqlite"

    @property
    def is_postgres(self) -> bool:
        return self.dialect_name == "postgresql"

    async def create_all(self) -> None:
        """Create all tables known to the metadata (development and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


def get_database(request: Request) -> Database:
    """Get the application database created by create_app()."""
    return request.app.state.database


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency injection for database sessions."""
    database: Database = request.app.state.database
    async with database.SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# Convenience type alias for dependency injection
SessionDep = Depends(get_session)
