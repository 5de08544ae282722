"""
Relational ledger storage with SQLAlchemy async ORM.
PostgreSQL (asyncpg) in deployment, SQLite (aiosqlite) for local runs and tests.
"""

from typing import Optional
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine

from energy_market.infra.config.settings import Settings, get_settings
from energy_market.infra.models import Base
from energy_market.core.logger.logger import get_logger

logger = get_logger(__name__)


def build_database_url(settings: Settings) -> str:
    """DATABASE_URL wins; otherwise assemble the PostgreSQL URL from its parts"""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql+asyncpg://{settings.POSTGRES_USER}:{settings.POSTGRES_PASSWORD}"
        f"@{settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}/{settings.POSTGRES_DB}"
    )


class DatabaseManager:
    """SQLAlchemy async database manager"""

    def __init__(self, database_url: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.database_url = database_url or build_database_url(self.settings)
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    def _engine_options(self) -> dict:
        options = {"echo": self.settings.DB_LOGGING_ENABLED, "pool_pre_ping": True}
        if make_url(self.database_url).get_backend_name() != "sqlite":
            options.update(
                pool_size=self.settings.POSTGRES_MIN_POOL_SIZE,
                max_overflow=self.settings.POSTGRES_MAX_POOL_SIZE - self.settings.POSTGRES_MIN_POOL_SIZE,
                pool_recycle=3600,
            )
        return options

    async def connect(self) -> AsyncEngine:
        """Initialize database engine and session factory"""
        if self._engine is not None:
            return self._engine

        try:
            self._engine = create_async_engine(self.database_url, **self._engine_options())

            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False
            )

            # Test connection
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

            logger.info(
                "Connected to ledger database",
                extra={"backend": make_url(self.database_url).get_backend_name()}
            )
            return self._engine

        except Exception as e:
            logger.error(
                "Failed to connect to ledger database",
                extra={"error": str(e)}
            )
            raise

    async def create_schema(self) -> None:
        """Create missing tables (development and tests; deployments run migrations)"""
        engine = await self.connect()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database engine"""
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Ledger database engine closed")
            self._engine = None
            self._session_factory = None

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database session factory not initialized")
        return self._session_factory

    async def ping(self) -> bool:
        if self._engine is None:
            return False
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
