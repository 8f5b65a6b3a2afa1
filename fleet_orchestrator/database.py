"""
Fleet Orchestrator Database

Database connection and session management.
"""
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
import structlog
import os

from .config import FleetSettings
from .control_plane import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = structlog.get_logger(__name__)


class Database:
    """
    Database connection manager for the orchestrator.

    Uses async SQLModel with asyncpg in production. SQLite URLs (used by the
    test suite) share a single in-process connection.
    """

    def __init__(self, settings: FleetSettings) -> None:
        self._settings = settings
        dsn = settings.postgres_dsn
        if dsn.startswith("sqlite"):
            engine_kwargs = {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        else:
            engine_kwargs = {
                "pool_pre_ping": True,
                "pool_size": 5,
                "max_overflow": 15,
            }
        self._engine: AsyncEngine = create_async_engine(dsn, echo=settings.database_echo, **engine_kwargs)
        self._session_factory = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        return self._engine

    def session(self) -> AsyncSession:
        """Get a database session."""
        return self._session_factory()

    async def init_models(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in SQLModel models.

        NOTE: This is for development/quickstart only.
        Set SKIP_INIT_MODELS=true to skip this in production.
        """
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("Skipping init_models (migrations should be used in production)")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("fleet_tables_initialized")

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.warning("database_ping_failed", error=str(e))
            return False
        return True

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
