"""Async SQLAlchemy engine for the schedule store."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cadence.db.models import Base


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


class Database:
    """Owns the engine and hands out transactional sessions.

    Either a full ``database_url`` or a SQLite ``database_path`` is required;
    the URL wins when both are given. The parent directory of a SQLite file is
    created on construction.
    """

    def __init__(
        self, database_url: str | None = None, database_path: Path | None = None
    ):
        if database_url:
            self.url = database_url
        elif database_path:
            database_path.parent.mkdir(parents=True, exist_ok=True)
            self.url = sqlite_url(database_path)
        else:
            raise ValueError("Either database_url or database_path must be provided")

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._engine

    async def connect(self) -> None:
        self._engine = create_async_engine(self.url, pool_pre_ping=True)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: committed on exit, rolled back if the block raises."""
        if self._sessions is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def open_database(
    database_url: str | None = None, database_path: Path | None = None
) -> Database:
    """Connect and create any missing tables."""
    db = Database(database_url=database_url, database_path=database_path)
    await db.connect()
    await db.create_tables()
    return db
