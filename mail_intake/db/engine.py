"""Async SQLAlchemy engine and session factory for the intake database."""

from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from mail_intake.config import DatabaseConfig
from mail_intake.db.models import Base


def _make_engine(url: str) -> AsyncEngine:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database in (None, "", ":memory:"):
            # One shared connection, otherwise each checkout sees an empty database
            return create_async_engine(
                url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(url, echo=False)
    return create_async_engine(url, echo=False, pool_size=5, max_overflow=10)


def _make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Database:
    """Holds the engine and its session factory.

    Created once at startup and shared by every store.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.engine = _make_engine(config.url)
        self.session = _make_session_factory(self.engine)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
        except (SQLAlchemyError, OSError):
            return False
        return True

    async def close(self) -> None:
        await self.engine.dispose()
