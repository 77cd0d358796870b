from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from media_queue.settings import settings


def build_engine(url: str) -> AsyncEngine:
    kwargs = {"echo": False, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Concurrent writers wait on the file lock instead of failing fast
        kwargs["connect_args"] = {"timeout": 30}
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def init_db(bind: AsyncEngine = engine) -> None:
    """Creates any missing tables."""
    # Registers the mapped classes on Base.metadata
    import media_queue.db.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
