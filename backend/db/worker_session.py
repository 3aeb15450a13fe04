"""Worker-safe database access for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings


@asynccontextmanager
async def worker_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Provide a session factory bound to a short-lived engine.

    Usage:
        async with worker_session_factory() as session_factory:
            store = ScheduleStore(session_factory)
    """
    settings = get_settings()
    kwargs = dict(echo=False)
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=5, pool_recycle=300)
    engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()
