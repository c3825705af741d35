from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
    AsyncSession
)

from mediagen.core.config import settings
from mediagen.db.base import Base


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != 'sqlite' or not parsed.database or parsed.database == ':memory:':
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def build_engine(url: str) -> AsyncEngine:
    _ensure_sqlite_dir(url)

    # single user, short statements: no pooled sqlite connections
    engine = create_async_engine(
        url,
        echo=False,
        poolclass=NullPool
    )

    if make_url(url).get_backend_name() == 'sqlite':
        @event.listens_for(engine.sync_engine, 'connect')
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.execute('PRAGMA synchronous=NORMAL')
            cursor.close()

    return engine


engine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(db_engine: AsyncEngine = engine) -> None:
    # registers tables on Base.metadata
    from mediagen.models import generation, workflow  # noqa: F401

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
