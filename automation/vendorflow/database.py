"""
Vendorflow — Async SQLAlchemy database setup.

Engines and session factories are built explicitly and handed to the store,
so each process (or test) owns its own handle and tears it down with close_db().
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        database_url,
        echo=echo,
        # pool settings only for postgres
        **(
            {}
            if "sqlite" in database_url
            else {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,       # test connections before use (survives sleep/wake)
                "pool_recycle": 300,          # recycle connections every 5 min to avoid stale FDs
            }
        ),
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """DateTime that is always stored as UTC and always comes back tz-aware.

    SQLite drops tzinfo on the way in, so naive values read back are UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (used at startup and in tests)."""
    import vendorflow.models  # noqa: F401  register mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    await engine.dispose()
