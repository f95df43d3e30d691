"""Database base and session setup."""
import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

import config

logger = logging.getLogger("roster.db")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


engine = create_async_engine(
    config.DATABASE_URL,
    echo=False,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def make_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    """Session factory for another engine, configured like the default one."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# Additive migrations for databases created before a column existed
_MIGRATIONS = [
    "ALTER TABLE whitelist_entries ADD COLUMN external_ref VARCHAR(64)",
    "ALTER TABLE whitelist_entries ADD COLUMN group_name VARCHAR(32)",
    "ALTER TABLE player_discord_links ADD COLUMN updated_at DATETIME",
    "ALTER TABLE whitelist_entries ADD COLUMN starts_at DATETIME",
]


async def _run_migrations(conn) -> None:
    """Add new columns if they don't exist."""
    for sql in _MIGRATIONS:
        try:
            await conn.execute(text(sql))
        except Exception as e:
            logger.debug("Skipped migration %r: %s", sql, e)  # Column likely already exists


async def init_db(bind=None) -> None:
    """Create all tables and run migrations."""
    import bot.models  # noqa: F401 - register every table on Base.metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _run_migrations(conn)
