"""
Database Connection
===================
Async connection using SQLAlchemy (asyncpg in production, aiosqlite locally)
"""

import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from leadengine.config import get_settings
from leadengine.db.models import Base

logger = logging.getLogger(__name__)

settings = get_settings()


def build_engine(database_url: str, echo: bool = False):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing fast
        connect_args["timeout"] = 30
    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        connect_args=connect_args,
    )


def build_session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Create engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory
async_session_factory = build_session_factory(engine)


async def init_db(target_engine=None):
    """Create all tables (for development only - use migrations in production)"""
    target_engine = target_engine or engine
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
