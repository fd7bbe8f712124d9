from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging

from . import config
# table classes must be imported before create_all runs
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL


def make_engine(url: str | None = None):
    # NullPool keeps pooled connections from being bound to one event loop,
    # which otherwise breaks when tests run each case on a fresh loop.
    return create_async_engine(url or DATABASE_URL, echo=config.ECHO_SQL, future=True, poolclass=NullPool)


engine = make_engine()

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind=None):
    """Create all tables that do not exist yet."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('init_db complete url=%s', (bind or engine).url)


async def dispose_engine(bind=None):
    await (bind or engine).dispose()
