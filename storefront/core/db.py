# storefront/core/db.py
import logging
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

from storefront.core.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

Base = declarative_base()


# Dependency that hands a DB session to a request
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


async def init_models(bind=None):
    """Creates missing tables. Tables that already exist are left alone."""
    # Importing the module registers every table on Base.metadata
    import storefront.models.analytics  # noqa: F401
    import storefront.models.cart  # noqa: F401
    import storefront.models.order  # noqa: F401

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables are in place.")
