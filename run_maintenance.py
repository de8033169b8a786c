# run_maintenance.py
import asyncio
import logging
from storefront.core.config import settings
from storefront.core.db import AsyncSessionLocal, engine, init_models
from storefront.services.anonymous_cart import AnonymousCartService

# Same logging setup as main.py
log_level = settings.LOGGING_LEVEL.upper()
logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run_cart_maintenance():
    """
    Guest cart housekeeping, meant for a cron job: deletes expired carts and
    marks idle ones as abandoned.
    """
    await init_models()
    try:
        async with AsyncSessionLocal() as db:
            service = AnonymousCartService(db)
            deleted = await service.cleanup_expired()
            abandoned = await service.mark_stale_abandoned()
        logger.info(f"Cart maintenance finished: {deleted} expired carts deleted, {abandoned} carts marked abandoned.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(run_cart_maintenance())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Maintenance interrupted by user.")
