from db.session import Base, engine
# Import every model so Base.metadata knows all tables
from db.models import user, refresh_token, cronjob, deposit_order, token_transaction  # noqa: F401
import logging
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

async def initialize_database(target: AsyncEngine = None):
    """Create tables only. Schema changes beyond new tables are applied out of band."""
    target = target or engine
    try:
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise
