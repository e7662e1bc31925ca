import logging

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, DBAPIError, OperationalError

from core.errors import Conflict, ServiceUnavailable

logger = logging.getLogger(__name__)


async def safe_commit(session, conflict_message: str = "Resource already exists", server_error_message: str = "Internal server error"):
    """Commit, rolling back and translating database errors into HTTP errors."""
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        logger.info(f"Commit rejected by constraint: {e.orig}")
        raise Conflict(conflict_message) from e
    except OperationalError as e:
        # Lost connection, lock wait timeout and the like
        await session.rollback()
        logger.error(f"Commit failed, database unavailable: {e}")
        raise ServiceUnavailable() from e
    except DBAPIError as e:
        await session.rollback()
        logger.error(f"Commit failed: {e}")
        raise HTTPException(status_code=500, detail=server_error_message) from e
