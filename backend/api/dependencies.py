from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.errors import Forbidden, InvalidToken
from core.security import oauth2_scheme, verify_token
from db.session import get_db_session
from db.stores import users as user_store
from schemas.user_schema import User as UserSchema

logger = logging.getLogger(__name__)


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: AsyncSession = Depends(get_db_session)) -> UserSchema:
    payload = verify_token(token) if token else None
    if not payload:
        raise InvalidToken("access_token")

    # The row is authoritative: deactivation and role changes apply immediately
    db_user = await user_store.get_user_by_id(db, payload["user_id"])
    if db_user is None or not db_user.is_active:
        raise InvalidToken("user_inactive")
    return UserSchema.from_model(db_user)


async def admin_required(current_user: UserSchema = Depends(get_current_user)) -> UserSchema:
    if current_user.role != "admin":
        raise Forbidden("Admin access required")
    return current_user


def client_info(request: Request) -> dict:
    """User agent and client address recorded with each refresh token"""
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {"user_agent": request.headers.get("user-agent"), "ip": ip}
