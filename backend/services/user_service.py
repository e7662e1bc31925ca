from typing import List, Optional
from urllib.parse import urlparse
import logging

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFound, ValidationError
from db.models.user import User as UserModel
from db.session import get_or_use_session
from db.stores import refresh_tokens as token_store
from db.stores import users as user_store
from schemas.user_schema import GatewaySettingsUpdate, User
from utils.db import safe_commit

logger = logging.getLogger(__name__)


def _normalize_gateway_url(url: Optional[str]) -> Optional[str]:
    if url is None:
        return None
    url = url.strip().rstrip("/")
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Gateway URL must be an http(s) URL")
    return url


async def update_gateway_settings(user_id: str, data: GatewaySettingsUpdate, db: AsyncSession = None) -> User:
    """Set or clear the gateway the cron runner calls for this user"""
    changes = data.model_dump(exclude_unset=True)
    values = {}
    if "gateway_url" in changes:
        values["gateway_url"] = _normalize_gateway_url(changes["gateway_url"])
    if "gateway_token" in changes:
        values["gateway_token"] = (changes["gateway_token"] or "").strip() or None

    async with get_or_use_session(db) as _db:
        user = await user_store.update_user(_db, user_id, values)
        if user is None:
            raise NotFound("User")
        await safe_commit(_db)
        logger.info(f"Gateway settings updated for user {user_id}: url={user.gateway_url}")
        return User.from_model(user)


async def list_users(search: Optional[str] = None, limit: int = 50, offset: int = 0, db: AsyncSession = None) -> dict:
    async with get_or_use_session(db) as _db:
        conditions = []
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(or_(func.lower(UserModel.email).like(pattern), func.lower(UserModel.name).like(pattern)))
        total = await _db.execute(select(func.count(UserModel.id)).where(*conditions))
        result = await _db.execute(
            select(UserModel).where(*conditions).order_by(UserModel.created_at.desc()).limit(limit).offset(offset)
        )
        users: List[User] = [User.from_model(u) for u in result.scalars().all()]
        return {"users": users, "total": int(total.scalar_one()), "limit": limit, "offset": offset}


async def set_user_active(user_id: str, is_active: bool, db: AsyncSession = None) -> User:
    """Activate or deactivate an account; deactivation signs out every session"""
    async with get_or_use_session(db) as _db:
        user = await user_store.update_user(_db, user_id, {"is_active": is_active})
        if user is None:
            raise NotFound("User")
        revoked = 0
        if not is_active:
            revoked = await token_store.revoke_all_for_user(_db, user_id)
        await safe_commit(_db)
        logger.info(f"User {user_id} {'activated' if is_active else f'deactivated; revoked {revoked} sessions'}")
        return User.from_model(user)
