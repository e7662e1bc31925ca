"""Refresh-token rotation with reuse detection.

Every login starts a token *family*. Each refresh revokes the presented token
and issues a new one in the same family, so a family has at most one live
refresh token. Presenting a token that was already revoked means it was
copied: the whole family is revoked and the caller is rejected. Callers only
ever see ``InvalidToken``; the reason is logged.
"""
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from fastapi import HTTPException, status

from core.config import settings
from core.errors import InvalidToken, Conflict, Forbidden, NotFound, ValidationError
from core.security import (
    create_access_token,
    create_refresh_token,
    get_password_hash,
    hash_token,
    new_token_family,
    verify_password,
    verify_refresh_token,
)
from db.session import get_or_use_session
from db.stores import refresh_tokens as token_store
from db.stores import users as user_store
from schemas.user_schema import AuthResponse, ChangePasswordRequest, TokenPair, User, UserCreate
from utils.clock import utcnow
from utils.db import safe_commit

logger = logging.getLogger(__name__)


def _reject(reason: str, detail: str = "") -> InvalidToken:
    logger.warning(f"Refresh token rejected: reason={reason} {detail}".rstrip())
    return InvalidToken(reason)


async def _issue_pair(
    db: AsyncSession,
    user,
    family: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
) -> TokenPair:
    family = family or new_token_family()
    access_token = create_access_token(data={"user_id": user.id, "email": user.email, "role": user.role})
    refresh_token, expires_at = create_refresh_token(data={"user_id": user.id}, family=family)
    await token_store.create_refresh_token(
        db,
        user_id=user.id,
        token_hash=hash_token(refresh_token),
        family=family,
        expires_at=expires_at,
        user_agent=user_agent,
        ip_address=ip,
    )
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


async def issue_pair(
    user,
    family: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    db: AsyncSession = None,
) -> TokenPair:
    """Sign an access/refresh pair and persist the refresh token's hash."""
    async with get_or_use_session(db) as _db:
        pair = await _issue_pair(_db, user, family, user_agent, ip)
        await safe_commit(_db)
        return pair


async def refresh(
    presented: str,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    db: AsyncSession = None,
) -> TokenPair:
    payload = verify_refresh_token(presented or "")
    if payload is None:
        raise _reject("malformed")

    async with get_or_use_session(db) as _db:
        record = await token_store.find_by_hash(_db, hash_token(presented))
        if record is None:
            raise _reject("unknown", f"user_id={payload.get('user_id')}")

        if record.is_revoked:
            revoked = await token_store.revoke_family(_db, record.family)
            await _db.commit()
            raise _reject("reused", f"user_id={record.user_id} family={record.family} revoked={revoked}")

        if record.user_id != payload.get("user_id") or record.family != payload.get("family"):
            raise _reject("claims_mismatch", f"token_id={record.id}")

        if record.expires_at <= utcnow():
            raise _reject("expired", f"token_id={record.id}")

        user = await user_store.get_user_by_id(_db, record.user_id)
        if user is None or not user.is_active:
            raise _reject("user_inactive", f"user_id={record.user_id}")

        if not await token_store.revoke_token(_db, record.id):
            # A concurrent refresh already rotated this token
            revoked = await token_store.revoke_family(_db, record.family)
            await _db.commit()
            raise _reject("reused", f"user_id={record.user_id} family={record.family} revoked={revoked} concurrent=true")

        pair = await _issue_pair(_db, user, record.family, user_agent, ip)
        await user_store.update_user(_db, user.id, {"last_active_at": utcnow()})
        await safe_commit(_db)
        logger.info(f"Rotated refresh token for user {user.id} in family {record.family}")
        return pair


async def revoke(token: str, db: AsyncSession = None) -> bool:
    """Revoke a single refresh token; False when unknown or already revoked."""
    async with get_or_use_session(db) as _db:
        record = await token_store.find_by_hash(_db, hash_token(token))
        if record is None:
            return False
        revoked = await token_store.revoke_token(_db, record.id)
        await safe_commit(_db)
        return revoked


async def revoke_all_for_user(user_id: str, db: AsyncSession = None) -> int:
    async with get_or_use_session(db) as _db:
        count = await token_store.revoke_all_for_user(_db, user_id)
        await safe_commit(_db)
        logger.info(f"Revoked {count} refresh tokens for user {user_id}")
        return count


async def logout(presented: Optional[str], db: AsyncSession = None) -> None:
    """Idempotent: unknown, revoked or missing tokens are not errors."""
    if not presented:
        return
    if not await revoke(presented, db=db):
        logger.debug("Logout with unknown or already revoked refresh token")


async def purge_expired_tokens(db: AsyncSession = None) -> int:
    async with get_or_use_session(db) as _db:
        count = await token_store.delete_expired(_db, utcnow())
        await safe_commit(_db)
        if count:
            logger.info(f"Purged {count} expired refresh tokens")
        return count


# ---------------------------------------------------------------------------
# Account operations
# ---------------------------------------------------------------------------

async def register(
    data: UserCreate,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    db: AsyncSession = None,
) -> AuthResponse:
    async with get_or_use_session(db) as _db:
        if await user_store.get_user_by_email(_db, data.email) is not None:
            raise Conflict("Email already registered")
        user = await user_store.create_user(_db, data.email, get_password_hash(data.password), name=data.name)
        pair = await _issue_pair(_db, user, user_agent=user_agent, ip=ip)
        await safe_commit(_db, conflict_message="Email already registered")
        logger.info(f"Registered user {user.id}")
        return AuthResponse(**pair.model_dump(), user=User.from_model(user))


async def login(
    email: str,
    password: str,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    db: AsyncSession = None,
) -> AuthResponse:
    async with get_or_use_session(db) as _db:
        user = await user_store.get_user_by_email(_db, email)
        if user is None or not verify_password(password, user.password_hash):
            logger.info(f"Failed login for {user_store.normalize_email(email)}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect email or password",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not user.is_active:
            raise Forbidden("Account is deactivated")
        pair = await _issue_pair(_db, user, user_agent=user_agent, ip=ip)
        user = await user_store.update_user(_db, user.id, {"last_active_at": utcnow()})
        await safe_commit(_db)
        return AuthResponse(**pair.model_dump(), user=User.from_model(user))


async def get_me(user_id: str, db: AsyncSession = None) -> User:
    async with get_or_use_session(db) as _db:
        user = await user_store.get_user_by_id(_db, user_id)
        if user is None:
            raise NotFound("User")
        return User.from_model(user)


async def change_password(
    user_id: str,
    request: ChangePasswordRequest,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    db: AsyncSession = None,
) -> TokenPair:
    """Change the password, sign out every session, and start a fresh one."""
    async with get_or_use_session(db) as _db:
        user = await user_store.get_user_by_id(_db, user_id)
        if user is None:
            raise NotFound("User")
        if not verify_password(request.current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        if request.current_password == request.new_password:
            raise ValidationError("New password must differ from the current one")
        await user_store.update_user(_db, user_id, {"password_hash": get_password_hash(request.new_password)})
        revoked = await token_store.revoke_all_for_user(_db, user_id)
        pair = await _issue_pair(_db, user, user_agent=user_agent, ip=ip)
        await safe_commit(_db)
        logger.info(f"Password changed for user {user_id}; revoked {revoked} sessions")
        return pair
