"""Refresh token persistence.

Revocations are single UPDATE statements so concurrent refreshes of the same
token resolve inside the database: ``revoke_token`` reports whether this
caller was the one that flipped ``is_revoked``.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.refresh_token import RefreshToken
from utils.clock import utcnow


async def create_refresh_token(
    db: AsyncSession,
    user_id: str,
    token_hash: str,
    family: str,
    expires_at: datetime,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> RefreshToken:
    record = RefreshToken(
        user_id=user_id,
        token_hash=token_hash,
        family=family,
        expires_at=expires_at,
        user_agent=user_agent[:512] if user_agent else None,
        ip_address=ip_address,
    )
    db.add(record)
    await db.flush()
    return record


async def find_by_hash(db: AsyncSession, token_hash: str) -> Optional[RefreshToken]:
    result = await db.execute(
        select(RefreshToken).where(RefreshToken.token_hash == token_hash).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def revoke_token(db: AsyncSession, token_id: str) -> bool:
    """Revoke one token; False when it was already revoked."""
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token_id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def revoke_family(db: AsyncSession, family: str) -> int:
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.family == family, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def revoke_all_for_user(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def count_active_in_family(db: AsyncSession, family: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        select(func.count(RefreshToken.id)).where(
            RefreshToken.family == family,
            RefreshToken.is_revoked.is_(False),
            RefreshToken.expires_at > now,
        )
    )
    return int(result.scalar_one())


async def delete_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
    result = await db.execute(
        delete(RefreshToken)
        .where(RefreshToken.expires_at < (now or utcnow()))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
