from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.user import User


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id).execution_options(populate_existing=True))
    return result.scalars().first()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalars().first()


async def create_user(db: AsyncSession, email: str, password_hash: str, name: str = "", role: str = "user") -> User:
    user = User(email=normalize_email(email), password_hash=password_hash, name=name or "", role=role)
    db.add(user)
    await db.flush()
    return user


async def add_to_balance(db: AsyncSession, user_id: str, amount: int) -> Optional[int]:
    """Atomically add ``amount`` to the balance and return the new balance."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(token_balance=User.token_balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    balance = await db.execute(select(User.token_balance).where(User.id == user_id))
    return int(balance.scalar_one())


async def subtract_from_balance(db: AsyncSession, user_id: str, amount: int) -> Optional[int]:
    """Atomically debit ``amount``; None when the user is missing or the balance is short."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.token_balance >= amount)
        .values(token_balance=User.token_balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    balance = await db.execute(select(User.token_balance).where(User.id == user_id))
    return int(balance.scalar_one())


async def update_user(db: AsyncSession, user_id: str, values: dict) -> Optional[User]:
    if values:
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalars().first()
