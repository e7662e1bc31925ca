"""Deposit orders and the token ledger.

``complete_order`` is the idempotency gate for payments: it only moves an
order out of ``pending``/``expired`` once, and ``payment_reference`` is unique,
so the same bank transfer can never be applied twice.
"""
from datetime import datetime
from typing import List, Optional, Tuple
import secrets
import string
import time

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from db.models.deposit_order import DepositOrder
from db.models.token_transaction import TokenTransaction
from db.models.user import User

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"

# Statuses a payment may still complete (expired = late payment)
PAYABLE_STATUSES = (STATUS_PENDING, STATUS_EXPIRED)

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_code(now_ms: Optional[int] = None) -> str:
    """Prefix + base36 millisecond timestamp + 4 random characters, all upper case."""
    timestamp = _to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{config.get_order_code_prefix()}{timestamp}{suffix}"


def calculate_vnd_from_tokens(tokens: int) -> int:
    """Price of ``tokens`` in VND, rounded up."""
    price = config.get_token_price_vnd()
    unit = config.get_tokens_per_price_unit()
    return -(-int(tokens) * price // unit)


def calculate_tokens_from_vnd(vnd: int) -> int:
    return int(vnd) * config.get_tokens_per_price_unit() // config.get_token_price_vnd()


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

async def create_deposit_order(
    db: AsyncSession,
    user_id: str,
    order_code: str,
    token_amount: int,
    amount: int,
    expires_at: datetime,
) -> DepositOrder:
    order = DepositOrder(
        user_id=user_id,
        order_code=order_code,
        token_amount=token_amount,
        amount=amount,
        status=STATUS_PENDING,
        expires_at=expires_at,
    )
    db.add(order)
    await db.flush()
    return order


async def get_order_by_id(db: AsyncSession, order_id: str) -> Optional[DepositOrder]:
    result = await db.execute(
        select(DepositOrder).where(DepositOrder.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_order_by_code(db: AsyncSession, order_code: str) -> Optional[DepositOrder]:
    result = await db.execute(
        select(DepositOrder).where(DepositOrder.order_code == order_code).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def find_by_payment_reference(db: AsyncSession, payment_reference: str) -> Optional[DepositOrder]:
    result = await db.execute(select(DepositOrder).where(DepositOrder.payment_reference == payment_reference))
    return result.scalars().first()


async def list_user_orders(
    db: AsyncSession, user_id: str, limit: int = 20, offset: int = 0
) -> Tuple[List[DepositOrder], int]:
    total = await db.execute(select(func.count(DepositOrder.id)).where(DepositOrder.user_id == user_id))
    result = await db.execute(
        select(DepositOrder)
        .where(DepositOrder.user_id == user_id)
        .order_by(DepositOrder.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total.scalar_one())


async def get_active_pending_order(db: AsyncSession, user_id: str, now: datetime) -> Optional[DepositOrder]:
    result = await db.execute(
        select(DepositOrder)
        .where(
            DepositOrder.user_id == user_id,
            DepositOrder.status == STATUS_PENDING,
            DepositOrder.expires_at > now,
        )
        .order_by(DepositOrder.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def update_order_status(
    db: AsyncSession, order_id: str, status: str, from_statuses: Tuple[str, ...] = (STATUS_PENDING,)
) -> bool:
    """Move an order to ``status`` only while it is still in one of ``from_statuses``."""
    result = await db.execute(
        update(DepositOrder)
        .where(DepositOrder.id == order_id, DepositOrder.status.in_(from_statuses))
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def complete_order(
    db: AsyncSession,
    order_id: str,
    payment_reference: str,
    payment_method: str,
    paid_at: datetime,
) -> bool:
    """Compare-and-set an order to completed; False if someone else completed or closed it."""
    result = await db.execute(
        update(DepositOrder)
        .where(DepositOrder.id == order_id, DepositOrder.status.in_(PAYABLE_STATUSES))
        .values(
            status=STATUS_COMPLETED,
            payment_reference=payment_reference,
            payment_method=payment_method,
            paid_at=paid_at,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_expired_orders(db: AsyncSession, now: datetime) -> int:
    result = await db.execute(
        update(DepositOrder)
        .where(DepositOrder.status == STATUS_PENDING, DepositOrder.expires_at < now)
        .values(status=STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def list_all_orders(
    db: AsyncSession,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
) -> Tuple[List[Tuple[DepositOrder, Optional[str], Optional[str]]], int]:
    """Admin listing joined with the owner's email and name."""
    conditions = []
    if status:
        conditions.append(DepositOrder.status == status)
    if user_id:
        conditions.append(DepositOrder.user_id == user_id)
    total = await db.execute(select(func.count(DepositOrder.id)).where(*conditions))
    result = await db.execute(
        select(DepositOrder, User.email, User.name)
        .outerjoin(User, User.id == DepositOrder.user_id)
        .where(*conditions)
        .order_by(DepositOrder.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [tuple(row) for row in result.all()], int(total.scalar_one())


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

async def create_transaction(
    db: AsyncSession,
    user_id: str,
    type: str,
    amount: int,
    balance_after: int,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> TokenTransaction:
    row = TokenTransaction(
        user_id=user_id,
        type=type,
        amount=amount,
        balance_after=balance_after,
        description=description,
        reference_id=reference_id,
    )
    db.add(row)
    await db.flush()
    return row


async def list_transactions(
    db: AsyncSession, user_id: str, limit: int = 50, offset: int = 0, type: Optional[str] = None
) -> Tuple[List[TokenTransaction], int]:
    conditions = [TokenTransaction.user_id == user_id]
    if type:
        conditions.append(TokenTransaction.type == type)
    total = await db.execute(select(func.count(TokenTransaction.id)).where(*conditions))
    result = await db.execute(
        select(TokenTransaction)
        .where(*conditions)
        .order_by(TokenTransaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total.scalar_one())
