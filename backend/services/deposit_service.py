"""Token deposits paid by bank transfer, reconciled from SePay notifications.

A deposit order carries a short ``order_code`` that the customer puts in the
transfer content. When the bank notifies us, the code picks the order and the
bank's reference makes the credit idempotent: completing the order, crediting
the balance and writing the ledger row happen in one transaction, and a
reference is never applied twice.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from urllib.parse import urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from core.config import settings
from core.errors import Forbidden, NotFound, ValidationError, Conflict
from db.session import get_or_use_session
from db.stores import deposits as deposit_store
from db.stores import users as user_store
from schemas.deposit_schema import (
    AdminDepositList,
    AdminTokenAdjustmentResult,
    DepositList,
    DepositOrder,
    Pagination,
    PaymentInfo,
    PendingOrder,
    PricingInfo,
    PricingPackage,
    SePayWebhook,
    TokenHistory,
    TokenTransaction,
)
from utils.clock import utcnow
from utils.db import safe_commit

logger = logging.getLogger(__name__)

PAYMENT_METHOD_BANK = "bank_transfer"
PAYMENT_METHOD_MANUAL = "manual"

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_ALREADY_COMPLETED = "already_completed"
OUTCOME_UNKNOWN_ORDER = "unknown_order"
OUTCOME_NOT_PAYABLE = "not_payable"
OUTCOME_UNDERPAID = "underpaid"
OUTCOME_MISSING_REFERENCE = "missing_reference"
OUTCOME_UNKNOWN_USER = "unknown_user"


@dataclass
class ReconciliationResult:
    success: bool
    outcome: str
    order_id: Optional[str] = None


def order_code_pattern() -> "re.Pattern":
    return re.compile(rf"{re.escape(config.get_order_code_prefix())}[A-Z0-9]+")


def extract_order_code(content: Optional[str]) -> Optional[str]:
    """First order code found in a transfer's free-text content."""
    if not content:
        return None
    match = order_code_pattern().search(content.upper())
    return match.group(0) if match else None


def parse_transaction_date(value: Union[str, datetime, None]) -> datetime:
    """Bank timestamp as naive UTC; naive inputs are in the bank's zone."""
    if value is None or value == "":
        return utcnow()
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable transaction date {value!r}; using receive time")
            return utcnow()
    if value.tzinfo is None:
        try:
            value = value.replace(tzinfo=ZoneInfo(settings.SEPAY_TIMEZONE))
        except ZoneInfoNotFoundError:
            value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _qr_code_url(order) -> str:
    params = urlencode({
        "acc": settings.SEPAY_BANK_ACCOUNT,
        "bank": settings.SEPAY_BANK_CODE,
        "amount": str(order.amount),
        "des": order.order_code,
    })
    return f"{settings.SEPAY_QR_BASE_URL}?{params}"


def format_order(order, user_email: Optional[str] = None, user_name: Optional[str] = None, now: Optional[datetime] = None) -> DepositOrder:
    now = now or utcnow()
    status = order.status
    if status == deposit_store.STATUS_PENDING and order.expires_at <= now:
        status = deposit_store.STATUS_EXPIRED
    return DepositOrder(
        id=order.id,
        order_code=order.order_code,
        token_amount=order.token_amount,
        amount_vnd=order.amount,
        status=status,
        payment_info=PaymentInfo(
            bank_name=settings.SEPAY_BANK_CODE,
            account_number=settings.SEPAY_BANK_ACCOUNT,
            account_name=settings.SEPAY_ACCOUNT_NAME,
            transfer_content=order.order_code,
            qr_code_url=_qr_code_url(order),
        ),
        payment_method=order.payment_method,
        payment_reference=order.payment_reference,
        paid_at=order.paid_at,
        expires_at=order.expires_at,
        created_at=order.created_at,
        user_id=order.user_id,
        user_email=user_email,
        user_name=user_name,
    )


async def _owned_order(db: AsyncSession, user_id: str, order_id: str):
    order = await deposit_store.get_order_by_id(db, order_id)
    if order is None:
        raise NotFound("Deposit order")
    if order.user_id != user_id:
        raise Forbidden("Not your deposit order")
    return order


# ---------------------------------------------------------------------------
# Customer operations
# ---------------------------------------------------------------------------

async def create_deposit(user_id: str, token_amount: int, db: AsyncSession = None) -> DepositOrder:
    """Open a deposit order, or hand back the customer's live pending one."""
    async with get_or_use_session(db) as _db:
        user = await user_store.get_user_by_id(_db, user_id)
        if user is None:
            raise NotFound("User")
        if not user.is_active:
            raise Forbidden("Account is deactivated")
        if token_amount < settings.DEPOSIT_MIN_TOKENS:
            raise ValidationError(f"Minimum deposit is {settings.DEPOSIT_MIN_TOKENS:,} tokens")

        now = utcnow()
        pending = await deposit_store.get_active_pending_order(_db, user_id, now)
        if pending is not None:
            return format_order(pending, now=now)

        await deposit_store.mark_expired_orders(_db, now)
        order = await deposit_store.create_deposit_order(
            _db,
            user_id=user_id,
            order_code=deposit_store.generate_order_code(),
            token_amount=token_amount,
            amount=deposit_store.calculate_vnd_from_tokens(token_amount),
            expires_at=now + timedelta(minutes=settings.DEPOSIT_EXPIRY_MINUTES),
        )
        await safe_commit(_db, conflict_message="Could not allocate an order code, please retry")
        logger.info(f"Created deposit order {order.order_code} for user {user_id}: {token_amount} tokens / {order.amount} VND")
        return format_order(order, now=now)


async def get_pending_order(user_id: str, db: AsyncSession = None) -> PendingOrder:
    async with get_or_use_session(db) as _db:
        order = await deposit_store.get_active_pending_order(_db, user_id, utcnow())
        if order is None:
            return PendingOrder(has_pending=False)
        return PendingOrder(has_pending=True, order=format_order(order))


async def cancel_pending_order(user_id: str, order_id: str, db: AsyncSession = None) -> dict:
    async with get_or_use_session(db) as _db:
        order = await _owned_order(_db, user_id, order_id)
        if order.status != deposit_store.STATUS_PENDING:
            raise ValidationError("Only pending orders can be cancelled")
        if not await deposit_store.update_order_status(_db, order_id, deposit_store.STATUS_CANCELLED):
            raise Conflict("Order is no longer pending")
        await safe_commit(_db)
        logger.info(f"User {user_id} cancelled deposit order {order.order_code}")
        return {"success": True}


async def get_deposit(user_id: str, order_id: str, db: AsyncSession = None) -> DepositOrder:
    async with get_or_use_session(db) as _db:
        return format_order(await _owned_order(_db, user_id, order_id))


async def get_deposit_history(user_id: str, limit: int = 20, offset: int = 0, db: AsyncSession = None) -> DepositList:
    async with get_or_use_session(db) as _db:
        orders, total = await deposit_store.list_user_orders(_db, user_id, limit, offset)
        now = utcnow()
        return DepositList(orders=[format_order(o, now=now) for o in orders], total=total, limit=limit, offset=offset)


async def get_token_history(user_id: str, limit: int = 50, offset: int = 0, db: AsyncSession = None) -> TokenHistory:
    async with get_or_use_session(db) as _db:
        rows, total = await deposit_store.list_transactions(_db, user_id, limit, offset)
        return TokenHistory(
            transactions=[TokenTransaction.model_validate(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
        )


def get_pricing_info() -> PricingInfo:
    packages = [
        PricingPackage(
            id=pkg["id"],
            name=pkg.get("name", pkg["id"]),
            tokens=int(pkg["tokens"]),
            bonus=int(pkg.get("bonus", 0)),
            popular=bool(pkg.get("popular", False)),
            price_vnd=deposit_store.calculate_vnd_from_tokens(int(pkg["tokens"])),
        )
        for pkg in config.get_deposit_packages()
    ]
    return PricingInfo(
        price_per_million=config.get_token_price_vnd(),
        currency=str(config.get("deposit.currency", "VND")),
        minimum_tokens=settings.DEPOSIT_MIN_TOKENS,
        minimum_vnd=deposit_store.calculate_vnd_from_tokens(settings.DEPOSIT_MIN_TOKENS),
        packages=packages,
    )


async def mark_expired_orders(db: AsyncSession = None) -> int:
    async with get_or_use_session(db) as _db:
        count = await deposit_store.mark_expired_orders(_db, utcnow())
        await safe_commit(_db)
        if count:
            logger.info(f"Marked {count} deposit orders expired")
        return count


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

async def _apply_payment(
    db: AsyncSession,
    order,
    reference: str,
    payment_method: str,
    paid_at: datetime,
) -> ReconciliationResult:
    """Complete the order and credit the owner in one transaction."""
    # Rollback expires ORM instances; keep plain values
    order_id, order_code, user_id, token_amount = order.id, order.order_code, order.user_id, order.token_amount
    try:
        if not await deposit_store.complete_order(db, order_id, reference, payment_method, paid_at):
            await db.rollback()
            current = await deposit_store.get_order_by_id(db, order_id)
            if current is not None and current.status == deposit_store.STATUS_COMPLETED:
                return ReconciliationResult(True, OUTCOME_ALREADY_COMPLETED, order_id)
            return ReconciliationResult(False, OUTCOME_NOT_PAYABLE, order_id)

        balance = await user_store.add_to_balance(db, user_id, token_amount)
        if balance is None:
            await db.rollback()
            logger.error(f"Deposit order {order_code} belongs to missing user {user_id}")
            return ReconciliationResult(False, OUTCOME_UNKNOWN_USER, order_id)

        await deposit_store.create_transaction(
            db,
            user_id=user_id,
            type="credit",
            amount=token_amount,
            balance_after=balance,
            description=f"Deposit: {order_code}",
            reference_id=order_id,
        )
        await db.commit()
    except IntegrityError:
        # The same bank reference was applied concurrently
        await db.rollback()
        logger.info(f"Payment reference {reference} already applied; ignoring")
        return ReconciliationResult(True, OUTCOME_DUPLICATE, order_id)

    logger.info(
        f"Deposit {order_code} completed via {payment_method} ({reference}): "
        f"+{token_amount} tokens for user {user_id}, balance {balance}"
    )
    return ReconciliationResult(True, OUTCOME_APPLIED, order_id)


async def process_payment_notification(
    external_ref: Optional[str],
    amount: int,
    correlation_code: Optional[str],
    timestamp: Union[str, datetime, None] = None,
    payment_method: str = PAYMENT_METHOD_BANK,
    db: AsyncSession = None,
) -> ReconciliationResult:
    """Apply one incoming payment to the order it names. Safe to replay."""
    if not external_ref:
        return ReconciliationResult(False, OUTCOME_MISSING_REFERENCE)

    async with get_or_use_session(db) as _db:
        applied = await deposit_store.find_by_payment_reference(_db, external_ref)
        if applied is not None:
            return ReconciliationResult(True, OUTCOME_DUPLICATE, applied.id)

        order = await deposit_store.get_order_by_code(_db, correlation_code) if correlation_code else None
        if order is None:
            logger.warning(f"Payment {external_ref} names unknown order {correlation_code!r}")
            return ReconciliationResult(False, OUTCOME_UNKNOWN_ORDER)

        if order.status == deposit_store.STATUS_COMPLETED:
            return ReconciliationResult(True, OUTCOME_ALREADY_COMPLETED, order.id)
        if order.status not in deposit_store.PAYABLE_STATUSES:
            logger.warning(f"Payment {external_ref} for {order.status} order {order.order_code} refused")
            return ReconciliationResult(False, OUTCOME_NOT_PAYABLE, order.id)
        if int(amount) < order.amount:
            logger.warning(
                f"Payment {external_ref} for {order.order_code} underpaid: got {amount}, expected {order.amount}"
            )
            return ReconciliationResult(False, OUTCOME_UNDERPAID, order.id)
        if order.status == deposit_store.STATUS_EXPIRED:
            logger.info(f"Late payment {external_ref} for expired order {order.order_code}; honouring it")

        return await _apply_payment(_db, order, external_ref, payment_method, parse_transaction_date(timestamp))


async def handle_sepay_webhook(payload: SePayWebhook, db: AsyncSession = None) -> ReconciliationResult:
    """Translate a SePay notification into a reconciliation call."""
    if (payload.transferType or "").lower() != "in":
        logger.info(f"Ignoring outgoing transfer {payload.referenceCode or payload.id}")
        return ReconciliationResult(True, "ignored")

    code = (payload.code or "").upper() or None
    if code is None or not order_code_pattern().fullmatch(code):
        code = extract_order_code(payload.content) or extract_order_code(payload.description)
    reference = payload.referenceCode or (f"sepay:{payload.id}" if payload.id is not None else None)

    result = await process_payment_notification(
        external_ref=reference,
        amount=payload.transferAmount,
        correlation_code=code,
        timestamp=payload.transactionDate,
        db=db,
    )
    logger.info(f"SePay notification {reference}: outcome={result.outcome} order={result.order_id}")
    return result


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

async def list_all_deposits(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    db: AsyncSession = None,
) -> AdminDepositList:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    async with get_or_use_session(db) as _db:
        rows, total = await deposit_store.list_all_orders(_db, status, user_id, limit, (page - 1) * limit)
        now = utcnow()
        return AdminDepositList(
            deposits=[format_order(o, email, name, now=now) for o, email, name in rows],
            pagination=Pagination(page=page, limit=limit, total=total, total_pages=-(-total // limit)),
        )


async def admin_resolve_order(admin_id: str, order_id: str, action: str, db: AsyncSession = None) -> DepositOrder:
    """Settle an order whose bank notification never arrived."""
    async with get_or_use_session(db) as _db:
        order = await deposit_store.get_order_by_id(_db, order_id)
        if order is None:
            raise NotFound("Deposit order")
        order_code = order.order_code

        if action == "complete":
            if order.status == deposit_store.STATUS_COMPLETED:
                raise Conflict("Order is already completed")
            result = await _apply_payment(_db, order, f"manual:{order.id}", PAYMENT_METHOD_MANUAL, utcnow())
            if not result.success:
                raise Conflict(f"Order cannot be completed ({result.outcome})")
        elif action == "cancel":
            if not await deposit_store.update_order_status(
                _db, order_id, deposit_store.STATUS_CANCELLED, deposit_store.PAYABLE_STATUSES
            ):
                raise Conflict(f"Order is {order.status} and cannot be cancelled")
            await safe_commit(_db)
        else:
            raise ValidationError("Unknown action")

        logger.info(f"Admin {admin_id} resolved deposit order {order_code}: {action}")
        return format_order(await deposit_store.get_order_by_id(_db, order_id))


async def admin_adjust_tokens(admin_id: str, user_id: str, amount: int, reason: str, db: AsyncSession = None) -> AdminTokenAdjustmentResult:
    """Credit (positive) or debit (negative) a user's balance with a ledger entry."""
    if amount == 0:
        raise ValidationError("Amount must be non-zero")
    async with get_or_use_session(db) as _db:
        if await user_store.get_user_by_id(_db, user_id) is None:
            raise NotFound("User")
        if amount > 0:
            balance = await user_store.add_to_balance(_db, user_id, amount)
        else:
            balance = await user_store.subtract_from_balance(_db, user_id, -amount)
            if balance is None:
                raise ValidationError("Insufficient token balance")
        await deposit_store.create_transaction(
            _db,
            user_id=user_id,
            type="credit" if amount > 0 else "debit",
            amount=abs(amount),
            balance_after=balance,
            description=f"Admin: {reason}",
            reference_id=f"admin:{admin_id}",
        )
        await safe_commit(_db)
        logger.info(f"Admin {admin_id} adjusted balance of {user_id} by {amount}: {reason}")
        return AdminTokenAdjustmentResult(user_id=user_id, new_balance=balance)
