"""
Tests for deposit orders and payment reconciliation.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from core.errors import Conflict, Forbidden, ValidationError
from db.models.deposit_order import DepositOrder
from db.stores import deposits as deposit_store
from db.stores import users as user_store
from schemas.deposit_schema import SePayWebhook
from services import deposit_service
from utils.clock import utcnow

from conftest import fake


async def _balance(session_factory, user_id):
    async with session_factory() as db:
        return (await user_store.get_user_by_id(db, user_id)).token_balance


async def _ledger(session_factory, user_id):
    async with session_factory() as db:
        rows, _ = await deposit_store.list_transactions(db, user_id)
        return rows


async def _set_order(session_factory, order_id, **values):
    async with session_factory() as db:
        await db.execute(update(DepositOrder).where(DepositOrder.id == order_id).values(**values))
        await db.commit()


def _webhook(order, **fields):
    values = dict(
        id=fake.random_int(min=1, max=10**9),
        gateway="BIDV",
        transactionDate="2024-01-01 07:00:00",
        accountNumber="0123456789",
        content=f"CT DEN {order.order_code} nap token",
        transferType="in",
        transferAmount=order.amount_vnd,
        referenceCode=f"FT{fake.random_number(digits=10, fix_len=True)}",
    )
    values.update(fields)
    return SePayWebhook(**values)


class TestPricing:
    def test_price_is_rounded_up(self):
        assert deposit_store.calculate_vnd_from_tokens(100000) == 50000
        assert deposit_store.calculate_vnd_from_tokens(1) == 1
        assert deposit_store.calculate_tokens_from_vnd(50000) == 100000

    def test_pricing_info(self):
        info = deposit_service.get_pricing_info()
        assert info.currency == "VND"
        assert info.minimum_vnd == deposit_store.calculate_vnd_from_tokens(info.minimum_tokens)
        standard = next(p for p in info.packages if p.id == "standard")
        assert standard.popular is True
        assert standard.price_vnd == 500000

    def test_order_codes(self):
        code = deposit_store.generate_order_code(now_ms=1700000000000)
        assert code.startswith("OP")
        assert code == code.upper()
        assert deposit_service.extract_order_code(f"chuyen tien {code.lower()} cam on") == code
        assert deposit_service.extract_order_code("no code here") is None

    def test_naive_bank_time_is_local(self):
        assert deposit_service.parse_transaction_date("2024-01-01 07:00:00") == datetime(2024, 1, 1, 0, 0)
        assert deposit_service.parse_transaction_date("2024-01-01T07:00:00Z") == datetime(2024, 1, 1, 7, 0)


class TestOrders:
    @pytest.mark.asyncio
    async def test_create_and_reuse_pending_order(self, db_session, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        assert order.status == "pending"
        assert order.amount_vnd == 100000
        assert order.payment_info.transfer_content == order.order_code
        assert order.order_code in order.payment_info.qr_code_url

        again = await deposit_service.create_deposit(user.id, 500000, db=db_session)
        assert again.id == order.id
        pending = await deposit_service.get_pending_order(user.id, db=db_session)
        assert pending.has_pending and pending.order.id == order.id

    @pytest.mark.asyncio
    async def test_minimum_amount(self, db_session, make_user):
        user = await make_user()
        with pytest.raises(ValidationError):
            await deposit_service.create_deposit(user.id, 10, db=db_session)

    @pytest.mark.asyncio
    async def test_expired_order_is_replaced(self, db_session, session_factory, make_user):
        user = await make_user()
        first = await deposit_service.create_deposit(user.id, 200000, db=db_session)
        await _set_order(session_factory, first.id, expires_at=utcnow() - timedelta(minutes=1))

        second = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        assert second.id != first.id
        assert (await deposit_service.get_deposit(user.id, first.id, db=db_session)).status == "expired"

    @pytest.mark.asyncio
    async def test_cancel_and_ownership(self, db_session, make_user):
        user = await make_user()
        stranger = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        with pytest.raises(Forbidden):
            await deposit_service.cancel_pending_order(stranger.id, order.id, db=db_session)
        assert (await deposit_service.cancel_pending_order(user.id, order.id, db=db_session)) == {"success": True}
        with pytest.raises(ValidationError):
            await deposit_service.cancel_pending_order(user.id, order.id, db=db_session)
        assert (await deposit_service.get_pending_order(user.id, db=db_session)).has_pending is False


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_replayed_notification_credits_once(self, db_session, session_factory, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)
        payload = _webhook(order)

        first = await deposit_service.handle_sepay_webhook(payload, db=db_session)
        second = await deposit_service.handle_sepay_webhook(payload, db=db_session)

        assert (first.success, first.outcome) == (True, deposit_service.OUTCOME_APPLIED)
        assert (second.success, second.outcome) == (True, deposit_service.OUTCOME_DUPLICATE)
        assert await _balance(session_factory, user.id) == 200000
        [entry] = await _ledger(session_factory, user.id)
        assert entry.type == "credit"
        assert entry.amount == 200000
        assert entry.balance_after == 200000
        assert entry.reference_id == order.id

        completed = await deposit_service.get_deposit(user.id, order.id, db=db_session)
        assert completed.status == "completed"
        assert completed.payment_reference == payload.referenceCode
        assert completed.paid_at == datetime(2024, 1, 1, 0, 0)

    @pytest.mark.asyncio
    async def test_second_transfer_for_completed_order(self, db_session, session_factory, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)
        await deposit_service.handle_sepay_webhook(_webhook(order), db=db_session)

        result = await deposit_service.handle_sepay_webhook(_webhook(order), db=db_session)

        assert result.outcome == deposit_service.OUTCOME_ALREADY_COMPLETED
        assert await _balance(session_factory, user.id) == 200000

    @pytest.mark.asyncio
    async def test_late_payment_for_expired_order_is_honoured(self, db_session, session_factory, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)
        await _set_order(session_factory, order.id, status="expired", expires_at=utcnow() - timedelta(hours=1))

        result = await deposit_service.handle_sepay_webhook(_webhook(order), db=db_session)

        assert result.outcome == deposit_service.OUTCOME_APPLIED
        assert await _balance(session_factory, user.id) == 200000

    @pytest.mark.asyncio
    async def test_cancelled_order_is_refused(self, db_session, session_factory, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)
        await deposit_service.cancel_pending_order(user.id, order.id, db=db_session)

        result = await deposit_service.handle_sepay_webhook(_webhook(order), db=db_session)

        assert (result.success, result.outcome) == (False, deposit_service.OUTCOME_NOT_PAYABLE)
        assert await _balance(session_factory, user.id) == 0
        assert await _ledger(session_factory, user.id) == []

    @pytest.mark.asyncio
    async def test_underpaid_transfer(self, db_session, session_factory, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        result = await deposit_service.handle_sepay_webhook(_webhook(order, transferAmount=order.amount_vnd - 1), db=db_session)

        assert result.outcome == deposit_service.OUTCOME_UNDERPAID
        assert await _balance(session_factory, user.id) == 0
        assert (await deposit_service.get_deposit(user.id, order.id, db=db_session)).status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_order_and_missing_reference(self, db_session):
        unknown = await deposit_service.process_payment_notification("FT1", 50000, "OPNOSUCHCODE", db=db_session)
        assert unknown.outcome == deposit_service.OUTCOME_UNKNOWN_ORDER
        missing = await deposit_service.process_payment_notification(None, 50000, "OPNOSUCHCODE", db=db_session)
        assert missing.outcome == deposit_service.OUTCOME_MISSING_REFERENCE

    @pytest.mark.asyncio
    async def test_reference_falls_back_to_notification_id(self, db_session, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        await deposit_service.handle_sepay_webhook(_webhook(order, id=4242, referenceCode=None), db=db_session)

        assert (await deposit_service.get_deposit(user.id, order.id, db=db_session)).payment_reference == "sepay:4242"

    @pytest.mark.asyncio
    async def test_outgoing_transfer_is_ignored(self, db_session, session_factory, make_user):
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        result = await deposit_service.handle_sepay_webhook(_webhook(order, transferType="out"), db=db_session)

        assert result.outcome == "ignored"
        assert await _balance(session_factory, user.id) == 0


class TestAdmin:
    @pytest.mark.asyncio
    async def test_manual_completion(self, db_session, session_factory, make_user):
        admin = await make_user(role="admin")
        user = await make_user()
        order = await deposit_service.create_deposit(user.id, 200000, db=db_session)

        resolved = await deposit_service.admin_resolve_order(admin.id, order.id, "complete", db=db_session)

        assert resolved.status == "completed"
        assert resolved.payment_method == "manual"
        assert resolved.payment_reference == f"manual:{order.id}"
        assert await _balance(session_factory, user.id) == 200000
        with pytest.raises(Conflict):
            await deposit_service.admin_resolve_order(admin.id, order.id, "complete", db=db_session)
        with pytest.raises(Conflict):
            await deposit_service.admin_resolve_order(admin.id, order.id, "cancel", db=db_session)

    @pytest.mark.asyncio
    async def test_list_all_deposits(self, db_session, make_user):
        first = await make_user()
        second = await make_user()
        await deposit_service.create_deposit(first.id, 200000, db=db_session)
        await deposit_service.create_deposit(second.id, 300000, db=db_session)

        listing = await deposit_service.list_all_deposits(page=1, limit=1, db=db_session)
        assert listing.pagination.total == 2
        assert listing.pagination.total_pages == 2
        assert len(listing.deposits) == 1
        assert listing.deposits[0].user_email in (first.email, second.email)

        only_first = await deposit_service.list_all_deposits(user_id=first.id, db=db_session)
        assert [d.user_id for d in only_first.deposits] == [first.id]

    @pytest.mark.asyncio
    async def test_token_adjustments(self, db_session, session_factory, make_user):
        admin = await make_user(role="admin")
        user = await make_user(balance=1000)

        credited = await deposit_service.admin_adjust_tokens(admin.id, user.id, 500, "goodwill", db=db_session)
        assert credited.new_balance == 1500
        debited = await deposit_service.admin_adjust_tokens(admin.id, user.id, -1500, "correction", db=db_session)
        assert debited.new_balance == 0
        with pytest.raises(ValidationError):
            await deposit_service.admin_adjust_tokens(admin.id, user.id, -1, "overdraft", db=db_session)

        types = sorted(e.type for e in await _ledger(session_factory, user.id))
        assert types == ["credit", "debit"]
